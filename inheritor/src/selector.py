from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes.client import CoreV1Api

LOGGER = logging.getLogger(__name__)


def format_label_selector(match_labels: Mapping[str, str]) -> str:
    """Render exact-match labels as a ``k=v,k2=v2`` selector string.

    Keys are sorted so the same mapping always yields the same selector.  An
    empty mapping renders as ``""``, which the API treats as "everything".
    """
    return ",".join(f"{key}={match_labels[key]}" for key in sorted(match_labels))


def matches(labels: Mapping[str, str] | None, match_labels: Mapping[str, str]) -> bool:
    """Return True if *labels* carry every key/value pair of *match_labels*."""
    current = labels or {}
    return all(current.get(k) == v for k, v in match_labels.items())


def match_namespaces(core_api: CoreV1Api, match_labels: Mapping[str, str]) -> list[Any]:
    """List namespaces whose labels satisfy every pair in *match_labels*.

    The label selector is evaluated server-side; the result is filtered again
    locally so a store that ignores the selector cannot widen the match.
    Store failures propagate to the caller.
    """
    label_selector = format_label_selector(match_labels)
    listing = core_api.list_namespace(label_selector=label_selector)
    items = getattr(listing, "items", None) or []

    matched = [
        ns
        for ns in items
        if getattr(ns, "metadata", None) is not None
        and matches(ns.metadata.labels, match_labels)
    ]
    LOGGER.debug(
        "Selector %r matched %d namespace(s)", label_selector, len(matched)
    )
    return matched
