from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api

from inheritor.src.kube import KUBE_API_ERRORS, describe_error
from inheritor.src.metrics import METRICS


@dataclass(frozen=True)
class SyncResult:
    """Outcome of synchronizing one namespace's workloads.

    ``error`` holds the first store failure, after which nothing further in
    the namespace was attempted.  ``failed_kind`` names the phase it hit.
    """

    namespace: str
    pods_updated: int = 0
    config_maps_updated: int = 0
    error: Exception | None = None
    failed_kind: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def inherit_labels(
    labels: Mapping[str, str] | None,
    namespace_labels: Mapping[str, str] | None,
    include_labels: Iterable[str],
) -> dict[str, str]:
    """Return *labels* with every included key copied from the namespace.

    Keys absent on the namespace are written as ``""`` rather than skipped.
    Keys outside *include_labels* are left untouched.
    """
    source = namespace_labels or {}
    merged = dict(labels or {})
    for key in include_labels:
        merged[key] = source.get(key, "")
    return merged


class LabelSynchronizer:
    """Copies selected namespace labels onto pods, then config maps.

    Each phase lists every object of its kind in the namespace and replaces
    them one at a time.  The first failure (list, conflict or any other write
    error) ends the namespace: remaining objects and the config map phase are
    not attempted, and nothing already written is rolled back.
    """

    def __init__(self, core_api: CoreV1Api, logger: logging.Logger | None = None) -> None:
        self.core_api = core_api
        self.logger = logger or logging.getLogger(__name__)

    def _phases(self) -> tuple[tuple[str, Callable[..., Any], Callable[..., Any]], ...]:
        return (
            (
                "pod",
                self.core_api.list_namespaced_pod,
                self.core_api.replace_namespaced_pod,
            ),
            (
                "configmap",
                self.core_api.list_namespaced_config_map,
                self.core_api.replace_namespaced_config_map,
            ),
        )

    def sync(
        self,
        namespace: Any,
        include_labels: Iterable[str],
        should_stop: Callable[[], bool] | None = None,
    ) -> SyncResult:
        stop = should_stop or (lambda: False)
        namespace_name = namespace.metadata.name
        namespace_labels = namespace.metadata.labels or {}
        keys = tuple(include_labels)
        updated: dict[str, int] = {"pod": 0, "configmap": 0}

        def result(**extra: Any) -> SyncResult:
            return SyncResult(
                namespace=namespace_name,
                pods_updated=updated["pod"],
                config_maps_updated=updated["configmap"],
                **extra,
            )

        for kind, list_fn, replace_fn in self._phases():
            if stop():
                return result(cancelled=True)
            try:
                listing = list_fn(namespace=namespace_name)
            except KUBE_API_ERRORS as exc:
                METRICS.sync_errors_total.labels(kind=kind).inc()
                self.logger.error(
                    "Failed to list %ss in namespace %s (%s)",
                    kind,
                    namespace_name,
                    describe_error(exc),
                )
                return result(error=exc, failed_kind=kind)

            items = getattr(listing, "items", None) or []
            if not items:
                continue

            self.logger.info(
                "Syncing labels %s onto %d %s(s) in namespace %s",
                ",".join(keys),
                len(items),
                kind,
                namespace_name,
            )
            for obj in items:
                if stop():
                    return result(cancelled=True)
                obj.metadata.labels = inherit_labels(obj.metadata.labels, namespace_labels, keys)
                try:
                    replace_fn(name=obj.metadata.name, namespace=namespace_name, body=obj)
                except KUBE_API_ERRORS as exc:
                    METRICS.sync_errors_total.labels(kind=kind).inc()
                    self.logger.error(
                        "Failed to update %s %s/%s (%s)",
                        kind,
                        namespace_name,
                        obj.metadata.name,
                        describe_error(exc),
                    )
                    return result(error=exc, failed_kind=kind)
                updated[kind] += 1
                METRICS.objects_updated_total.labels(kind=kind).inc()

        return result()
