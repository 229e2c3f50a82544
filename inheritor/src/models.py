from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

GROUP = "labels.theisferre"
VERSION = "v1"
PLURAL = "inheritors"
KIND = "Inheritor"


class SpecError(ValueError):
    """Raised when an Inheritor object carries a malformed ``spec``."""


@dataclass(frozen=True)
class Selector:
    """One inheritance rule: which namespaces to match and which keys to copy.

    ``match_labels`` is an exact, conjunctive key/value predicate.
    ``include_labels`` keeps declaration order with duplicates collapsed.
    """

    match_labels: dict[str, str]
    include_labels: tuple[str, ...]

    @classmethod
    def from_dict(cls, raw: Any) -> Selector:
        if not isinstance(raw, Mapping):
            raise SpecError(f"selector must be an object, got: {type(raw).__name__}")

        namespace_selector = raw.get("namespaceSelector") or {}
        if not isinstance(namespace_selector, Mapping):
            raise SpecError("selector.namespaceSelector must be an object")

        match_labels = namespace_selector.get("matchLabels") or {}
        if not isinstance(match_labels, Mapping):
            raise SpecError("selector.namespaceSelector.matchLabels must be an object")

        if namespace_selector.get("matchExpressions"):
            LOGGER.warning(
                "Ignoring matchExpressions in namespaceSelector; only matchLabels is supported"
            )

        include_labels = raw.get("includeLabels") or []
        if not isinstance(include_labels, list) or not all(
            isinstance(key, str) for key in include_labels
        ):
            raise SpecError("selector.includeLabels must be a list of strings")

        return cls(
            match_labels={str(k): "" if v is None else str(v) for k, v in match_labels.items()},
            include_labels=tuple(dict.fromkeys(include_labels)),
        )


@dataclass(frozen=True)
class InheritanceSpec:
    selectors: tuple[Selector, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> InheritanceSpec:
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise SpecError("spec must be an object")
        selectors = raw.get("selectors") or []
        if not isinstance(selectors, list):
            raise SpecError("spec.selectors must be a list")
        return cls(selectors=tuple(Selector.from_dict(item) for item in selectors))


@dataclass(frozen=True)
class NamespaceStatus:
    name: str
    labels_synced: bool

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "labelsSynced": self.labels_synced}


@dataclass
class InheritanceStatus:
    """Per-namespace sync outcomes, keyed by namespace name."""

    namespaces: dict[str, NamespaceStatus] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> InheritanceStatus:
        if not isinstance(raw, Mapping):
            return cls()
        entries = raw.get("namespaces")
        if not isinstance(entries, Mapping):
            return cls()

        namespaces: dict[str, NamespaceStatus] = {}
        for key, value in entries.items():
            if not isinstance(value, Mapping):
                continue
            namespaces[str(key)] = NamespaceStatus(
                name=str(value.get("name") or key),
                labels_synced=bool(value.get("labelsSynced", False)),
            )
        return cls(namespaces=namespaces)

    def set(self, namespace: str, synced: bool) -> None:
        self.namespaces[namespace] = NamespaceStatus(name=namespace, labels_synced=synced)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespaces": {name: entry.to_dict() for name, entry in self.namespaces.items()}
        }


@dataclass
class InheritorResource:
    """In-memory view of one ``Inheritor`` custom object.

    ``spec`` is fixed for the duration of a pass; ``status`` and
    ``resource_version`` are updated as status writes succeed.  ``raw`` keeps
    the object as returned by the API so status replaces round-trip any
    fields this controller does not model.
    """

    name: str
    namespace: str
    spec: InheritanceSpec
    status: InheritanceStatus
    resource_version: str | None = None
    generation: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> InheritorResource:
        metadata = obj.get("metadata") or {}
        status_raw = obj.get("status")
        if not isinstance(status_raw, Mapping) or status_raw.get("namespaces") is None:
            LOGGER.info(
                "Initializing status namespaces for Inheritor %s", metadata.get("name")
            )
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            spec=InheritanceSpec.from_dict(obj.get("spec")),
            status=InheritanceStatus.from_dict(status_raw),
            resource_version=metadata.get("resourceVersion"),
            generation=metadata.get("generation"),
            raw=copy.deepcopy(dict(obj)),
        )

    @classmethod
    def empty(cls, name: str, namespace: str) -> InheritorResource:
        """Return a default resource with no selectors and an empty status map."""
        resource = cls(
            name=name,
            namespace=namespace,
            spec=InheritanceSpec(),
            status=InheritanceStatus(),
        )
        resource.raw = resource.to_body()
        return resource

    def to_body(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body.setdefault("apiVersion", f"{GROUP}/{VERSION}")
        body.setdefault("kind", KIND)
        metadata = body.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        body.setdefault("spec", {"selectors": []})
        body["status"] = self.status.to_dict()
        return body
