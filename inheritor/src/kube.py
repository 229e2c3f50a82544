from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from inheritor.src.models import GROUP, PLURAL, VERSION, InheritorResource

LOGGER = logging.getLogger(__name__)

# Errors a cluster store call can raise: API rejections (404/409/5xx) and
# transport failures when the API server is unreachable.
KUBE_API_ERRORS: tuple[type[Exception], ...] = (ApiException, HTTPError)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def describe_error(exc: BaseException) -> str:
    """Short, log-friendly description of a store failure."""
    if isinstance(exc, ApiException):
        return f"status={exc.status} reason={exc.reason}"
    return f"{type(exc).__name__}: {exc}"


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


class InheritorStore:
    """Access to ``Inheritor`` custom objects in a single namespace."""

    def __init__(self, custom_api: CustomObjectsApi, namespace: str) -> None:
        self.custom_api = custom_api
        self.namespace = namespace

    def _coordinates(self) -> dict[str, str]:
        return {
            "group": GROUP,
            "version": VERSION,
            "namespace": self.namespace,
            "plural": PLURAL,
        }

    def get(self, name: str) -> InheritorResource | None:
        """Fetch an Inheritor by name, returning ``None`` when it does not exist."""
        try:
            obj = self.custom_api.get_namespaced_custom_object(name=name, **self._coordinates())
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        return InheritorResource.from_object(obj)

    def create(self, resource: InheritorResource) -> InheritorResource:
        created = self.custom_api.create_namespaced_custom_object(
            body=resource.to_body(), **self._coordinates()
        )
        if not isinstance(created, dict):
            return resource
        result = InheritorResource.from_object(created)
        # The status sub-resource is dropped on create; keep the local map.
        result.status = resource.status
        return result

    def update_status(self, resource: InheritorResource) -> None:
        """Replace the status sub-resource and refresh ``resource_version``.

        The replace carries the last seen ``resourceVersion`` so a concurrent
        write surfaces as ``409 Conflict``.
        """
        updated: Any = self.custom_api.replace_namespaced_custom_object_status(
            name=resource.name, body=resource.to_body(), **self._coordinates()
        )
        metadata = updated.get("metadata") if isinstance(updated, dict) else None
        if isinstance(metadata, dict) and metadata.get("resourceVersion"):
            resource.resource_version = metadata["resourceVersion"]
            resource.raw.setdefault("metadata", {})["resourceVersion"] = metadata[
                "resourceVersion"
            ]

    def list_names(self) -> list[str]:
        listing = self.custom_api.list_namespaced_custom_object(**self._coordinates())
        names: list[str] = []
        for item in (listing or {}).get("items") or []:
            name = (item.get("metadata") or {}).get("name")
            if name:
                names.append(name)
        return names
