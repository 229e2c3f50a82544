from __future__ import annotations

import logging

from inheritor.src.kube import KUBE_API_ERRORS, InheritorStore, describe_error
from inheritor.src.metrics import METRICS
from inheritor.src.models import InheritorResource


class StatusTracker:
    """Records per-namespace sync outcomes on an Inheritor's status.

    Status is observability only: a failed write is raised to the caller but
    never undoes label writes that already happened.
    """

    def __init__(self, store: InheritorStore, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def record(self, resource: InheritorResource, namespace: str, synced: bool) -> None:
        resource.status.set(namespace, synced)
        try:
            self.store.update_status(resource)
        except KUBE_API_ERRORS as exc:
            METRICS.status_errors_total.inc()
            self.logger.error(
                "Unable to update Inheritor %s status for namespace %s (%s)",
                resource.name,
                namespace,
                describe_error(exc),
            )
            raise
