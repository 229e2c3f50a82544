from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from inheritor.src.config import ControllerConfig
from inheritor.src.kube import KUBE_API_ERRORS, InheritorStore, describe_error
from inheritor.src.metrics import METRICS
from inheritor.src.models import GROUP, PLURAL, VERSION, InheritorResource, SpecError
from inheritor.src.selector import format_label_selector, match_namespaces
from inheritor.src.status import StatusTracker
from inheritor.src.synchronizer import LabelSynchronizer

DEFAULT_REQUEUE_AFTER_SECONDS = 120


class PassOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    LOAD_FAILED = "load_failed"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


# Generation recorded for a deleted Inheritor; the next ADDED always differs.
_DELETED = object()


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass over a single Inheritor.

    ``requeue_after_seconds`` is the same fixed interval for every outcome;
    the caller schedules the next pass with it.  ``failed_namespace`` is set
    when label synchronization for that namespace was the point of failure.
    """

    name: str
    outcome: PassOutcome
    requeue_after_seconds: int
    namespaces_synced: int = 0
    failed_namespace: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is PassOutcome.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "requeueAfterSeconds": self.requeue_after_seconds,
            "namespacesSynced": self.namespaces_synced,
            "failedNamespace": self.failed_namespace,
            "error": describe_error(self.error) if self.error is not None else None,
        }


class InheritorReconciler:
    """Runs one pass of the label inheritance state machine per call.

    A pass loads (or creates) the Inheritor, then walks its selectors in
    order.  For each matched namespace the workloads are synchronized and the
    outcome is written to status immediately.  The first failure ends the
    pass: namespaces and selectors after it wait for the next pass.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        store: InheritorStore,
        requeue_after_seconds: int = DEFAULT_REQUEUE_AFTER_SECONDS,
        synchronizer: LabelSynchronizer | None = None,
        status: StatusTracker | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.store = store
        self.requeue_after_seconds = requeue_after_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.synchronizer = synchronizer or LabelSynchronizer(core_api)
        self.status = status or StatusTracker(store)

    def _result(self, name: str, outcome: PassOutcome, **extra: Any) -> ReconcileResult:
        return ReconcileResult(
            name=name,
            outcome=outcome,
            requeue_after_seconds=self.requeue_after_seconds,
            **extra,
        )

    def _load(
        self, name: str, auto_create: bool
    ) -> tuple[InheritorResource | None, Exception | None]:
        """Fetch the Inheritor, creating it when missing and ``auto_create`` is set.

        Returns ``(None, None)`` for a missing resource that must not be created.
        """
        try:
            resource = self.store.get(name)
        except KUBE_API_ERRORS as exc:
            self.logger.error("Unable to fetch Inheritor %s (%s)", name, describe_error(exc))
            return None, exc
        except SpecError as exc:
            self.logger.error("Inheritor %s has an invalid spec: %s", name, exc)
            return None, exc

        if resource is not None:
            return resource, None
        if not auto_create:
            self.logger.info("Inheritor %s not found; skipping", name)
            return None, None

        self.logger.info("Inheritor %s not found, creating", name)
        try:
            resource = self.store.create(InheritorResource.empty(name, self.store.namespace))
        except KUBE_API_ERRORS as exc:
            self.logger.error("Unable to create Inheritor %s (%s)", name, describe_error(exc))
            return None, exc
        # Status is dropped on create; store the empty map explicitly.
        try:
            self.store.update_status(resource)
        except KUBE_API_ERRORS as exc:
            METRICS.status_errors_total.inc()
            self.logger.warning(
                "Unable to store initial status for Inheritor %s (%s)",
                name,
                describe_error(exc),
            )
        return resource, None

    def _record_failure(self, resource: InheritorResource, namespace: str) -> None:
        try:
            self.status.record(resource, namespace, synced=False)
        except KUBE_API_ERRORS:
            # Already logged by the tracker; the sync error is what gets surfaced.
            pass

    def reconcile(
        self,
        name: str,
        should_stop: Callable[[], bool] | None = None,
        auto_create: bool = True,
    ) -> ReconcileResult:
        started = time.monotonic()
        result = self._run_pass(name, should_stop or (lambda: False), auto_create)
        METRICS.passes_total.labels(outcome=result.outcome.value).inc()
        METRICS.pass_duration_seconds.observe(time.monotonic() - started)
        return result

    def _run_pass(
        self, name: str, stop: Callable[[], bool], auto_create: bool
    ) -> ReconcileResult:
        self.logger.info("Reconciling Inheritor %s/%s", self.store.namespace, name)
        if stop():
            return self._result(name, PassOutcome.CANCELLED)

        resource, load_error = self._load(name, auto_create)
        if resource is None:
            if load_error is None:
                return self._result(name, PassOutcome.NOT_FOUND)
            return self._result(name, PassOutcome.LOAD_FAILED, error=load_error)

        synced = 0
        for selector in resource.spec.selectors:
            if stop():
                return self._result(name, PassOutcome.CANCELLED, namespaces_synced=synced)

            label_selector = format_label_selector(selector.match_labels)
            self.logger.info(
                "Processing selector %r with labels %s",
                label_selector,
                ",".join(selector.include_labels),
            )
            try:
                namespaces = match_namespaces(self.core_api, selector.match_labels)
            except KUBE_API_ERRORS as exc:
                self.logger.error(
                    "Unable to list namespaces with selector %r (%s)",
                    label_selector,
                    describe_error(exc),
                )
                return self._result(
                    name, PassOutcome.FAILED, namespaces_synced=synced, error=exc
                )

            for namespace in namespaces:
                if stop():
                    return self._result(name, PassOutcome.CANCELLED, namespaces_synced=synced)

                namespace_name = namespace.metadata.name
                sync_result = self.synchronizer.sync(
                    namespace, selector.include_labels, should_stop=stop
                )
                if sync_result.cancelled:
                    return self._result(name, PassOutcome.CANCELLED, namespaces_synced=synced)
                if not sync_result.ok:
                    self._record_failure(resource, namespace_name)
                    self.logger.warning(
                        "Label sync failed in namespace %s; ending pass for Inheritor %s",
                        namespace_name,
                        name,
                    )
                    return self._result(
                        name,
                        PassOutcome.FAILED,
                        namespaces_synced=synced,
                        failed_namespace=namespace_name,
                        error=sync_result.error,
                    )

                if stop():
                    return self._result(name, PassOutcome.CANCELLED, namespaces_synced=synced)
                try:
                    self.status.record(resource, namespace_name, synced=True)
                except KUBE_API_ERRORS as exc:
                    return self._result(
                        name, PassOutcome.FAILED, namespaces_synced=synced, error=exc
                    )
                synced += 1
                METRICS.namespaces_synced_total.inc()

        self.logger.info(
            "Reconciled Inheritor %s: %d namespace(s) synced", name, synced
        )
        return self._result(name, PassOutcome.COMPLETED, namespaces_synced=synced)


class ReconcileLoop:
    """Schedules reconciliation passes for every known Inheritor.

    Each name carries a monotonic due-at timestamp.  Due passes run one at a
    time and re-arm the name at ``now + requeue_after_seconds``.  Names come
    from configuration (always reconciled, auto-created when missing), from an
    initial listing, and from a background watch that triggers an immediate
    pass when an Inheritor is added or its ``metadata.generation`` changes.
    Names that are not configured are dropped once their resource is gone.

    Key internal state:
        ``_due``
            Maps Inheritor name to the ``clock()`` time of its next pass.
        ``_generations``
            Last ``metadata.generation`` seen by the watch, so status-only
            updates (our own writes included) do not re-trigger a pass.  A
            deleted resource keeps a marker so recreating it always does.
        ``_last_results``
            Last :class:`ReconcileResult` per name, served on ``/statusz``.
    """

    def __init__(
        self,
        reconciler: InheritorReconciler,
        store: InheritorStore,
        inheritor_names: tuple[str, ...],
        watch_enabled: bool = True,
        poll_seconds: float = 1.0,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.reconciler = reconciler
        self.store = store
        self.inheritor_names = inheritor_names
        self.watch_enabled = watch_enabled
        self.poll_seconds = poll_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self._lock = threading.Lock()
        self._due: dict[str, float] = {}
        self._generations: dict[str, Any] = {}
        self._last_results: dict[str, ReconcileResult] = {}

        self.ready = threading.Event()
        self._wakeup = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        self._wakeup.set()
        self._stop_active_watcher()

    def _stop_active_watcher(self) -> None:
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def schedule(self, name: str, delay_seconds: float = 0.0) -> None:
        with self._lock:
            self._due[name] = self.clock() + delay_seconds
            METRICS.managed_inheritors.set(len(self._due))
        self._wakeup.set()

    def forget(self, name: str) -> None:
        with self._lock:
            self._due.pop(name, None)
            self._last_results.pop(name, None)
            METRICS.managed_inheritors.set(len(self._due))

    def scheduled_names(self) -> list[str]:
        with self._lock:
            return sorted(self._due)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            results = {name: result.to_dict() for name, result in self._last_results.items()}
        return {"namespace": self.store.namespace, "inheritors": results}

    def seed(self) -> None:
        """Schedule configured names plus every Inheritor that already exists."""
        for name in self.inheritor_names:
            self.schedule(name)
        try:
            existing = self.store.list_names()
        except KUBE_API_ERRORS as exc:
            self.logger.warning(
                "Unable to list existing Inheritors in %s (%s); using configured names only",
                self.store.namespace,
                describe_error(exc),
            )
            return
        for name in existing:
            if name not in self._due:
                self.schedule(name)

    def handle_inheritor_event(self, event_type: str, obj: Any) -> bool:
        """Process one Inheritor watch event.  Returns True when a pass was triggered."""
        metadata = obj.get("metadata") if isinstance(obj, dict) else None
        if not isinstance(metadata, dict):
            return False
        name = metadata.get("name")
        if not name:
            return False

        if event_type == "DELETED":
            with self._lock:
                self._generations[name] = _DELETED
            if name not in self.inheritor_names:
                self.logger.info("Inheritor %s deleted; no longer scheduled", name)
                self.forget(name)
            return False

        if event_type not in {"ADDED", "MODIFIED"}:
            return False

        generation = metadata.get("generation")
        with self._lock:
            known = name in self._generations
            previous = self._generations.get(name)
            self._generations[name] = generation
            already_scheduled = name in self._due

        if known and previous == generation:
            return False
        if not known and already_scheduled:
            # First sighting of a name that is already on the schedule.
            return False

        self.logger.info(
            "Inheritor %s changed (event=%s generation=%s); reconciling now",
            name,
            event_type,
            generation,
        )
        self.schedule(name)
        return True

    def run_once(self, stop_event: threading.Event) -> list[ReconcileResult]:
        """Run every pass that is due now, earliest first."""
        now = self.clock()
        with self._lock:
            due = sorted(
                ((at, name) for name, at in self._due.items() if at <= now),
            )

        results: list[ReconcileResult] = []
        for scheduled_at, name in due:
            if self._should_stop(stop_event):
                break
            try:
                result = self.reconciler.reconcile(
                    name,
                    should_stop=lambda: self._should_stop(stop_event),
                    auto_create=name in self.inheritor_names,
                )
            except Exception as exc:
                self.logger.exception("Unexpected error reconciling Inheritor %s", name)
                METRICS.scheduler_errors_total.inc()
                result = ReconcileResult(
                    name=name,
                    outcome=PassOutcome.FAILED,
                    requeue_after_seconds=self.reconciler.requeue_after_seconds,
                    error=exc,
                )

            self._log_result(result)
            with self._lock:
                # A watch trigger during the pass moves the due time; keep it.
                if self._due.get(name) == scheduled_at:
                    if result.outcome is PassOutcome.NOT_FOUND:
                        del self._due[name]
                        self._last_results.pop(name, None)
                        METRICS.managed_inheritors.set(len(self._due))
                    else:
                        self._due[name] = self.clock() + result.requeue_after_seconds
                if name in self._due:
                    self._last_results[name] = result
            results.append(result)
        return results

    def _log_result(self, result: ReconcileResult) -> None:
        if result.outcome is PassOutcome.COMPLETED:
            self.logger.info(
                "Pass for Inheritor %s completed; next run in %ss",
                result.name,
                result.requeue_after_seconds,
            )
        elif result.outcome is PassOutcome.CANCELLED:
            self.logger.info("Pass for Inheritor %s cancelled", result.name)
        elif result.outcome is PassOutcome.NOT_FOUND:
            self.logger.info("Inheritor %s no longer exists; no longer scheduled", result.name)
        else:
            self.logger.warning(
                "Pass for Inheritor %s ended with outcome %s (namespace=%s); retrying in %ss",
                result.name,
                result.outcome.value,
                result.failed_namespace or "-",
                result.requeue_after_seconds,
            )

    def _next_wait_seconds(self) -> float:
        with self._lock:
            if not self._due:
                return self.poll_seconds
            nearest_due = min(self._due.values())
        return min(self.poll_seconds, max(0.0, nearest_due - self.clock()))

    def _watch_inheritors(self, stop_event: threading.Event) -> None:
        """Stream Inheritor events until stopped, reconnecting with backoff.

        ``410 Gone`` restarts the stream without a resource version.
        ``401`` / ``403`` end the watcher; periodic resync keeps running.
        """
        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                stream = watcher.stream(
                    self.store.custom_api.list_namespaced_custom_object,
                    group=GROUP,
                    version=VERSION,
                    namespace=self.store.namespace,
                    plural=PLURAL,
                    resource_version=resource_version,
                    timeout_seconds=30,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if isinstance(obj, dict):
                        version = (obj.get("metadata") or {}).get("resourceVersion")
                        if version:
                            resource_version = version
                    self.handle_inheritor_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Inheritor watch resource version expired, restarting")
                    resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on Inheritors denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return
                self.logger.exception("Inheritor watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected Inheritor watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: run due passes, then sleep until the next one is due.

        The wait is capped at ``poll_seconds`` so a shutdown is noticed
        promptly even when the next pass is minutes away.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.seed()

        watcher_thread: threading.Thread | None = None
        if self.watch_enabled:
            watcher_thread = threading.Thread(
                target=self._watch_inheritors, args=(stop,), daemon=True
            )
            watcher_thread.start()

        while not self._should_stop(stop):
            self._wakeup.clear()
            self.run_once(stop)
            if self._should_stop(stop):
                break
            self.ready.set()
            self._wakeup.wait(timeout=self._next_wait_seconds())

        self.ready.clear()
        self._stop_active_watcher()
        if watcher_thread is not None:
            watcher_thread.join(timeout=5)


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> ReconcileLoop:
    """Wire the reconciler and its scheduler from a loaded configuration."""
    store = InheritorStore(custom_api=custom_api, namespace=config.namespace)
    reconciler = InheritorReconciler(
        core_api=core_api,
        store=store,
        requeue_after_seconds=config.resync_interval_seconds,
    )
    return ReconcileLoop(
        reconciler=reconciler,
        store=store,
        inheritor_names=config.inheritor_names,
        watch_enabled=config.watch_inheritors,
    )
