from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from inheritor.src.config import LeaderElectionConfig
from inheritor.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Lease-based leader election over ``coordination.k8s.io/v1``.

    Only the lease holder runs the reconcile loop, so two replicas never
    write the same workload labels or Inheritor status concurrently.

    Each cycle reads the Lease and then:

    * creates it when missing (we lead),
    * renews it when we already hold it,
    * takes it over once the holder's ``renewTime`` is older than the lease
      duration,
    * otherwise waits for the next ``retry_period_seconds``.

    ``409 Conflict`` on create or replace means another replica won the race.
    A leader that cannot renew for ``renew_deadline_seconds`` steps down and
    ``on_stopped_leading`` is invoked.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @classmethod
    def from_config(
        cls,
        coordination_api: CoordinationV1Api,
        namespace: str,
        config: LeaderElectionConfig,
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=namespace,
            lease_name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _lease_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        renew_time = spec.renew_time
        if renew_time is None:
            return True
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renew_time).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew cycle.  Returns True while we hold the lease."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity == self.identity:
            return self._write_lease(lease, now)
        if not self._lease_expired(spec, now):
            return False
        LOGGER.info(
            "Lease %s held by %s has expired; taking over",
            self.lease_name,
            spec.holder_identity,
        )
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s created concurrently, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Acquired leader lease %s", self.lease_name)
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew the lease, or claim it, resetting ``acquireTime`` on a holder change."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        if lease.spec.acquire_time is None or previous_holder != self.identity:
            lease.spec.acquire_time = now
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` so another replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _step_down(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.lease_name,
            self.identity,
        )
        last_renew_success = time.monotonic()
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                acquired = False

            if acquired:
                last_renew_success = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    on_started_leading()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renew_success
                if elapsed < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        elapsed,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", elapsed)
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._step_down(on_stopped_leading)
