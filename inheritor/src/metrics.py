from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class InheritorMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Object counters carry a ``kind`` label (``pod`` or ``configmap``) so
    operators can tell which workload type is failing writes.
    """

    passes_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_passes_total",
            "Total reconciliation passes by outcome",
            ["outcome"],
        )
    )
    pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "label_inheritor_pass_duration_seconds",
            "Wall-clock duration of a reconciliation pass",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
        )
    )
    namespaces_synced_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_namespaces_synced_total",
            "Total namespaces whose workloads were fully synchronized",
        )
    )
    objects_updated_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_objects_updated_total",
            "Total workload objects written with inherited labels",
            ["kind"],
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_sync_errors_total",
            "Total list or update failures while synchronizing workloads",
            ["kind"],
        )
    )
    status_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_status_errors_total",
            "Total failed Inheritor status writes",
        )
    )
    scheduler_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_scheduler_errors_total",
            "Total unexpected errors escaping a reconciliation pass",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_watch_errors_total",
            "Total Inheritor watch errors",
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "label_inheritor_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "label_inheritor_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    managed_inheritors: Gauge = field(
        default_factory=lambda: Gauge(
            "label_inheritor_managed_inheritors",
            "Number of Inheritor resources currently scheduled for reconciliation",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "label_inheritor",
            "Build information for the controller",
        )
    )


METRICS = InheritorMetrics()
