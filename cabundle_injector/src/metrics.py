from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue and reconcile metrics carry a ``queue`` label (``secret``,
    ``new_namespace``, ``changed_namespace``) so each event class can be
    alerted on independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_injector_reconcile_total",
            "Total reconciliations processed, by queue and result",
            ["queue", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "cabundle_injector_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            ["queue"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "cabundle_injector_queue_depth",
            "Current number of keys waiting in a work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_injector_queue_retries_total",
            "Total keys re-added to a work queue with rate-limited backoff",
            ["queue"],
        )
    )
    config_map_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_injector_config_map_writes_total",
            "Total CA bundle ConfigMap writes, by operation",
            ["operation"],
        )
    )
    conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_injector_conflicts_total",
            "Total foreign ConfigMaps found occupying the CA bundle name",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_injector_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_injector_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cabundle_injector",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
