from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Per-kind series use a ``kind`` label (``service``, ``pod``, ``endpoints``)
    so operators can alert on one reconciler falling behind independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_reconcile_total",
            "Total reconciliations processed by the worker pools",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "workload_binding_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            ["kind"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_requeues_total",
            "Total keys re-added with backoff after a failed reconciliation",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "workload_binding_queue_depth",
            "Current number of keys waiting in a work queue",
            ["kind"],
        )
    )
    pod_label_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_pod_label_updates_total",
            "Total pod writes that added synthetic selector labels",
            ["source"],
        )
    )
    service_selector_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_service_selector_updates_total",
            "Total service writes that added a synthetic selector label",
        )
    )
    indexed_services: Gauge = field(
        default_factory=lambda: Gauge(
            "workload_binding_indexed_services",
            "Current number of services held in the workload index",
        )
    )
    endpoint_triggers_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_endpoint_triggers_total",
            "Total services re-enqueued because a related endpoints object changed",
        )
    )
    skipped_references_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_skipped_references_total",
            "Total annotation references skipped because they could not be resolved",
            ["reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "workload_binding_resyncs_total",
            "Total periodic full resyncs performed",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "workload_binding",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
