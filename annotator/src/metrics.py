from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    ``result`` labels are one of ``noop``, ``unchanged``, ``patched`` and
    ``failed``; ``reason`` labels come from :class:`ReconcileError.reason`.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "annotator_reconciles_total",
            "Total ingress reconciles by outcome",
            ["result"],
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "annotator_patches_total",
            "Total ingress annotation patches applied",
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "annotator_errors_total",
            "Total failed reconciles by reason",
            ["reason"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "annotator_reconcile_duration_seconds",
            "Seconds spent in a single ingress reconcile",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "annotator_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "annotator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    pending_reconciles: Gauge = field(
        default_factory=lambda: Gauge(
            "annotator_pending_reconciles",
            "Current number of ingresses scheduled for a timed revisit",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "annotator_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
