from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes are labelled by ``event_kind`` so operators can tell
    failing creations apart from failing updates.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_reconcile_total",
            "Total work items processed by the reconciliation loop",
            ["event_kind", "result"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_retries_total",
            "Total work items requeued with backoff after a failed reconcile",
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_dropped_total",
            "Total work items dropped after exceeding the retry ceiling",
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_errors_total",
            "Total non-fatal errors reported, by category",
            ["category"],
        )
    )
    enrichments_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_enrichments_total",
            "Total ConfigMaps updated with fetched content",
        )
    )
    fetch_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "curlme_fetch_duration_seconds",
            "Seconds spent fetching annotated site content",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "curlme_queue_depth",
            "Current number of items waiting in the work queue",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "curlme_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "curlme",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
