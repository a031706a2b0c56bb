from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class InitializerMetrics:
    """Prometheus metrics exported by the initializer on ``/metrics``.

    ``pods_pending_failures`` is the availability signal to alert on: a pod
    whose update keeps failing stays unschedulable until a resync succeeds.
    """

    pods_initialized_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_pods_initialized_total",
            "Total pods whose pending initializer was removed and sidecar injected",
        )
    )
    pods_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_pods_skipped_total",
            "Total pod events that required no update",
            ["reason"],
        )
    )
    pods_failed_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_pods_failed_total",
            "Total pod updates that were rejected or never reached the API server",
        )
    )
    pods_pending_failures: Gauge = field(
        default_factory=lambda: Gauge(
            "istio_initializer_pods_pending_failures",
            "Pods whose most recent initialization attempt failed",
        )
    )
    decode_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_decode_errors_total",
            "Total watch events dropped because the payload could not be decoded",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "istio_initializer_resyncs_total",
            "Total full pod re-lists",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "istio_initializer",
            "Build information for the initializer",
        )
    )


METRICS = InitializerMetrics()
