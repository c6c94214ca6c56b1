from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class BridgeMetrics:
    """Prometheus metrics exported by the bridge on ``/metrics``.

    Watch-side series carry a ``kind`` label (``pod`` or ``service``) so the
    two watch loops can be alerted on independently.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_events_total",
            "Total watch events received",
            ["kind", "action"],
        )
    )
    decode_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_decode_errors_total",
            "Total watch messages dropped because they could not be decoded",
            ["kind"],
        )
    )
    registrations_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_registrations_total",
            "Total endpoints fully written to vulcand",
            ["kind"],
        )
    )
    unregistrations_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_unregistrations_total",
            "Total resources removed from vulcand",
            ["kind"],
        )
    )
    store_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_store_errors_total",
            "Total failed etcd operations",
            ["operation"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_watch_errors_total",
            "Total watch stream failures",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "kube2vulcan_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    watch_listening: Gauge = field(
        default_factory=lambda: Gauge(
            "kube2vulcan_watch_listening",
            "Whether the watch stream is currently open (1=yes, 0=no)",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kube2vulcan_build",
            "Build information for the bridge",
        )
    )


METRICS = BridgeMetrics()
