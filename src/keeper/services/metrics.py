"""
Prometheus metrics emission for the keeper.

All metrics use the 'keeper_' prefix.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Info,
    generate_latest,
    start_http_server,
)

from keeper import __version__


class KeeperMetrics:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        metrics = KeeperMetrics()
        metrics.record_timer_armed("close")
        metrics.record_intent_dropped("declare", stage="fee")
        output = metrics.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "keeper",
            "Infra-market keeper information",
            registry=self._registry,
        )
        self._info.info({"version": __version__})

        self._uptime = Gauge(
            "keeper_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Controller
        self._markets_tracked = Gauge(
            "keeper_markets_tracked",
            "Markets with a live record",
            registry=self._registry,
        )
        self._timers = Counter(
            "keeper_timers_total",
            "Deferred actions by kind and outcome",
            ["kind", "outcome"],
            registry=self._registry,
        )
        self._read_failures = Counter(
            "keeper_read_failures_total",
            "Failed ledger reads",
            ["operation"],
            registry=self._registry,
        )
        self._events = Counter(
            "keeper_events_total",
            "Routed contract events",
            ["event"],
            registry=self._registry,
        )

        # Transaction queue
        self._intents = Counter(
            "keeper_intents_total",
            "Transaction intents by method and outcome",
            ["method", "outcome"],
            registry=self._registry,
        )
        self._intents_dropped = Counter(
            "keeper_intents_dropped_total",
            "Dropped intents by pipeline stage",
            ["method", "stage"],
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "keeper_tx_queue_depth",
            "Intents waiting for dispatch",
            registry=self._registry,
        )

        # Heartbeat
        self._heartbeats = Counter(
            "keeper_heartbeats_total",
            "Heartbeat pings by outcome",
            ["outcome"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP."""
        start_http_server(port, registry=self._registry)

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def set_markets_tracked(self, count: int) -> None:
        self._markets_tracked.set(count)

    def record_timer_armed(self, kind: str) -> None:
        self._timers.labels(kind=kind, outcome="armed").inc()

    def record_timer_fired(self, kind: str) -> None:
        self._timers.labels(kind=kind, outcome="fired").inc()

    def record_timer_cancelled(self, kind: str) -> None:
        self._timers.labels(kind=kind, outcome="cancelled").inc()

    def record_read_failure(self, operation: str) -> None:
        self._read_failures.labels(operation=operation).inc()

    def record_event(self, event: str) -> None:
        self._events.labels(event=event).inc()

    def record_intent_pushed(self, method: str) -> None:
        self._intents.labels(method=method, outcome="pushed").inc()

    def record_intent_confirmed(self, method: str) -> None:
        self._intents.labels(method=method, outcome="confirmed").inc()

    def record_intent_dropped(self, method: str, stage: str) -> None:
        self._intents.labels(method=method, outcome="dropped").inc()
        self._intents_dropped.labels(method=method, stage=stage).inc()

    def set_queue_depth(self, depth: int) -> None:
        self._queue_depth.set(depth)

    def record_heartbeat(self, success: bool) -> None:
        self._heartbeats.labels(outcome="ok" if success else "failed").inc()

    def get_metrics(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self._registry)
