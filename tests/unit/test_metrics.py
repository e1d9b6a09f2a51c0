"""Unit tests for KeeperMetrics."""
import pytest
from prometheus_client import CollectorRegistry

from keeper.services.metrics import KeeperMetrics


@pytest.fixture
def metrics():
    """KeeperMetrics with an isolated registry."""
    return KeeperMetrics(registry=CollectorRegistry())


def render(metrics: KeeperMetrics) -> str:
    return metrics.get_metrics().decode()


class TestKeeperMetrics:
    def test_init_creates_metrics(self, metrics):
        output = render(metrics)

        assert "keeper_uptime_seconds" in output
        assert "keeper_markets_tracked" in output
        assert "keeper_tx_queue_depth" in output
        assert "keeper_info{" in output

    def test_timer_outcomes(self, metrics):
        metrics.record_timer_armed("close")
        metrics.record_timer_fired("close")
        metrics.record_timer_cancelled("escape")

        output = render(metrics)
        assert 'keeper_timers_total{kind="close",outcome="armed"} 1.0' in output
        assert 'keeper_timers_total{kind="close",outcome="fired"} 1.0' in output
        assert 'keeper_timers_total{kind="escape",outcome="cancelled"} 1.0' in output

    def test_intent_dropped_counts_stage(self, metrics):
        metrics.record_intent_pushed("declare")
        metrics.record_intent_dropped("declare", stage="fee")

        output = render(metrics)
        assert 'keeper_intents_total{method="declare",outcome="pushed"} 1.0' in output
        assert 'keeper_intents_total{method="declare",outcome="dropped"} 1.0' in output
        assert 'keeper_intents_dropped_total{method="declare",stage="fee"} 1.0' in output

    def test_gauges(self, metrics):
        metrics.set_markets_tracked(3)
        metrics.set_queue_depth(2)

        output = render(metrics)
        assert "keeper_markets_tracked 3.0" in output
        assert "keeper_tx_queue_depth 2.0" in output

    def test_events_and_reads(self, metrics):
        metrics.record_event("Declared")
        metrics.record_read_failure("status")
        metrics.record_heartbeat(False)

        output = render(metrics)
        assert 'keeper_events_total{event="Declared"} 1.0' in output
        assert 'keeper_read_failures_total{operation="status"} 1.0' in output
        assert 'keeper_heartbeats_total{outcome="failed"} 1.0' in output
