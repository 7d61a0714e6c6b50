"""Unit tests for metrics collection and Prometheus export.

Tests cover:
- Histogram buckets and quantiles
- Matchmaking and relay counters
- Prometheus format export
- Thread safety
"""

import threading

from src.signaling.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsCollector,
    get_metrics_collector,
)


class TestHistogram:
    """Test histogram metric for wait-time distributions."""

    def test_histogram_observe(self) -> None:
        """Test observing values in histogram."""
        hist = Histogram(name="test_wait", help="Test wait metric")

        hist.observe(0.05)
        hist.observe(0.4)
        hist.observe(3.0)

        assert hist.count == 3
        assert abs(hist.sum - 3.45) < 0.001

        # Bucket counts are cumulative
        assert next(b for b in hist.buckets if b.le == 0.1).count == 1
        assert next(b for b in hist.buckets if b.le == 0.5).count == 2
        assert next(b for b in hist.buckets if b.le == 5.0).count == 3
        assert hist.buckets[-1].count == 3

    def test_histogram_quantile_empty(self) -> None:
        """Test quantile with no data."""
        hist = Histogram(name="test_wait", help="Test wait metric")
        assert hist.quantile(0.5) is None

    def test_histogram_quantile_within_range(self) -> None:
        """Test quantiles fall inside the observed bucket range."""
        hist = Histogram(name="test_wait", help="Test wait metric")
        for _ in range(100):
            hist.observe(1.5)

        p50 = hist.quantile(0.5)
        assert p50 is not None
        assert 1.0 <= p50 <= 2.0

    def test_histogram_quantile_overflow(self) -> None:
        """Test values beyond the last finite bucket report that bound."""
        hist = Histogram(name="test_wait", help="Test wait metric")
        for _ in range(10):
            hist.observe(1000.0)

        assert hist.quantile(0.99) == 300.0


def test_counter_and_gauge() -> None:
    """Test counter and gauge arithmetic."""
    counter = Counter(name="c", help="c")
    counter.inc()
    counter.inc(2)
    assert counter.value == 3

    gauge = Gauge(name="g", help="g")
    gauge.inc()
    gauge.inc()
    gauge.dec()
    assert gauge.value == 1
    gauge.set(7)
    assert gauge.value == 7


class TestMetricsCollector:
    """Test the signaling metrics collector."""

    def test_connection_metrics(self) -> None:
        """Test peer connect/disconnect tracking."""
        metrics = MetricsCollector()

        metrics.record_peer_connected()
        metrics.record_peer_connected()
        metrics.record_peer_disconnected()

        summary = metrics.get_summary()
        assert summary["peers_connected"] == 1
        assert summary["connections_total"] == 2

    def test_matchmaking_metrics(self) -> None:
        """Test match, queue and partner-left tracking."""
        metrics = MetricsCollector()

        metrics.set_matchmaking_state(waiting=3, pairs=2)
        metrics.record_match(wait_seconds=0.3)
        metrics.record_partner_left()
        metrics.record_stale_queue_entry()

        summary = metrics.get_summary()
        assert summary["waiting_queue_depth"] == 3
        assert summary["active_pairs"] == 2
        assert summary["matches_total"] == 1
        assert summary["partner_left_total"] == 1
        assert summary["stale_queue_entries"] == 1
        assert summary["queue_wait_p50_s"] is not None

    def test_export_prometheus(self) -> None:
        """Test Prometheus exposition output."""
        metrics = MetricsCollector()
        metrics.record_signal_relayed()
        metrics.record_signal_dropped()
        metrics.record_match(wait_seconds=1.5)

        output = metrics.export_prometheus()

        assert "# TYPE signals_relayed_total counter" in output
        assert "signals_relayed_total 1.0" in output
        assert "signals_dropped_total 1.0" in output
        assert "# TYPE waiting_queue_depth gauge" in output
        assert "# TYPE queue_wait_seconds histogram" in output
        assert 'queue_wait_seconds_bucket{le="2.0"} 1' in output
        assert 'queue_wait_seconds_bucket{le="+Inf"} 1' in output
        assert "queue_wait_seconds_count 1" in output
        assert output.endswith("\n")

    def test_thread_safety(self) -> None:
        """Test concurrent updates are not lost."""
        metrics = MetricsCollector()

        def worker() -> None:
            for _ in range(1000):
                metrics.record_signal_relayed()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.get_summary()["signals_relayed"] == 4000


def test_global_collector_singleton() -> None:
    """Test the global collector is created once."""
    assert get_metrics_collector() is get_metrics_collector()
