"""Prometheus-compatible metrics for matchmaking and relay observability.

This module provides metrics collection for monitoring:
- Connection health (connected peers, protocol errors)
- Matchmaking (queue depth, active pairs, matches, queue wait time)
- Relay (signals delivered, signals dropped for unknown targets)

Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format.

Architecture:
    Matchmaker / Relay / Server → MetricsCollector → /metrics endpoint
                                        ↓
                                 In-memory storage
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Metric types following Prometheus conventions."""

    COUNTER = "counter"  # Monotonically increasing (e.g., matches_total)
    GAUGE = "gauge"  # Can go up or down (e.g., waiting_queue_depth)
    HISTOGRAM = "histogram"  # Distribution (e.g., queue_wait_seconds)


@dataclass
class HistogramBucket:
    """Histogram bucket for wait-time distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Number of observations <= le


@dataclass
class Histogram:
    """Histogram metric for tracking distributions.

    Uses fixed bucket boundaries for consistent memory footprint.
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)

    # Covers 100ms to 5min, the range a user plausibly waits for a partner
    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=0.1),
            HistogramBucket(le=0.5),
            HistogramBucket(le=1.0),
            HistogramBucket(le=2.0),
            HistogramBucket(le=5.0),
            HistogramBucket(le=10.0),
            HistogramBucket(le=30.0),
            HistogramBucket(le=60.0),
            HistogramBucket(le=120.0),
            HistogramBucket(le=300.0),
            HistogramBucket(le=float("inf")),
        ]
    )

    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observed value in seconds
        """
        self.sum += value
        self.count += 1

        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Calculate an approximate quantile (e.g., 0.95 for p95).

        Note: bucket.count values are CUMULATIVE (not per-bucket).

        Args:
            q: Quantile to calculate (0.0 to 1.0)

        Returns:
            Approximate quantile value, or None if no data
        """
        if self.count == 0:
            return None

        target_rank = int(q * self.count)

        prev_count = 0
        for i, bucket in enumerate(self.buckets):
            if bucket.count >= target_rank:
                if i == 0:
                    return bucket.le / 2.0

                prev_bucket = self.buckets[i - 1]
                bucket_count = bucket.count - prev_count
                if bucket.le == float("inf"):
                    return prev_bucket.le
                if bucket_count == 0:
                    return bucket.le

                rank_in_bucket = target_rank - prev_count
                bucket_width = bucket.le - prev_bucket.le
                return prev_bucket.le + (rank_in_bucket / bucket_count) * bucket_width

            prev_count = bucket.count

        return self.buckets[-1].le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        """Increment counter.

        Args:
            amount: Amount to increment by (default: 1.0)
        """
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        """Set gauge value."""
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        """Increment gauge."""
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        """Decrement gauge."""
        self.value -= amount


class MetricsCollector:
    """Metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        """Initialize metrics collector."""
        self._lock = threading.RLock()

        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_connection_metrics()
        self._init_matchmaking_metrics()
        self._init_relay_metrics()

        logger.info("MetricsCollector initialized")

    def _init_connection_metrics(self) -> None:
        """Initialize transport connection metrics."""
        self._gauges["peers_connected"] = Gauge(
            name="peers_connected",
            help="Number of currently connected peers",
        )
        self._counters["connections_total"] = Counter(
            name="connections_total",
            help="Total number of accepted connections",
        )
        self._counters["protocol_errors_total"] = Counter(
            name="protocol_errors_total",
            help="Total number of rejected client messages",
        )

    def _init_matchmaking_metrics(self) -> None:
        """Initialize matchmaking metrics."""
        self._gauges["waiting_queue_depth"] = Gauge(
            name="waiting_queue_depth",
            help="Number of peers waiting for a partner",
        )
        self._gauges["active_pairs"] = Gauge(
            name="active_pairs",
            help="Number of currently paired peer couples",
        )
        self._counters["matches_total"] = Counter(
            name="matches_total",
            help="Total number of pairs created",
        )
        self._counters["partner_left_total"] = Counter(
            name="partner_left_total",
            help="Total number of partner-left notifications emitted",
        )
        self._counters["stale_queue_entries_total"] = Counter(
            name="stale_queue_entries_total",
            help="Total number of disconnected peers discarded from the queue",
        )
        self._histograms["queue_wait_seconds"] = Histogram(
            name="queue_wait_seconds",
            help="Time a peer spent in the waiting queue before being matched",
        )

    def _init_relay_metrics(self) -> None:
        """Initialize relay metrics."""
        self._counters["signals_relayed_total"] = Counter(
            name="signals_relayed_total",
            help="Total number of signaling messages delivered",
        )
        self._counters["signals_dropped_total"] = Counter(
            name="signals_dropped_total",
            help="Total number of signaling messages dropped (target not connected)",
        )

    # === Connection metrics ===

    def record_peer_connected(self) -> None:
        """Record a newly accepted peer connection."""
        with self._lock:
            self._counters["connections_total"].inc()
            self._gauges["peers_connected"].inc()

    def record_peer_disconnected(self) -> None:
        """Record a peer disconnect."""
        with self._lock:
            self._gauges["peers_connected"].dec()

    def record_protocol_error(self) -> None:
        """Record a rejected client message."""
        with self._lock:
            self._counters["protocol_errors_total"].inc()

    # === Matchmaking metrics ===

    def set_matchmaking_state(self, waiting: int, pairs: int) -> None:
        """Update queue depth and active pair gauges.

        Args:
            waiting: Current waiting queue length
            pairs: Current number of pairs (each counted once)
        """
        with self._lock:
            self._gauges["waiting_queue_depth"].set(float(waiting))
            self._gauges["active_pairs"].set(float(pairs))

    def record_match(self, wait_seconds: float) -> None:
        """Record a new pair.

        Args:
            wait_seconds: Time the matched waiter spent in the queue
        """
        with self._lock:
            self._counters["matches_total"].inc()
            self._histograms["queue_wait_seconds"].observe(wait_seconds)

    def record_partner_left(self) -> None:
        """Record an emitted partner-left notification."""
        with self._lock:
            self._counters["partner_left_total"].inc()

    def record_stale_queue_entry(self) -> None:
        """Record a discarded stale queue entry."""
        with self._lock:
            self._counters["stale_queue_entries_total"].inc()

    # === Relay metrics ===

    def record_signal_relayed(self) -> None:
        """Record a delivered signaling message."""
        with self._lock:
            self._counters["signals_relayed_total"].inc()

    def record_signal_dropped(self) -> None:
        """Record a dropped signaling message."""
        with self._lock:
            self._counters["signals_dropped_total"].inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []

            for counter in self._counters.values():
                lines.append(f"# HELP {counter.name} {counter.help}")
                lines.append(f"# TYPE {counter.name} {MetricType.COUNTER.value}")
                labels_str = self._format_labels(counter.labels)
                lines.append(f"{counter.name}{labels_str} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} {MetricType.GAUGE.value}")
                labels_str = self._format_labels(gauge.labels)
                lines.append(f"{gauge.name}{labels_str} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} {MetricType.HISTOGRAM.value}")

                labels_str = self._format_labels(histogram.labels)

                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    bucket_labels_str = self._format_labels({**histogram.labels, "le": le})
                    lines.append(f"{histogram.name}_bucket{bucket_labels_str} {bucket.count}")

                lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
                lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

            return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels for Prometheus output (e.g. '{le="0.5"}')."""
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for monitoring dashboard.

        Returns:
            Dictionary with key metrics and wait-time percentiles
        """
        with self._lock:
            wait_hist = self._histograms["queue_wait_seconds"]
            p50 = wait_hist.quantile(0.50)
            p95 = wait_hist.quantile(0.95)

            return {
                "peers_connected": self._gauges["peers_connected"].value,
                "connections_total": self._counters["connections_total"].value,
                "protocol_errors": self._counters["protocol_errors_total"].value,
                "waiting_queue_depth": self._gauges["waiting_queue_depth"].value,
                "active_pairs": self._gauges["active_pairs"].value,
                "matches_total": self._counters["matches_total"].value,
                "partner_left_total": self._counters["partner_left_total"].value,
                "stale_queue_entries": self._counters["stale_queue_entries_total"].value,
                "queue_wait_p50_s": p50,
                "queue_wait_p95_s": p95,
                "signals_relayed": self._counters["signals_relayed_total"].value,
                "signals_dropped": self._counters["signals_dropped_total"].value,
            }


# Global metrics collector singleton
_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
