"""
Observability metrics for the engagement engine.

Tracks:
- Latency percentiles (p50, p95, p99) per endpoint
- Request and error counts per endpoint
- Degraded operations (store failures answered with defaults)
- Live websocket connections
"""

import statistics
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Dict, Optional


class MetricsCollector:
    """
    In-memory metrics collector.

    Request handling runs on the event loop while tests and tooling may read
    from other threads, so every mutation takes a lock.
    """

    def __init__(self, window_size: int = 1000):
        """
        Initialize metrics collector.

        Args:
            window_size: Number of recent samples to keep for percentiles
        """
        self.window_size = window_size
        self._lock = threading.Lock()

        # Latency tracking (sliding window)
        self.latencies: Dict[str, deque] = defaultdict(lambda: deque(maxlen=window_size))

        # Request counters
        self.request_counts: Dict[str, int] = defaultdict(int)
        self.error_counts: Dict[str, int] = defaultdict(int)

        # Store degradation per engine operation
        self.degraded_counts: Dict[str, int] = defaultdict(int)

        self.active_connections = 0

        self.start_time = datetime.now(timezone.utc)
        self.last_reset = datetime.now(timezone.utc)

    def record_latency(self, endpoint: str, latency_ms: float):
        """Record a latency sample for an endpoint."""
        with self._lock:
            self.latencies[endpoint].append(latency_ms)
            self.request_counts[endpoint] += 1

    def record_error(self, endpoint: str):
        """Record an error for an endpoint."""
        with self._lock:
            self.error_counts[endpoint] += 1

    def record_degraded(self, operation: str):
        """Record an engine operation that fell back to its default value."""
        with self._lock:
            self.degraded_counts[operation] += 1

    def connection_opened(self):
        with self._lock:
            self.active_connections += 1

    def connection_closed(self):
        with self._lock:
            self.active_connections = max(self.active_connections - 1, 0)

    def get_percentile(self, endpoint: str, percentile: float) -> Optional[float]:
        """
        Get a latency percentile for an endpoint.

        Args:
            endpoint: Endpoint name
            percentile: Percentile (0-100)

        Returns:
            Latency in ms, or None if insufficient data
        """
        with self._lock:
            samples = list(self.latencies.get(endpoint, ()))
        if len(samples) < 10:  # Need at least 10 samples for meaningful percentiles
            return None

        values = sorted(samples)
        index = int(len(values) * (percentile / 100.0))
        index = min(index, len(values) - 1)
        return values[index]

    def get_error_rate(self, endpoint: str) -> float:
        """Get the error rate for an endpoint as a percentage."""
        with self._lock:
            total_requests = self.request_counts.get(endpoint, 0)
            errors = self.error_counts.get(endpoint, 0)
        if total_requests == 0:
            return 0.0
        return (errors / total_requests) * 100.0

    def get_summary(self) -> Dict:
        """
        Get a summary of all metrics.

        Returns:
            Dict with metrics summary for all endpoints
        """
        uptime_seconds = (datetime.now(timezone.utc) - self.start_time).total_seconds()

        with self._lock:
            endpoints = list(self.request_counts.keys())
            degraded = dict(self.degraded_counts)
            active = self.active_connections

        summary = {
            "uptime_seconds": uptime_seconds,
            "active_connections": active,
            "degraded": degraded,
            "endpoints": {},
        }

        for endpoint in endpoints:
            p50 = self.get_percentile(endpoint, 50)
            p95 = self.get_percentile(endpoint, 95)
            p99 = self.get_percentile(endpoint, 99)

            with self._lock:
                samples = list(self.latencies[endpoint])
                endpoint_metrics = {
                    "total_requests": self.request_counts[endpoint],
                    "total_errors": self.error_counts[endpoint],
                }
            endpoint_metrics["error_rate_pct"] = round(self.get_error_rate(endpoint), 2)

            if p50 is not None:
                endpoint_metrics["latency_p50_ms"] = round(p50, 2)
            if p95 is not None:
                endpoint_metrics["latency_p95_ms"] = round(p95, 2)
            if p99 is not None:
                endpoint_metrics["latency_p99_ms"] = round(p99, 2)

            if samples:
                endpoint_metrics["latency_avg_ms"] = round(statistics.mean(samples), 2)

            summary["endpoints"][endpoint] = endpoint_metrics

        return summary

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.latencies.clear()
            self.request_counts.clear()
            self.error_counts.clear()
            self.degraded_counts.clear()
            self.active_connections = 0
            self.last_reset = datetime.now(timezone.utc)


# Global metrics collector instance
metrics_collector = MetricsCollector()


def record_request_metrics(endpoint: str, latency_ms: float, is_error: bool = False):
    """
    Convenience function to record all request metrics at once.

    Args:
        endpoint: Endpoint name (e.g. "GET /api/cart")
        latency_ms: Total request latency in milliseconds
        is_error: Whether this request resulted in an error
    """
    metrics_collector.record_latency(endpoint, latency_ms)

    if is_error:
        metrics_collector.record_error(endpoint)
