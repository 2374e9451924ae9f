"""Internal metrics tracking for the correlation engines."""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict


class MetricsCollector:
    """Simple in-memory metrics collector."""

    def __init__(self, histogram_size: int = 1000) -> None:
        """Initialize metrics collector.

        Args:
            histogram_size: Number of most recent values kept per histogram
        """
        self.histogram_size = histogram_size
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, list] = defaultdict(list)

    def increment(self, metric: str, value: int = 1) -> None:
        """Increment a counter metric.

        Args:
            metric: Metric name
            value: Value to add (default: 1)
        """
        self.counters[metric] += value

    def set_gauge(self, metric: str, value: float) -> None:
        """Set a gauge metric."""
        self.gauges[metric] = value

    def record_histogram(self, metric: str, value: float) -> None:
        """Record a histogram value, keeping a bounded window."""
        values = self.histograms[metric]
        values.append(value)
        if len(values) > self.histogram_size:
            del values[: len(values) - self.histogram_size]

    def get_snapshot(self) -> Dict[str, Any]:
        """Get a snapshot of all metrics.

        Returns:
            Dictionary containing all current metrics
        """
        snapshot = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "histograms": {},
        }

        for metric, values in self.histograms.items():
            if values:
                snapshot["histograms"][metric] = {
                    "count": len(values),
                    "min": min(values),
                    "max": max(values),
                    "avg": sum(values) / len(values),
                }

        return snapshot


# Global metrics collector instance
metrics = MetricsCollector()
