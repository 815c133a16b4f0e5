"""Process metrics for the trading loop."""

from collections import defaultdict, deque
from typing import Any

# Counter names
CYCLES_RUN = "cycles_run"
CYCLES_SKIPPED_HALTED = "cycles_skipped_halted"
CYCLES_SKIPPED_BUSY = "cycles_skipped_busy"
DECISIONS_DEGRADED = "decisions_degraded"
ORDERS_FILLED = "orders_filled"
ORDERS_REJECTED = "orders_rejected"
ORDERS_FAILED = "orders_failed"
ORDER_ATTEMPTS = "order_attempts"
LESSONS_WRITTEN = "lessons_written"
LESSONS_QUEUED = "lessons_queued"
TRADES_CLOSED = "trades_closed"

# Gauge names
EQUITY = "equity"
DRAWDOWN = "drawdown"
HEARTBEAT_INTERVAL = "heartbeat_interval_sec"

# Histogram names
SUBMIT_LATENCY = "submit_latency_sec"

_MAX_HISTOGRAM_SAMPLES = 1000


class SystemMetrics:
    """Counters, gauges and bounded histograms."""

    def __init__(self, max_samples: int = _MAX_HISTOGRAM_SAMPLES) -> None:
        self._max_samples = max_samples
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = {}

    def increment(self, metric: str, value: int = 1) -> None:
        """Add ``value`` to a counter."""
        self._counters[metric] += value

    def set_gauge(self, metric: str, value: float) -> None:
        """Overwrite a gauge value."""
        self._gauges[metric] = value

    def record_histogram(self, metric: str, value: float) -> None:
        """Record a histogram sample; only the latest ``max_samples`` are kept."""
        samples = self._histograms.get(metric)
        if samples is None:
            samples = deque(maxlen=self._max_samples)
            self._histograms[metric] = samples
        samples.append(value)

    def get_counter(self, metric: str) -> int:
        return self._counters.get(metric, 0)

    def get_counters(self) -> dict[str, int]:
        """Snapshot of every counter."""
        return dict(self._counters)

    def get_gauges(self) -> dict[str, float]:
        """Snapshot of every gauge."""
        return dict(self._gauges)

    def get_histogram_stats(self, metric: str) -> dict[str, float]:
        samples = self._histograms.get(metric)
        if not samples:
            return {"count": 0, "mean": 0.0, "max": 0.0}
        return {
            "count": len(samples),
            "mean": sum(samples) / len(samples),
            "max": max(samples),
        }

    def get_summary(self) -> dict[str, Any]:
        """Counters, gauges and histogram stats in one dict."""
        return {
            "counters": self.get_counters(),
            "gauges": self.get_gauges(),
            "histograms": {name: self.get_histogram_stats(name) for name in self._histograms},
        }

    def reset(self) -> None:
        """Clear everything (tests)."""
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()


# Process-wide registry; components accept a sink for tests.
metrics = SystemMetrics()
