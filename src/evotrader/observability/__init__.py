"""Observability module -- counters, gauges and latency histograms."""

from .metrics import SystemMetrics, metrics

__all__ = [
    "SystemMetrics",
    "metrics",
]
