"""Logging and Prometheus metrics for crawlstream."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .logging import bind_crawl_context, configure_logging
from .metrics import METRICS, MetricsManager

__all__ = [
    "METRICS",
    "MetricsManager",
    "bind_crawl_context",
    "configure_logging",
    "histogram",
    "increment",
    "metric_value",
]


def increment(name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    """Increment a counter metric."""
    if name in METRICS:
        metric = METRICS[name]
        if labels is not None:
            metric.labels(**labels).inc(value)
        else:
            metric.inc(value)


def histogram(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Observe a histogram metric."""
    if name in METRICS:
        metric = METRICS[name]
        if labels is not None:
            metric.labels(**labels).observe(value)
        else:
            metric.observe(value)


def metric_value(name: str, labels: Optional[Dict[str, Any]] = None) -> float:
    """Current value of a counter, 0.0 when it has never been touched."""
    if name not in METRICS:
        return 0.0
    metric = METRICS[name]
    if labels is not None:
        metric = metric.labels(**labels)
    return float(metric._value.get())
