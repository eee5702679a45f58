"""
Defines and manages Prometheus metrics for crawlstream.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from crawlstream.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

_TEST_MODE = os.environ.get("CRAWLSTREAM_TEST_MODE", "0") == "1"

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Re-importing this module (the test suite does) must not trip the registry's
# duplicate-name check.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        # prometheus_client registers counters under the "_total"-stripped name as well
        for key in (name, name.removesuffix("_total")):
            existing = _PROM_REGISTRY._names_to_collectors.get(key)
            if existing is not None:
                return existing  # type: ignore[return-value]
        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "items_emitted": Counter(
            "crawlstream_items_emitted_total",
            "Stream bits carrying an item or a per-record fault",
            ["mode", "result"],
        ),
        "fetch_attempts": Counter(
            "crawlstream_fetch_attempts_total",
            "Page fetch attempts by outcome",
            ["outcome"],
        ),
        "page_fetch_latency_seconds": Histogram(
            "crawlstream_page_fetch_latency_seconds",
            "Time taken by one successful page fetch attempt",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
        ),
        "crawls": Counter(
            "crawlstream_crawls_total",
            "Finished crawls by mode and terminal result",
            ["mode", "result"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Starts the Prometheus exporter when a port is configured."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self.started = False

    def start(self) -> None:
        if _TEST_MODE or not self.config.prometheus_port:
            return
        logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
        start_http_server(self.config.prometheus_port)
        self.started = True

