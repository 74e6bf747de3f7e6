"""
Defines Prometheus metrics for crawl jobs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from harvestcore.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        # Counters register under both "<name>" and "<name>_total"
        existing = _PROM_REGISTRY._names_to_collectors.get(name) or _PROM_REGISTRY._names_to_collectors.get(
            f"{name}_total"
        )
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


METRICS: Dict[str, Any] = {
    "requests_issued": Counter(
        "harvestcore_requests_issued_total",
        "Requests admitted by the rate limiter and handed to the browser session",
        ["mode"],
    ),
    "items_completed": Counter(
        "harvestcore_items_completed_total",
        "Work items finished, by job mode and outcome",
        ["mode", "outcome"],
    ),
    "items_in_flight": Gauge(
        "harvestcore_items_in_flight",
        "Work items currently dispatched",
        ["mode"],
    ),
    "rate_limit_wait_seconds": Histogram(
        "harvestcore_rate_limit_wait_seconds",
        "Time spent waiting for a rate limiter slot",
        buckets=[0.0, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0],
    ),
    "backoffs_initiated": Counter(
        "harvestcore_backoffs_initiated_total",
        "Backoff windows opened after classified failures",
        ["kind"],
    ),
    "proxy_evictions": Counter(
        "harvestcore_proxy_evictions_total",
        "Proxies evicted from host assignments after connectivity failures",
    ),
    "checkpoint_saves": Counter(
        "harvestcore_checkpoint_saves_total",
        "Checkpoint snapshots written, by trigger",
        ["trigger"],
    ),
}

_enabled = True


def set_metrics_enabled(enabled: bool) -> None:
    global _enabled
    _enabled = enabled


def increment(name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    """Increment a counter metric."""
    if not _enabled or name not in METRICS:
        return
    metric = METRICS[name]
    if labels is not None:
        metric.labels(**labels).inc(value)
    else:
        metric.inc(value)


def gauge_add(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Add ``value`` (which may be negative) to a gauge metric."""
    if not _enabled or name not in METRICS:
        return
    metric = METRICS[name]
    if labels is not None:
        metric = metric.labels(**labels)
    metric.inc(value)


def observe(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Observe a histogram metric."""
    if not _enabled or name not in METRICS:
        return
    metric = METRICS[name]
    if labels is not None:
        metric.labels(**labels).observe(value)
    else:
        metric.observe(value)


def start_metrics_server(config: MonitoringConfig) -> bool:
    """Start the Prometheus exporter if a port is configured."""
    set_metrics_enabled(config.metrics_enabled)
    if not config.metrics_enabled or config.prometheus_port is None:
        return False
    start_http_server(config.prometheus_port)
    logger.info("Prometheus metrics server started", port=config.prometheus_port)
    return True
