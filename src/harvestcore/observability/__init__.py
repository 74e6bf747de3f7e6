"""Logging and metrics for harvestcore."""

from __future__ import annotations

from .logging import configure_logging
from .metrics import METRICS, gauge_add, increment, observe, start_metrics_server

__all__ = ["configure_logging", "METRICS", "gauge_add", "increment", "observe", "start_metrics_server"]
