"""Logging and Prometheus metrics for the load generator."""

from __future__ import annotations

from .logging import configure_logging
from .metrics import METRICS, MetricsManager

__all__ = ["configure_logging", "METRICS", "MetricsManager"]
