"""
Defines and manages Prometheus metrics for the load generator.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict, Optional

import psutil
import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from geoload.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so that reloading this module (the test
# suite does so between tests) reuses the registered collectors instead of
# failing with a duplicate registration error.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]

METRICS: Dict[str, Any] = {}


def _create_metrics() -> Dict[str, Any]:
    """Create (or look up) every geoload collector."""
    return {
        "requests_total": Counter(
            "geoload_requests_total",
            "Total number of completed request attempts by status class",
            ["status_class"],
        ),
        "request_duration_seconds": Histogram(
            "geoload_request_duration_seconds",
            "Latency of request attempts, including failed ones",
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.15, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        ),
        "request_errors_total": Counter(
            "geoload_request_errors_total",
            "Total number of request attempts that failed without a usable response",
            ["kind"],
        ),
        "checks_total": Counter(
            "geoload_checks_total",
            "Total number of check evaluations by outcome",
            ["check", "result"],
        ),
        "in_flight_requests": Gauge(
            "geoload_in_flight_requests",
            "Number of requests currently in flight",
        ),
        "vus": Gauge(
            "geoload_vus",
            "Number of active virtual users",
        ),
        "vus_target": Gauge(
            "geoload_vus_target",
            "Interpolated virtual-user target at the last scheduler tick",
        ),
        "vus_spawn_failures_total": Counter(
            "geoload_vus_spawn_failures_total",
            "Total number of virtual users that failed to start",
        ),
        "cpu_usage_percent": Gauge(
            "geoload_host_cpu_usage_percent",
            "CPU utilization of the load-generator host",
        ),
        "memory_usage_percent": Gauge(
            "geoload_host_memory_usage_percent",
            "Memory utilization of the load-generator host",
        ),
    }


METRICS = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of the metrics exporter and host sampling."""

    def __init__(self, config: MonitoringConfig, interval: float = 5.0) -> None:
        self.config = config
        self.interval = interval
        self._stop_event = threading.Event()
        self._sampler: Optional[threading.Thread] = None

    def start(self) -> None:
        """Starts the Prometheus server and the host sampling thread."""
        if self.config.prometheus_port:
            logger.info("Starting Prometheus metrics server", port=self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)

        self._stop_event.clear()
        self._sampler = threading.Thread(target=self._sample_loop, name="geoload-host-metrics", daemon=True)
        self._sampler.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._sampler is not None:
            self._sampler.join(timeout=self.interval)
            self._sampler = None

    def _sample_loop(self) -> None:
        while not self._stop_event.is_set():
            self.update_system_metrics()
            # Event wait instead of sleep for cooperative shutdown
            self._stop_event.wait(timeout=self.interval)

    def update_system_metrics(self) -> Dict[str, float]:
        """Sample CPU and memory of the load generator itself."""
        cpu_usage = psutil.cpu_percent()
        memory_usage = psutil.virtual_memory().percent
        METRICS["cpu_usage_percent"].set(cpu_usage)
        METRICS["memory_usage_percent"].set(memory_usage)
        if cpu_usage > 90.0:
            logger.warning("Load generator CPU is saturated; latencies may be inflated", cpu_percent=cpu_usage)
        return {"cpu_usage": cpu_usage, "memory_usage": memory_usage}
