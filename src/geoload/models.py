"""
Core dataclasses shared by the geoload engine.

All values that cross component boundaries are immutable: a ``RequestSpec``
is produced per iteration, a ``RequestOutcome`` is handed to the aggregator
once, and snapshots/results are read-only views of finished state.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import numpy as np

from geoload.errors import ErrorKind

# ============================================================================
# Scenario shapes
# ============================================================================


@dataclass(frozen=True)
class Stage:
    """A timed phase ramping (or holding) the virtual-user target."""

    duration: float  # seconds
    target: int

    def __post_init__(self) -> None:
        if not math.isfinite(self.duration) or self.duration < 0:
            raise ValueError("Stage duration must be a finite, non-negative number of seconds")
        if self.target < 0:
            raise ValueError("Stage target cannot be negative")


@dataclass(frozen=True)
class RequestSpec:
    """One outbound request, fully resolved."""

    method: str
    url: str
    params: Tuple[Tuple[str, str], ...] = ()

    @property
    def full_url(self) -> str:
        if not self.params:
            return self.url
        return f"{self.url}?{urlencode(self.params)}"

    def param(self, name: str) -> Optional[str]:
        for key, value in self.params:
            if key == name:
                return value
        return None


@dataclass(frozen=True)
class RequestOutcome:
    """Result of one completed request attempt."""

    status: int  # 0 when no response was received
    latency: float  # seconds
    timestamp: float = field(default_factory=time.time)
    checks: Mapping[str, bool] = field(default_factory=dict)
    error: Optional[ErrorKind] = None
    failed: bool = False
    vu_id: int = 0
    iteration: int = 0

    @property
    def latency_ms(self) -> float:
        return self.latency * 1000.0


@dataclass(frozen=True)
class ThresholdSpec:
    """A parsed pass/fail predicate such as ``http_req_duration: p(99)<150``."""

    metric: str
    aggregation: str  # "avg", "min", "max", "med", "p", "rate", "count"
    operator: str
    bound: float
    expression: str
    percentile: Optional[float] = None

    @property
    def label(self) -> str:
        return f"{self.metric}: {self.expression}"


@dataclass(frozen=True)
class ThresholdResult:
    spec: ThresholdSpec
    observed: float
    passed: bool


# ============================================================================
# Aggregated views
# ============================================================================


@dataclass(frozen=True)
class CheckCounts:
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time statistics over every outcome recorded so far."""

    requests: int = 0
    failed_requests: int = 0
    status_counts: Mapping[int, int] = field(default_factory=dict)
    error_counts: Mapping[str, int] = field(default_factory=dict)
    latencies: Tuple[float, ...] = ()  # milliseconds, sorted ascending
    checks: Mapping[str, CheckCounts] = field(default_factory=dict)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None

    @cached_property
    def _latency_array(self) -> np.ndarray:
        return np.asarray(self.latencies, dtype=float)

    def percentile(self, p: float) -> float:
        """Latency percentile in milliseconds (linear interpolation), 0 when empty."""
        if not self.latencies:
            return 0.0
        return float(np.percentile(self._latency_array, p))

    @property
    def avg(self) -> float:
        return float(np.mean(self._latency_array)) if self.latencies else 0.0

    @property
    def min(self) -> float:
        return self.latencies[0] if self.latencies else 0.0

    @property
    def max(self) -> float:
        return self.latencies[-1] if self.latencies else 0.0

    @property
    def med(self) -> float:
        return self.percentile(50)

    @property
    def failure_rate(self) -> float:
        return self.failed_requests / self.requests if self.requests else 0.0

    @property
    def checks_passed(self) -> int:
        return sum(c.passes for c in self.checks.values())

    @property
    def checks_failed(self) -> int:
        return sum(c.fails for c in self.checks.values())

    @property
    def checks_rate(self) -> float:
        total = self.checks_passed + self.checks_failed
        return self.checks_passed / total if total else 0.0

    @property
    def elapsed(self) -> float:
        if self.started_at is None or self.ended_at is None:
            return 0.0
        return max(0.0, self.ended_at - self.started_at)

    @property
    def request_rate(self) -> float:
        """Requests per second over the recorded window."""
        elapsed = self.elapsed
        return self.requests / elapsed if elapsed > 0 else 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "requests": self.requests,
            "failed_requests": self.failed_requests,
            "status_counts": dict(self.status_counts),
            "error_counts": dict(self.error_counts),
            "latency_ms": {
                "avg": self.avg,
                "min": self.min,
                "med": self.med,
                "max": self.max,
                "p90": self.percentile(90),
                "p95": self.percentile(95),
                "p99": self.percentile(99),
            },
            "checks": {name: {"passes": c.passes, "fails": c.fails} for name, c in self.checks.items()},
            "request_rate": self.request_rate,
        }


@dataclass(frozen=True)
class RunResult:
    """Terminal summary of one load test run."""

    thresholds: Tuple[ThresholdResult, ...]
    snapshot: MetricsSnapshot
    max_vus: int = 0
    final_vus: int = 0
    duration: float = 0.0
    interrupted: bool = False

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.thresholds)

    @property
    def failed_thresholds(self) -> Tuple[ThresholdResult, ...]:
        return tuple(result for result in self.thresholds if not result.passed)
