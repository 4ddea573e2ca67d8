"""
Thread-safe accumulation of request outcomes from all virtual users.
"""

from __future__ import annotations

import random
import threading
import time
from collections import Counter as TallyCounter
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from geoload.errors import AggregationError
from geoload.models import CheckCounts, MetricsSnapshot, RequestOutcome
from geoload.observability.metrics import METRICS

logger = structlog.get_logger(__name__)


def _sorted_latencies(samples: List[float]) -> Tuple[float, ...]:
    return tuple(np.sort(np.asarray(samples, dtype=float)).tolist())


class MetricsAggregator:
    """
    Collects outcomes concurrently and produces immutable snapshots.

    Every latency is kept until ``max_samples`` is reached; after that a
    uniform reservoir (Algorithm R) of ``max_samples`` latencies is maintained
    so percentiles stay representative on arbitrarily long runs.
    """

    def __init__(self, max_samples: int = 500_000, seed: Optional[int] = None) -> None:
        if max_samples <= 0:
            raise ValueError("max_samples must be positive")
        self.max_samples = max_samples
        self._lock = threading.Lock()
        self._rng = random.Random(seed)

        self._requests = 0
        self._failed = 0
        self._status_counts: TallyCounter[int] = TallyCounter()
        self._error_counts: TallyCounter[str] = TallyCounter()
        self._samples: List[float] = []
        self._check_passes: TallyCounter[str] = TallyCounter()
        self._check_fails: TallyCounter[str] = TallyCounter()
        self._started_at: Optional[float] = None
        self._ended_at: Optional[float] = None

    def mark_started(self, at: Optional[float] = None) -> None:
        with self._lock:
            self._started_at = time.time() if at is None else at

    def mark_finished(self, at: Optional[float] = None) -> None:
        with self._lock:
            self._ended_at = time.time() if at is None else at

    def record(self, outcome: RequestOutcome) -> None:
        """Account for one outcome. Safe to call from any thread or task."""
        latency_ms = outcome.latency_ms
        with self._lock:
            if self._started_at is None:
                self._started_at = outcome.timestamp - outcome.latency
            self._requests += 1
            self._status_counts[outcome.status] += 1
            if outcome.failed:
                self._failed += 1
            if outcome.error is not None:
                self._error_counts[outcome.error.value] += 1

            if len(self._samples) < self.max_samples:
                self._samples.append(latency_ms)
            else:
                slot = self._rng.randrange(self._requests)
                if slot < self.max_samples:
                    self._samples[slot] = latency_ms

            for name, passed in outcome.checks.items():
                if passed:
                    self._check_passes[name] += 1
                else:
                    self._check_fails[name] += 1

        for name, passed in outcome.checks.items():
            METRICS["checks_total"].labels(check=name, result="pass" if passed else "fail").inc()

    @property
    def requests(self) -> int:
        with self._lock:
            return self._requests

    def snapshot(self) -> MetricsSnapshot:
        """Return an immutable view of everything recorded so far."""
        with self._lock:
            self._verify_invariants()
            names = set(self._check_passes) | set(self._check_fails)
            checks: Dict[str, CheckCounts] = {
                name: CheckCounts(passes=self._check_passes[name], fails=self._check_fails[name])
                for name in sorted(names)
            }
            counts = dict(
                requests=self._requests,
                failed_requests=self._failed,
                status_counts=dict(self._status_counts),
                error_counts=dict(self._error_counts),
                checks=checks,
                started_at=self._started_at,
                ended_at=self._ended_at if self._ended_at is not None else time.time(),
            )
            samples = list(self._samples)
        # Sorted outside the lock.
        return MetricsSnapshot(latencies=_sorted_latencies(samples), **counts)

    def _verify_invariants(self) -> None:
        status_total = sum(self._status_counts.values())
        if status_total != self._requests:
            raise AggregationError(f"status counts ({status_total}) disagree with request count ({self._requests})")
        if not 0 <= self._failed <= self._requests:
            raise AggregationError(f"failed count {self._failed} outside [0, {self._requests}]")
        expected_samples = min(self._requests, self.max_samples)
        if len(self._samples) != expected_samples:
            raise AggregationError(f"latency sample count {len(self._samples)} != expected {expected_samples}")
        for name in set(self._check_passes) | set(self._check_fails):
            total = self._check_passes[name] + self._check_fails[name]
            if total > self._requests:
                raise AggregationError(f"check {name!r} evaluated {total} times for {self._requests} requests")
