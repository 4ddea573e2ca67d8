"""
Load test orchestration for geoload.
"""

from __future__ import annotations

import asyncio
import random
import signal
import time
from typing import Optional
from uuid import uuid4

import structlog

from geoload.config import Config
from geoload.engine.aggregator import MetricsAggregator
from geoload.engine.checks import CheckSet
from geoload.engine.http_client import HttpClient
from geoload.engine.request_factory import RequestFactory
from geoload.engine.scheduler import StageScheduler
from geoload.engine.thresholds import ThresholdEvaluator
from geoload.engine.virtual_user import VirtualUser
from geoload.models import RunResult
from geoload.observability.metrics import MetricsManager


class LoadTestRunner:
    """
    Runs one scenario end to end.

    Builds the shared client, aggregator and request factory, hands a VU
    factory to the stage scheduler and evaluates thresholds once the last
    user has stopped. Configuration problems surface before anything spawns.
    """

    def __init__(
        self,
        config: Config,
        *,
        client: Optional[HttpClient] = None,
        aggregator: Optional[MetricsAggregator] = None,
        handle_signals: bool = False,
        export_metrics: bool = False,
    ) -> None:
        self.config = config
        self.run_id = uuid4().hex[:12]
        self.logger = structlog.get_logger(self.__class__.__name__)

        # Parsing thresholds up front raises ConfigurationError before any VU exists.
        self.evaluator = ThresholdEvaluator(config.threshold_specs())
        self.checks = CheckSet.from_mapping(config.checks)
        self.factory = RequestFactory(
            config.target.url,
            radius=config.target.radius,
            page=config.target.page,
            limit=config.target.limit,
            precision=config.target.precision,
        )
        self.client = client if client is not None else HttpClient.from_config(config)
        self.aggregator = aggregator if aggregator is not None else MetricsAggregator(seed=config.seed)
        self.scheduler = StageScheduler(
            config.stage_plan(),
            self._make_user,
            tick_interval=config.tick_interval_seconds,
            start_vus=config.vus,
            graceful_stop=config.graceful_stop_seconds,
            on_tick=self._on_tick,
        )
        self.handle_signals = handle_signals
        self.metrics_manager = MetricsManager(config.monitoring) if export_metrics else None
        self._last_progress = 0.0

    def _make_user(self, vu_id: int) -> VirtualUser:
        seed = None if self.config.seed is None else self.config.seed + vu_id
        return VirtualUser(
            vu_id,
            client=self.client,
            factory=self.factory,
            aggregator=self.aggregator,
            checks=self.checks,
            interval=self.config.request_interval_seconds,
            timeout=self.config.request_timeout_seconds,
            expected_statuses=self.config.expected_statuses,
            rng=random.Random(seed),
        )

    def stop(self) -> None:
        self.scheduler.stop()

    async def run(self) -> RunResult:
        structlog.contextvars.bind_contextvars(run_id=self.run_id)
        self.logger.info(
            "Load test starting",
            target=self.config.target.url,
            stages=[(stage.duration, stage.target) for stage in self.config.stages],
            thresholds=[spec.label for spec in self.evaluator.specs],
            request_interval=self.config.request_interval_seconds,
        )
        if self.handle_signals:
            self._setup_signal_handlers()
        if self.metrics_manager is not None:
            self.metrics_manager.start()

        started = time.monotonic()
        try:
            async with self.client:
                self.aggregator.mark_started()
                await self.scheduler.run()
                self.aggregator.mark_finished()
        finally:
            if self.handle_signals:
                self._cleanup_signal_handlers()
            if self.metrics_manager is not None:
                self.metrics_manager.stop()
            structlog.contextvars.unbind_contextvars("run_id")

        snapshot = self.aggregator.snapshot()
        result = RunResult(
            thresholds=self.evaluator.evaluate(snapshot),
            snapshot=snapshot,
            max_vus=self.scheduler.max_vus_seen,
            final_vus=self.scheduler.live_vus,
            duration=time.monotonic() - started,
            interrupted=self.scheduler.interrupted,
        )
        self.logger.info(
            "Load test finished",
            run_id=self.run_id,
            passed=result.passed,
            requests=snapshot.requests,
            failed_requests=snapshot.failed_requests,
            p99_ms=round(snapshot.percentile(99), 3),
            failed_thresholds=[r.spec.label for r in result.failed_thresholds],
        )
        return result

    def _on_tick(self, scheduler: StageScheduler, elapsed: float, target: int) -> None:
        now = time.monotonic()
        if now - self._last_progress < self.config.monitoring.progress_interval_seconds:
            return
        self._last_progress = now

        snapshot = self.aggregator.snapshot()
        self.logger.info(
            "Progress",
            elapsed=round(elapsed, 1),
            stage=scheduler.stage_index + 1,
            vus=scheduler.live_vus,
            target=target,
            requests=snapshot.requests,
            failure_rate=round(snapshot.failure_rate, 4),
            p99_ms=round(snapshot.percentile(99), 3),
        )
        for result in self.evaluator.evaluate(snapshot):
            if not result.passed:
                self.logger.debug("Threshold currently crossed", threshold=result.spec.label, observed=result.observed)

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform/loop (e.g. Windows)
                self.logger.debug("Signal handlers unavailable", signal=sig.name)

    def _cleanup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


async def run_scenario(config: Config, **kwargs) -> RunResult:
    """Convenience wrapper: build a runner for ``config`` and run it."""
    return await LoadTestRunner(config, **kwargs).run()
