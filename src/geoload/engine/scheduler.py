"""
Stage scheduler: ramps the virtual-user population through timed stages.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence

import structlog

from geoload.errors import AggregationError, ConfigurationError
from geoload.models import Stage
from geoload.observability.metrics import METRICS

logger = structlog.get_logger(__name__)


class User(Protocol):
    async def run(self) -> Any: ...

    def retire(self) -> None: ...


UserFactory = Callable[[int], User]
TickCallback = Callable[["StageScheduler", float, int], None]


def target_at(stages: Sequence[Stage], elapsed: float, start_target: int = 0) -> int:
    """
    Interpolated VU target ``elapsed`` seconds into the run.

    Each stage ramps linearly from the previous stage's target (``start_target``
    for the first) to its own; zero-duration stages apply instantly and the
    last target holds once every stage has elapsed.
    """
    previous = start_target
    stage_start = 0.0
    for stage in stages:
        if stage.duration > 0 and elapsed < stage_start + stage.duration:
            fraction = max(0.0, elapsed - stage_start) / stage.duration
            return int(math.floor(previous + (stage.target - previous) * fraction + 0.5))
        stage_start += stage.duration
        previous = stage.target
    return previous


@dataclass
class _Slot:
    vu_id: int
    user: User
    task: "asyncio.Task[Any]"


class StageScheduler:
    """
    Owns the VU population and converges it on the stage target every tick.

    Excess users are retired newest-first. A failed spawn is logged and
    retried on the following tick; only an ``AggregationError`` raised by a
    user aborts the run.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        user_factory: UserFactory,
        *,
        tick_interval: float = 1.0,
        start_vus: int = 0,
        graceful_stop: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_tick: Optional[TickCallback] = None,
    ) -> None:
        if not stages:
            raise ConfigurationError("at least one stage is required")
        if tick_interval <= 0:
            raise ConfigurationError("tick_interval must be positive")
        if start_vus < 0:
            raise ConfigurationError("start_vus cannot be negative")

        self.stages: List[Stage] = list(stages)
        self.user_factory = user_factory
        self.tick_interval = tick_interval
        self.start_vus = start_vus
        self.graceful_stop = graceful_stop
        self.clock = clock
        self.on_tick = on_tick

        self.max_target = max([start_vus] + [stage.target for stage in self.stages])
        self.total_duration = sum(stage.duration for stage in self.stages)

        self._active: List[_Slot] = []
        self._retiring: List[_Slot] = []
        self._next_id = 1
        self._stop_event = asyncio.Event()
        self._fatal: Optional[BaseException] = None
        self._started_at: Optional[float] = None

        self.current_target = 0
        self.max_vus_seen = 0
        self.spawn_failures = 0
        self.spawned = 0
        self.interrupted = False

    # -- introspection -------------------------------------------------------

    @property
    def live_vus(self) -> int:
        """Active users, excluding those already signalled to retire."""
        return len(self._active)

    @property
    def retiring_vus(self) -> int:
        return len(self._retiring)

    @property
    def elapsed(self) -> float:
        return 0.0 if self._started_at is None else self.clock() - self._started_at

    @property
    def stage_index(self) -> int:
        elapsed = self.elapsed
        boundary = 0.0
        for index, stage in enumerate(self.stages):
            boundary += stage.duration
            if elapsed < boundary:
                return index
        return len(self.stages) - 1

    def target_at(self, elapsed: float) -> int:
        return target_at(self.stages, elapsed, self.start_vus)

    # -- control -------------------------------------------------------------

    def stop(self) -> None:
        """Request an early, graceful end of the run."""
        if not self._stop_event.is_set():
            logger.info("Stop requested, winding down virtual users", live_vus=self.live_vus)
            self.interrupted = True
            self._stop_event.set()

    async def run(self) -> None:
        """Drive every stage to completion, then retire all users."""
        self._started_at = self.clock()
        logger.info(
            "Scheduler starting",
            stages=len(self.stages),
            total_duration=self.total_duration,
            max_target=self.max_target,
            tick_interval=self.tick_interval,
        )
        try:
            while True:
                self._reap()
                self._raise_if_fatal()

                elapsed = self.elapsed
                self.current_target = self.target_at(elapsed)
                self._converge(self.current_target)
                self._publish(elapsed)

                if elapsed >= self.total_duration or self._stop_event.is_set():
                    break

                wait = min(self.tick_interval, self.total_duration - elapsed)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._wind_down()

        self._raise_if_fatal()
        logger.info(
            "Scheduler finished",
            spawned=self.spawned,
            max_vus=self.max_vus_seen,
            spawn_failures=self.spawn_failures,
            interrupted=self.interrupted,
        )

    # -- internals -----------------------------------------------------------

    def _converge(self, target: int) -> None:
        delta = target - len(self._active)
        if delta > 0:
            for _ in range(delta):
                if not self._spawn():
                    break
        elif delta < 0:
            for _ in range(-delta):
                slot = self._active.pop()
                slot.user.retire()
                self._retiring.append(slot)
        self.max_vus_seen = max(self.max_vus_seen, len(self._active))

    def _spawn(self) -> bool:
        vu_id = self._next_id
        try:
            user = self.user_factory(vu_id)
            task = asyncio.create_task(user.run(), name=f"vu-{vu_id}")
        except Exception as e:
            self.spawn_failures += 1
            METRICS["vus_spawn_failures_total"].inc()
            logger.error("Failed to spawn virtual user, retrying next tick", vu=vu_id, error=str(e))
            return False

        self._next_id += 1
        self.spawned += 1
        task.add_done_callback(self._on_user_done)
        self._active.append(_Slot(vu_id=vu_id, user=user, task=task))
        return True

    def _on_user_done(self, task: "asyncio.Task[Any]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, AggregationError) and self._fatal is None:
            self._fatal = error
            self._stop_event.set()

    def _reap(self) -> None:
        """Drop finished users; crashed active users are replaced on the next convergence."""
        for slot in [s for s in self._active if s.task.done()]:
            self._active.remove(slot)
            if not slot.task.cancelled() and slot.task.exception() is not None:
                logger.error("Virtual user crashed", vu=slot.vu_id, error=str(slot.task.exception()))
        self._retiring = [s for s in self._retiring if not s.task.done()]

    def _raise_if_fatal(self) -> None:
        if self._fatal is not None:
            raise self._fatal

    def _publish(self, elapsed: float) -> None:
        METRICS["vus"].set(len(self._active))
        METRICS["vus_target"].set(self.current_target)
        if self.on_tick is not None:
            self.on_tick(self, elapsed, self.current_target)

    async def _wind_down(self) -> None:
        for slot in self._active:
            slot.user.retire()
        self._retiring.extend(self._active)
        self._active = []
        METRICS["vus"].set(0)

        tasks = [slot.task for slot in self._retiring]
        self._retiring = []
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=self.graceful_stop)
        if pending:
            logger.warning("Cancelling virtual users that did not stop in time", count=len(pending))
            for task in pending:
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, AggregationError) and self._fatal is None:
                self._fatal = result
