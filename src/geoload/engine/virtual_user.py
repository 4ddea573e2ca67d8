"""
A virtual user: one simulated client repeatedly hitting the search endpoint.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Container, Optional

import structlog

from geoload.engine.aggregator import MetricsAggregator
from geoload.engine.checks import CheckSet
from geoload.engine.http_client import HttpClient, HttpResponse
from geoload.engine.request_factory import RequestFactory
from geoload.errors import ErrorKind, RequestError
from geoload.models import RequestOutcome

logger = structlog.get_logger(__name__)


class VirtualUser:
    """
    Runs the request loop until retired.

    Each iteration builds a request, sends it, records exactly one outcome
    and sleeps for the configured interval. Retirement is cooperative: it is
    honoured between iterations and interrupts the sleep, never a request.
    """

    def __init__(
        self,
        vu_id: int,
        *,
        client: HttpClient,
        factory: RequestFactory,
        aggregator: MetricsAggregator,
        checks: CheckSet,
        interval: float = 1.0,
        timeout: Optional[float] = None,
        expected_statuses: Container[int] = range(200, 400),
        rng: Optional[random.Random] = None,
    ) -> None:
        self.vu_id = vu_id
        self.client = client
        self.factory = factory
        self.aggregator = aggregator
        self.checks = checks
        self.interval = interval
        self.timeout = timeout
        self.expected_statuses = expected_statuses
        self.rng = rng if rng is not None else random.Random()
        self.iterations = 0
        self._retire_event = asyncio.Event()

    @property
    def retiring(self) -> bool:
        return self._retire_event.is_set()

    def retire(self) -> None:
        """Ask the user to stop after its current iteration."""
        self._retire_event.set()

    async def run(self) -> int:
        """Loop until retired; returns the number of completed iterations."""
        while not self._retire_event.is_set():
            await self.iterate()
            await self._pause()
        return self.iterations

    async def iterate(self) -> RequestOutcome:
        self.iterations += 1
        spec = self.factory.build(self.rng)

        response: Optional[HttpResponse] = None
        error: Optional[ErrorKind] = None
        started = time.perf_counter()
        try:
            response = await self.client.send(spec, timeout=self.timeout)
        except RequestError as e:
            error = e.kind
            logger.debug("Request failed", vu=self.vu_id, kind=e.kind.value, url=e.url, error=str(e))
        elapsed = time.perf_counter() - started

        check_results = self.checks.evaluate(response)
        if response is not None and not all(check_results.values()):
            logger.debug(
                "Check failed",
                vu=self.vu_id,
                kind=ErrorKind.CHECK.value,
                status=response.status,
                checks=check_results,
            )

        outcome = RequestOutcome(
            status=response.status if response is not None else 0,
            latency=response.latency if response is not None else elapsed,
            timestamp=response.end_ts if response is not None else time.time(),
            checks=check_results,
            error=error,
            failed=response is None or response.status not in self.expected_statuses,
            vu_id=self.vu_id,
            iteration=self.iterations,
        )
        self.aggregator.record(outcome)
        return outcome

    async def _pause(self) -> None:
        if self.interval <= 0:
            # Still yield so a zero interval cannot starve the scheduler.
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._retire_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass
