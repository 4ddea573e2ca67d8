"""
Shared aiohttp client used by every virtual user, with per-request timeouts and observability.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
import structlog

from geoload.errors import RequestTimeoutError, TransportError
from geoload.models import RequestSpec
from geoload.observability.metrics import METRICS

logger = structlog.get_logger(__name__)


@dataclass
class HttpResponse:
    """A received response with timing information."""

    status: int
    start_ts: float
    end_ts: float
    latency: float  # seconds, monotonic
    url: str
    body_size: int = 0


class HttpClient:
    """Connection-pooled HTTP client shared by all virtual users of a run."""

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        insecure_skip_tls_verify: bool = False,
        no_connection_reuse: bool = False,
        user_agent: str = "geoload/0.1.0",
    ) -> None:
        self.timeout = timeout
        self.insecure_skip_tls_verify = insecure_skip_tls_verify
        self.no_connection_reuse = no_connection_reuse
        self.user_agent = user_agent

        # Session and connector will be initialized in initialize()
        self.connector: Optional[aiohttp.TCPConnector] = None
        self.session: Optional[aiohttp.ClientSession] = None
        self._is_initialized = False

        self._in_flight_requests = 0
        self._sent = 0

    @classmethod
    def from_config(cls, config: Any) -> "HttpClient":
        return cls(
            timeout=config.request_timeout_seconds,
            insecure_skip_tls_verify=config.insecure_skip_tls_verify,
            no_connection_reuse=config.no_connection_reuse,
        )

    async def initialize(self) -> None:
        """Initialize the HTTP client session."""
        if self.session is not None:
            return

        self.connector = aiohttp.TCPConnector(
            limit=0,  # No global limit, concurrency is governed by the VU count
            ttl_dns_cache=30,
            use_dns_cache=True,
            force_close=self.no_connection_reuse,
            ssl=False if self.insecure_skip_tls_verify else None,
        )
        self.session = aiohttp.ClientSession(
            connector=self.connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"User-Agent": self.user_agent},
        )
        self._is_initialized = True

        logger.info(
            "HTTP client session initialized",
            timeout=self.timeout,
            insecure_skip_tls_verify=self.insecure_skip_tls_verify,
            no_connection_reuse=self.no_connection_reuse,
        )

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None
        self.connector = None
        self._is_initialized = False
        logger.info("HTTP client closed", requests_sent=self._sent)

    async def __aenter__(self) -> "HttpClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _set_in_flight(self, delta: int) -> None:
        self._in_flight_requests += delta
        METRICS["in_flight_requests"].set(self._in_flight_requests)

    async def send(self, spec: RequestSpec, *, timeout: Optional[float] = None) -> HttpResponse:
        """
        Issue ``spec`` and read the full body.

        Raises:
            RequestTimeoutError: the request (including the body) exceeded ``timeout``.
            TransportError: no response could be obtained.
        """
        if not self._is_initialized or self.session is None:
            raise RuntimeError("HTTP client not initialized. Call initialize() first.")

        timeout = self.timeout if timeout is None else timeout
        url = spec.full_url
        start_ts = time.time()
        started = time.perf_counter()
        self._set_in_flight(1)
        self._sent += 1

        try:
            async with asyncio.timeout(timeout):
                async with self.session.request(spec.method, url) as response:
                    body = await response.read()
                    status = response.status
        except TimeoutError as e:
            latency = time.perf_counter() - started
            self._observe_error("timeout", latency)
            raise RequestTimeoutError(f"Request timed out after {timeout}s", url=url) from e
        except (aiohttp.ClientError, OSError) as e:
            latency = time.perf_counter() - started
            self._observe_error("transport", latency)
            raise TransportError(f"{type(e).__name__}: {e}", url=url) from e
        finally:
            self._set_in_flight(-1)

        latency = time.perf_counter() - started
        METRICS["requests_total"].labels(status_class=f"{status // 100}xx").inc()
        METRICS["request_duration_seconds"].observe(latency)

        return HttpResponse(
            status=status,
            start_ts=start_ts,
            end_ts=start_ts + latency,
            latency=latency,
            url=url,
            body_size=len(body),
        )

    def _observe_error(self, kind: str, latency: float) -> None:
        METRICS["request_errors_total"].labels(kind=kind).inc()
        METRICS["request_duration_seconds"].observe(latency)

    def get_stats(self) -> Dict[str, Any]:
        """Get current client statistics."""
        return {
            "in_flight_requests": self._in_flight_requests,
            "requests_sent": self._sent,
        }
