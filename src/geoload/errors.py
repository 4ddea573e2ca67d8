"""
Exception hierarchy for geoload.

Per-request failures (``RequestError`` and its subclasses) are raised by the
HTTP client and absorbed by virtual users as failed outcomes. Only
``ConfigurationError`` and ``AggregationError`` are allowed to reach the
caller of a run.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Classification of a failed request attempt."""

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    CHECK = "check"


class GeoloadError(Exception):
    """Base exception for geoload errors."""

    pass


class ConfigurationError(GeoloadError, ValueError):
    """Raised when a scenario is malformed. Fatal before any virtual user spawns."""

    pass


class AggregationError(GeoloadError, RuntimeError):
    """Raised when the metrics aggregator detects a broken internal invariant."""

    pass


class RequestError(GeoloadError):
    """Base class for errors raised while issuing a single request."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class TransportError(RequestError):
    """Connection refused, DNS failure, TLS failure or any other transport problem."""

    kind = ErrorKind.TRANSPORT


class RequestTimeoutError(RequestError):
    """The request exceeded its per-call timeout."""

    kind = ErrorKind.TIMEOUT
