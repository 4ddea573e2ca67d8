"""
Named per-response assertions recorded alongside every outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

from geoload.engine.http_client import HttpResponse


@dataclass(frozen=True)
class StatusCheck:
    """Passes when the response status equals ``expected``."""

    name: str
    expected: int

    def evaluate(self, response: Optional[HttpResponse]) -> bool:
        return response is not None and response.status == self.expected


class CheckSet:
    """The checks of a scenario, evaluated together against one response."""

    def __init__(self, checks: Iterable[StatusCheck]) -> None:
        self.checks: Tuple[StatusCheck, ...] = tuple(checks)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, int]) -> "CheckSet":
        return cls(StatusCheck(name=name, expected=status) for name, status in mapping.items())

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(check.name for check in self.checks)

    def evaluate(self, response: Optional[HttpResponse]) -> Dict[str, bool]:
        """Evaluate every check; a missing response (transport error, timeout) fails them all."""
        return {check.name: check.evaluate(response) for check in self.checks}
