"""
Threshold parsing and evaluation.

Expressions follow the k6 syntax, e.g. ``http_req_duration: p(99)<150`` or
``http_req_failed: rate<0.01``. Latency values are compared in milliseconds.
"""

from __future__ import annotations

import operator
import re
from typing import Callable, Dict, FrozenSet, Iterable, Sequence, Tuple

from geoload.errors import ConfigurationError
from geoload.models import MetricsSnapshot, ThresholdResult, ThresholdSpec

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|rate|count|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

SUPPORTED_AGGREGATIONS: Dict[str, FrozenSet[str]] = {
    "http_req_duration": frozenset({"avg", "min", "max", "med", "p"}),
    "http_req_failed": frozenset({"rate"}),
    "checks": frozenset({"rate"}),
    "http_reqs": frozenset({"count", "rate"}),
}


def parse_threshold(metric: str, expression: str) -> ThresholdSpec:
    """Parse one threshold expression for ``metric``; raises ConfigurationError when malformed."""
    if metric not in SUPPORTED_AGGREGATIONS:
        raise ConfigurationError(
            f"Unknown threshold metric {metric!r}; expected one of {sorted(SUPPORTED_AGGREGATIONS)}"
        )
    if not isinstance(expression, str):
        raise ConfigurationError(f"Threshold for {metric!r} must be a string, got {expression!r}")

    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(f"Malformed threshold expression for {metric!r}: {expression!r}")

    pct = match.group("pct")
    aggregation = "p" if pct is not None else match.group("agg")
    if aggregation not in SUPPORTED_AGGREGATIONS[metric]:
        raise ConfigurationError(f"Aggregation {match.group('agg')!r} is not supported for metric {metric!r}")

    percentile = float(pct) if pct is not None else None
    if percentile is not None and not 0 <= percentile <= 100:
        raise ConfigurationError(f"Percentile out of range in {expression!r}")

    return ThresholdSpec(
        metric=metric,
        aggregation=aggregation,
        operator=match.group("op"),
        bound=float(match.group("bound")),
        expression=expression.strip(),
        percentile=percentile,
    )


def observe(spec: ThresholdSpec, snapshot: MetricsSnapshot) -> float:
    """Return the snapshot value the threshold compares against."""
    if spec.metric == "http_req_duration":
        if spec.aggregation == "p":
            assert spec.percentile is not None
            return snapshot.percentile(spec.percentile)
        return float(getattr(snapshot, spec.aggregation))
    if spec.metric == "http_req_failed":
        return snapshot.failure_rate
    if spec.metric == "checks":
        return snapshot.checks_rate
    if spec.metric == "http_reqs":
        return float(snapshot.requests) if spec.aggregation == "count" else snapshot.request_rate
    raise ConfigurationError(f"Unknown threshold metric {spec.metric!r}")


class ThresholdEvaluator:
    """Evaluates a fixed set of thresholds against metrics snapshots."""

    def __init__(self, specs: Iterable[ThresholdSpec]) -> None:
        self.specs: Tuple[ThresholdSpec, ...] = tuple(specs)

    @classmethod
    def from_mapping(cls, thresholds: Dict[str, Sequence[str]]) -> "ThresholdEvaluator":
        return cls(parse_threshold(metric, expr) for metric, exprs in thresholds.items() for expr in exprs)

    def evaluate(self, snapshot: MetricsSnapshot) -> Tuple[ThresholdResult, ...]:
        results = []
        for spec in self.specs:
            observed = observe(spec, snapshot)
            results.append(
                ThresholdResult(spec=spec, observed=observed, passed=OPERATORS[spec.operator](observed, spec.bound))
            )
        return tuple(results)

    def passed(self, snapshot: MetricsSnapshot) -> bool:
        return all(result.passed for result in self.evaluate(snapshot))
