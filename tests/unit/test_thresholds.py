"""
Tests for threshold parsing and evaluation.
"""

import pytest
from geoload.engine.thresholds import ThresholdEvaluator, observe, parse_threshold
from geoload.errors import ConfigurationError
from geoload.models import CheckCounts, MetricsSnapshot


def snapshot_with(latencies, **kwargs) -> MetricsSnapshot:
    latencies = tuple(sorted(float(v) for v in latencies))
    kwargs.setdefault("requests", len(latencies))
    kwargs.setdefault("status_counts", {200: kwargs["requests"]})
    return MetricsSnapshot(latencies=latencies, **kwargs)


@pytest.mark.unit
class TestParseThreshold:
    def test_percentile_expression(self):
        spec = parse_threshold("http_req_duration", "p(99)<150")

        assert spec.metric == "http_req_duration"
        assert spec.aggregation == "p"
        assert spec.percentile == 99.0
        assert spec.operator == "<"
        assert spec.bound == 150.0
        assert spec.label == "http_req_duration: p(99)<150"

    @pytest.mark.parametrize(
        "metric,expression,aggregation,operator,bound",
        [
            ("http_req_duration", "avg < 100", "avg", "<", 100.0),
            ("http_req_duration", "p(95)<=200.5", "p", "<=", 200.5),
            ("http_req_duration", "med>=1", "med", ">=", 1.0),
            ("http_req_duration", "max!=0", "max", "!=", 0.0),
            ("http_req_failed", "rate<0.01", "rate", "<", 0.01),
            ("checks", "rate>0.99", "rate", ">", 0.99),
            ("http_reqs", "count>=1000", "count", ">=", 1000.0),
            ("http_reqs", "rate==0", "rate", "==", 0.0),
        ],
    )
    def test_supported_forms(self, metric, expression, aggregation, operator, bound):
        spec = parse_threshold(metric, expression)
        assert (spec.aggregation, spec.operator, spec.bound) == (aggregation, operator, bound)

    @pytest.mark.parametrize("expression", ["p99<150", "p(99)", "<150", "p(99)<fast", "p(99)=<150", "", "avg << 1"])
    def test_malformed_expressions(self, expression):
        with pytest.raises(ConfigurationError, match="Malformed"):
            parse_threshold("http_req_duration", expression)

    def test_unknown_metric(self):
        with pytest.raises(ConfigurationError, match="Unknown threshold metric"):
            parse_threshold("data_received", "count>0")

    def test_aggregation_not_supported_for_metric(self):
        with pytest.raises(ConfigurationError, match="not supported"):
            parse_threshold("http_req_failed", "p(99)<1")
        with pytest.raises(ConfigurationError, match="not supported"):
            parse_threshold("http_req_duration", "rate<1")

    def test_percentile_out_of_range(self):
        with pytest.raises(ConfigurationError, match="out of range"):
            parse_threshold("http_req_duration", "p(101)<150")

    def test_non_string_expression(self):
        with pytest.raises(ConfigurationError, match="must be a string"):
            parse_threshold("http_req_duration", 150)  # type: ignore[arg-type]


@pytest.mark.unit
class TestThresholdEvaluation:
    def test_p99_under_bound_passes(self):
        snapshot = snapshot_with([120.0] * 100)
        evaluator = ThresholdEvaluator.from_mapping({"http_req_duration": ["p(99)<150"]})

        (result,) = evaluator.evaluate(snapshot)

        assert result.passed
        assert result.observed == pytest.approx(120.0)
        assert evaluator.passed(snapshot)

    def test_p99_over_bound_fails(self):
        snapshot = snapshot_with([200.0] * 100)
        evaluator = ThresholdEvaluator.from_mapping({"http_req_duration": ["p(99)<150"]})

        (result,) = evaluator.evaluate(snapshot)

        assert not result.passed
        assert result.observed == pytest.approx(200.0)
        assert not evaluator.passed(snapshot)

    def test_percentile_uses_linear_interpolation(self):
        snapshot = snapshot_with(range(1, 101))
        assert snapshot.percentile(50) == pytest.approx(50.5)
        assert snapshot.percentile(99) == pytest.approx(99.01)

    def test_empty_snapshot_observes_zero(self):
        evaluator = ThresholdEvaluator.from_mapping(
            {"http_req_duration": ["p(99)<150"], "http_reqs": ["count>0"]}
        )
        results = evaluator.evaluate(MetricsSnapshot())

        assert [r.observed for r in results] == [0.0, 0.0]
        assert [r.passed for r in results] == [True, False]

    def test_failure_and_check_rates(self):
        snapshot = snapshot_with(
            [5.0] * 10,
            failed_requests=3,
            status_counts={200: 7, 500: 3},
            checks={"status was 200": CheckCounts(passes=7, fails=3)},
        )

        assert observe(parse_threshold("http_req_failed", "rate<0.5"), snapshot) == pytest.approx(0.3)
        assert observe(parse_threshold("checks", "rate>0.9"), snapshot) == pytest.approx(0.7)
        assert observe(parse_threshold("http_reqs", "count>0"), snapshot) == 10.0

    def test_request_rate_uses_recorded_window(self):
        snapshot = snapshot_with([5.0] * 50, started_at=100.0, ended_at=110.0)
        assert observe(parse_threshold("http_reqs", "rate>1"), snapshot) == pytest.approx(5.0)

    def test_every_threshold_reported(self):
        snapshot = snapshot_with([10.0, 20.0, 300.0])
        evaluator = ThresholdEvaluator.from_mapping(
            {"http_req_duration": ["avg<200", "max<250", "min>=10", "med==20"]}
        )

        results = evaluator.evaluate(snapshot)

        assert [r.spec.expression for r in results] == ["avg<200", "max<250", "min>=10", "med==20"]
        assert [r.passed for r in results] == [True, False, True, True]
