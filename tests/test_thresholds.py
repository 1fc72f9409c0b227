"""Tests for threshold parsing, validation and evaluation."""

import pytest

from loadrig.exceptions import ConfigError
from loadrig.metrics import (
    MetricCollector,
    MetricKind,
    evaluate,
    parse_threshold,
    parse_thresholds,
    validate_thresholds,
    verdict,
)


def rate_collector(name, passes, fails):
    collector = MetricCollector()
    for _ in range(passes):
        collector.record(name, MetricKind.RATE, True)
    for _ in range(fails):
        collector.record(name, MetricKind.RATE, False)
    return collector


class TestParse:
    def test_percentile(self):
        t = parse_threshold("http_req_duration", "p(95)<2000")
        assert (t.aggregation, t.percentile, t.op, t.literal) == ("p", 95.0, "<", 2000.0)

    def test_whitespace_ignored(self):
        t = parse_threshold("http_req_duration", " p( 99.9 ) <= 1e3 ")
        assert t.percentile == 99.9
        assert t.op == "<="
        assert t.literal == 1000.0
        assert t.source == "p(99.9)<=1e3"

    @pytest.mark.parametrize("expr", ["rate<0.1", "count>=10", "avg!=3", "max==1", "value>0", "med>.5"])
    def test_other_aggregations(self, expr):
        parse_threshold("m", expr)

    @pytest.mark.parametrize("expr", ["p95<2000", "rate<<0.1", "rate", "<0.1", "mean<3", "p(101)<1", "rate<abc"])
    def test_invalid(self, expr):
        with pytest.raises(ConfigError) as exc_info:
            parse_threshold("m", expr)
        assert exc_info.value.code == "invalid_threshold"

    def test_mapping(self):
        parsed = parse_thresholds(
            {
                "http_req_duration": ["p(95)<2000", "avg<500"],
                "errors": "rate<0.1",
            }
        )
        assert [(t.metric, t.source) for t in parsed] == [
            ("http_req_duration", "p(95)<2000"),
            ("http_req_duration", "avg<500"),
            ("errors", "rate<0.1"),
        ]


class TestValidate:
    def test_unknown_metric(self):
        collector = MetricCollector()
        thresholds = parse_thresholds({"http_req_durations": ["p(95)<1"]})
        with pytest.raises(ConfigError) as exc_info:
            validate_thresholds(thresholds, collector.known_metrics())
        assert exc_info.value.code == "unknown_metric"
        assert exc_info.value.details["metric"] == "http_req_durations"

    def test_aggregation_not_supported_by_kind(self):
        collector = MetricCollector()
        thresholds = parse_thresholds({"errors": ["p(95)<1"]})
        with pytest.raises(ConfigError) as exc_info:
            validate_thresholds(thresholds, collector.known_metrics())
        assert exc_info.value.code == "invalid_aggregation"

    def test_declared_custom_metric_is_known(self):
        collector = MetricCollector()
        collector.declare("login_time", MetricKind.TREND)
        validate_thresholds(
            parse_thresholds({"login_time": ["p(90)<300"]}), collector.known_metrics()
        )


class TestEvaluate:
    def test_strict_less_than_fails_at_equality(self):
        thresholds = parse_thresholds({"errors": ["rate<0.1"]})
        results = evaluate(thresholds, rate_collector("errors", 1, 9).snapshot())
        assert results[0].observed == pytest.approx(0.1)
        assert not results[0].passed
        assert not verdict(results)

    def test_strict_less_than_passes_just_below(self):
        thresholds = parse_thresholds({"errors": ["rate<0.1"]})
        results = evaluate(thresholds, rate_collector("errors", 99, 901).snapshot())
        assert results[0].observed == pytest.approx(0.099)
        assert results[0].passed
        assert verdict(results)

    def test_trend_percentile(self):
        collector = MetricCollector()
        for value in range(1, 101):
            collector.record("http_req_duration", MetricKind.TREND, value)
        results = evaluate(
            parse_thresholds({"http_req_duration": ["p(95)<96", "p(95)<95", "max<=100"]}),
            collector.snapshot(),
        )
        assert [r.passed for r in results] == [True, False, True]

    def test_no_samples_fails(self):
        results = evaluate(
            parse_thresholds({"http_req_duration": ["p(95)<2000"], "errors": ["rate<0.1"]}),
            MetricCollector().snapshot(),
        )
        assert all(r.observed is None for r in results)
        assert not any(r.passed for r in results)
        assert "no samples" in results[0].describe()

    def test_count_without_samples_observes_zero(self):
        results = evaluate(
            parse_thresholds({"dropped_iterations": ["count==0"], "errors": ["count<1"]}),
            MetricCollector().snapshot(),
        )
        assert [r.observed for r in results] == [0.0, 0.0]
        assert verdict(results)

    def test_evaluation_is_idempotent(self):
        thresholds = parse_thresholds({"errors": ["rate<0.5"]})
        snapshot = rate_collector("errors", 1, 3).snapshot()
        assert evaluate(thresholds, snapshot) == evaluate(thresholds, snapshot)

    def test_no_thresholds_pass(self):
        assert verdict(evaluate([], MetricCollector().snapshot()))

    def test_result_to_dict(self):
        results = evaluate(
            parse_thresholds({"errors": ["rate<0.5"]}),
            rate_collector("errors", 1, 3).snapshot(),
        )
        assert results[0].to_dict() == {
            "metric": "errors",
            "expression": "rate<0.5",
            "observed": 0.25,
            "passed": True,
        }
