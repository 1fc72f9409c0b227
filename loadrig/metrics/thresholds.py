"""
Threshold expressions bound to named metrics.

Grammar (whitespace ignored):

    expression  := aggregation operator number
    aggregation := count | rate | value | avg | min | max | med | p(N)
    operator    := < | <= | > | >= | == | !=

Evaluation is pure: the same snapshot always yields the same verdicts.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from loadrig.exceptions import ConfigError
from loadrig.metrics.collector import AGGREGATIONS, MetricKind, MetricsSnapshot

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION = re.compile(
    r"^(?:(?P<agg>count|rate|value|avg|min|max|med)|p\((?P<pct>\d+(?:\.\d+)?)\))"
    r"(?P<op><=|>=|==|!=|<|>)"
    r"(?P<literal>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)$"
)


@dataclass(frozen=True)
class ThresholdExpression:
    """
    One parsed threshold.

    Attributes:
        metric: Metric name the expression is bound to.
        source: Original expression text, e.g. "p(95)<2000".
        aggregation: count/rate/value/avg/min/max/med, or "p" for percentiles.
        percentile: N for p(N), else None.
        op: Comparison operator text.
        literal: Right-hand side.
    """

    metric: str
    source: str
    aggregation: str
    op: str
    literal: float
    percentile: Optional[float] = None

    def compare(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.literal)


@dataclass(frozen=True)
class ThresholdResult:
    metric: str
    expression: str
    observed: Optional[float]
    passed: bool

    def describe(self) -> str:
        observed = "no samples" if self.observed is None else f"{self.observed:g}"
        mark = "ok" if self.passed else "FAILED"
        return f"{self.metric} {self.expression}: observed {observed} [{mark}]"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "expression": self.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


def parse_threshold(metric: str, expression: str) -> ThresholdExpression:
    """
    Parse a single expression for ``metric``.

    Raises:
        ConfigError: On syntax errors or out-of-range percentiles.
    """
    text = re.sub(r"\s+", "", expression)
    match = _EXPRESSION.match(text)
    if match is None:
        raise ConfigError(
            f"Invalid threshold expression {expression!r} on {metric!r}",
            code="invalid_threshold",
            details={"metric": metric, "expression": expression},
        )
    pct = match.group("pct")
    percentile = float(pct) if pct is not None else None
    if percentile is not None and percentile > 100:
        raise ConfigError(
            f"Percentile out of range in {expression!r}",
            code="invalid_threshold",
            details={"metric": metric, "expression": expression},
        )
    return ThresholdExpression(
        metric=metric,
        source=text,
        aggregation=match.group("agg") or "p",
        op=match.group("op"),
        literal=float(match.group("literal")),
        percentile=percentile,
    )


def parse_thresholds(config: Mapping[str, Iterable[str]]) -> List[ThresholdExpression]:
    """
    Parse a mapping of metric name to expressions.

    Example:
        parse_thresholds({
            "http_req_duration": ["p(95)<2000"],
            "http_req_failed": ["rate<0.1"],
        })
    """
    parsed: List[ThresholdExpression] = []
    for metric, expressions in config.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            parsed.append(parse_threshold(metric, expression))
    return parsed


def validate_thresholds(
    thresholds: Sequence[ThresholdExpression],
    known_metrics: Mapping[str, MetricKind],
) -> None:
    """
    Startup check that every threshold can be evaluated.

    Raises:
        ConfigError: Unknown metric name, or an aggregation the metric's kind
            does not support (e.g. ``p(95)`` on a rate).
    """
    for threshold in thresholds:
        kind = known_metrics.get(threshold.metric)
        if kind is None:
            raise ConfigError(
                f"Threshold references unknown metric {threshold.metric!r}",
                code="unknown_metric",
                details={"metric": threshold.metric, "known": sorted(known_metrics)},
            )
        if threshold.aggregation not in AGGREGATIONS[kind]:
            raise ConfigError(
                f"{threshold.source!r} is not valid for {kind.value} metric "
                f"{threshold.metric!r}",
                code="invalid_aggregation",
                details={"metric": threshold.metric, "kind": kind.value},
            )


def evaluate(
    thresholds: Sequence[ThresholdExpression],
    snapshot: MetricsSnapshot,
) -> List[ThresholdResult]:
    """
    Evaluate thresholds against a snapshot.

    A metric without samples fails its thresholds, except count
    aggregations which observe 0.
    """
    results: List[ThresholdResult] = []
    for threshold in thresholds:
        snap = snapshot.get(threshold.metric)
        observed: Optional[float] = None
        if snap is not None:
            observed = snap.aggregate(threshold.aggregation, threshold.percentile)
        elif threshold.aggregation == "count":
            observed = 0.0
        passed = observed is not None and threshold.compare(observed)
        results.append(
            ThresholdResult(
                metric=threshold.metric,
                expression=threshold.source,
                observed=observed,
                passed=passed,
            )
        )
    return results


def verdict(results: Sequence[ThresholdResult]) -> bool:
    """True when every threshold passed (vacuously true for none)."""
    return all(result.passed for result in results)
