"""
Run metrics and thresholds.

Provides:
- MetricCollector: thread-safe counters, rates, trends and gauges
- MetricsSnapshot: point-in-time copy used for threshold evaluation
- Threshold parsing/evaluation ("p(95)<2000", "rate<0.1", ...)
- Prometheus text export

Usage:
    from loadrig.metrics import MetricCollector, MetricKind, parse_thresholds, evaluate

    collector = MetricCollector()
    collector.record("http_req_duration", MetricKind.TREND, 180.0)

    thresholds = parse_thresholds({"http_req_duration": ["p(95)<2000"]})
    results = evaluate(thresholds, collector.snapshot())
    print(all(r.passed for r in results))
"""

from loadrig.metrics.collector import (
    AGGREGATIONS,
    BUILTIN_METRICS,
    CounterSnapshot,
    GaugeSnapshot,
    MetricCollector,
    MetricKind,
    MetricsSnapshot,
    RateSnapshot,
    TrendSnapshot,
    prometheus_format,
)
from loadrig.metrics.thresholds import (
    ThresholdExpression,
    ThresholdResult,
    evaluate,
    parse_threshold,
    parse_thresholds,
    validate_thresholds,
    verdict,
)

__all__ = [
    "AGGREGATIONS",
    "BUILTIN_METRICS",
    "CounterSnapshot",
    "GaugeSnapshot",
    "MetricCollector",
    "MetricKind",
    "MetricsSnapshot",
    "RateSnapshot",
    "TrendSnapshot",
    "prometheus_format",
    "ThresholdExpression",
    "ThresholdResult",
    "evaluate",
    "parse_threshold",
    "parse_thresholds",
    "validate_thresholds",
    "verdict",
]
