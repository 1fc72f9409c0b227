"""
MetricCollector: thread-safe counters, rates, trends and gauges for one run.

Every metric owns its own lock, so concurrent record() calls on different
metrics never contend and a snapshot is linearizable per metric. Trends keep
every sample, which makes percentiles exact (no approximation error).
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from loadrig.exceptions import ConfigError


class MetricKind(str, Enum):
    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


# Metrics every run records, whether or not a workload touches them.
BUILTIN_METRICS: Dict[str, MetricKind] = {
    "http_reqs": MetricKind.COUNTER,
    "http_req_duration": MetricKind.TREND,
    "http_req_failed": MetricKind.RATE,
    "data_received": MetricKind.COUNTER,
    "iterations": MetricKind.COUNTER,
    "iteration_duration": MetricKind.TREND,
    "dropped_iterations": MetricKind.COUNTER,
    "checks": MetricKind.RATE,
    "errors": MetricKind.RATE,
    "vus": MetricKind.GAUGE,
    "vus_max": MetricKind.GAUGE,
}

# Aggregations a threshold may use per metric kind. "p" stands for p(N).
AGGREGATIONS: Dict[MetricKind, Tuple[str, ...]] = {
    MetricKind.COUNTER: ("count", "rate"),
    MetricKind.RATE: ("rate", "count"),
    MetricKind.TREND: ("avg", "min", "max", "med", "p", "count"),
    MetricKind.GAUGE: ("value", "min", "max"),
}


@dataclass(frozen=True)
class CounterSnapshot:
    name: str
    count: float
    elapsed_seconds: float
    kind: MetricKind = MetricKind.COUNTER

    @property
    def rate(self) -> float:
        """Count per second over the run so far."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.count / self.elapsed_seconds

    def aggregate(self, agg: str, arg: Optional[float] = None) -> Optional[float]:
        if agg == "count":
            return self.count
        if agg == "rate":
            return self.rate
        raise ConfigError(f"Counter {self.name!r} has no aggregation {agg!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "count": self.count, "rate": self.rate}


@dataclass(frozen=True)
class RateSnapshot:
    name: str
    passes: int
    fails: int
    kind: MetricKind = MetricKind.RATE

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def rate(self) -> Optional[float]:
        """Fraction of true samples, None before the first sample."""
        if self.total == 0:
            return None
        return self.passes / self.total

    def aggregate(self, agg: str, arg: Optional[float] = None) -> Optional[float]:
        if agg == "rate":
            return self.rate
        if agg == "count":
            return float(self.total)
        raise ConfigError(f"Rate {self.name!r} has no aggregation {agg!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "rate": self.rate,
            "passes": self.passes,
            "fails": self.fails,
        }


@dataclass(frozen=True)
class TrendSnapshot:
    name: str
    values: Tuple[float, ...] = field(repr=False)
    total: float = 0.0
    kind: MetricKind = MetricKind.TREND

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def avg(self) -> Optional[float]:
        if not self.values:
            return None
        return self.total / len(self.values)

    @property
    def min(self) -> Optional[float]:
        return self.values[0] if self.values else None

    @property
    def max(self) -> Optional[float]:
        return self.values[-1] if self.values else None

    @property
    def med(self) -> Optional[float]:
        return self.percentile(50)

    def percentile(self, p: float) -> Optional[float]:
        """
        Exact percentile with linear interpolation between closest ranks.

        Args:
            p: Percentile in [0, 100].

        Returns:
            The percentile value, or None when no samples were recorded.
        """
        if not 0 <= p <= 100:
            raise ValueError(f"Percentile out of range: {p}")
        if not self.values:
            return None
        if len(self.values) == 1:
            return self.values[0]
        pos = (len(self.values) - 1) * (p / 100.0)
        lower = math.floor(pos)
        upper = math.ceil(pos)
        if lower == upper:
            return self.values[lower]
        frac = pos - lower
        return self.values[lower] + (self.values[upper] - self.values[lower]) * frac

    def aggregate(self, agg: str, arg: Optional[float] = None) -> Optional[float]:
        if agg == "p":
            if arg is None:
                raise ConfigError(f"p() on {self.name!r} needs a percentile")
            return self.percentile(arg)
        if agg == "avg":
            return self.avg
        if agg == "min":
            return self.min
        if agg == "max":
            return self.max
        if agg == "med":
            return self.med
        if agg == "count":
            return float(self.count)
        raise ConfigError(f"Trend {self.name!r} has no aggregation {agg!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "count": self.count,
            "avg": self.avg,
            "min": self.min,
            "med": self.med,
            "max": self.max,
            "p(90)": self.percentile(90),
            "p(95)": self.percentile(95),
            "p(99)": self.percentile(99),
        }


@dataclass(frozen=True)
class GaugeSnapshot:
    name: str
    value: Optional[float]
    min: Optional[float]
    max: Optional[float]
    kind: MetricKind = MetricKind.GAUGE

    def aggregate(self, agg: str, arg: Optional[float] = None) -> Optional[float]:
        if agg == "value":
            return self.value
        if agg == "min":
            return self.min
        if agg == "max":
            return self.max
        raise ConfigError(f"Gauge {self.name!r} has no aggregation {agg!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "value": self.value,
            "min": self.min,
            "max": self.max,
        }


MetricSnapshot = Union[CounterSnapshot, RateSnapshot, TrendSnapshot, GaugeSnapshot]


class _CounterValue:
    """Thread-safe monotonic counter."""

    kind = MetricKind.COUNTER

    def __init__(self, name: str) -> None:
        self._name = name
        self._value = 0.0
        self._lock = threading.Lock()

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise ValueError(f"Counter {self._name!r} cannot decrease (got {value})")
        with self._lock:
            self._value += value

    def snapshot(self, elapsed: float) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(self._name, self._value, elapsed)


class _RateValue:
    """Thread-safe (true_count, total_count) pair."""

    kind = MetricKind.RATE

    def __init__(self, name: str) -> None:
        self._name = name
        self._passes = 0
        self._total = 0
        self._lock = threading.Lock()

    def add(self, value: Union[bool, float]) -> None:
        with self._lock:
            self._total += 1
            if value:
                self._passes += 1

    def snapshot(self, elapsed: float) -> RateSnapshot:
        with self._lock:
            return RateSnapshot(self._name, self._passes, self._total - self._passes)


class _TrendValue:
    """Thread-safe sample store, sorted lazily on snapshot."""

    kind = MetricKind.TREND

    def __init__(self, name: str) -> None:
        self._name = name
        self._values: List[float] = []
        self._sum = 0.0
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"Trend {self._name!r} got NaN")
        with self._lock:
            self._values.append(value)
            self._sum += value

    def snapshot(self, elapsed: float) -> TrendSnapshot:
        with self._lock:
            self._values.sort()
            return TrendSnapshot(self._name, tuple(self._values), self._sum)


class _GaugeValue:
    """Thread-safe last-value gauge that also remembers its extremes."""

    kind = MetricKind.GAUGE

    def __init__(self, name: str) -> None:
        self._name = name
        self._value: Optional[float] = None
        self._min: Optional[float] = None
        self._max: Optional[float] = None
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        value = float(value)
        with self._lock:
            self._value = value
            self._min = value if self._min is None else min(self._min, value)
            self._max = value if self._max is None else max(self._max, value)

    def snapshot(self, elapsed: float) -> GaugeSnapshot:
        with self._lock:
            return GaugeSnapshot(self._name, self._value, self._min, self._max)


_VALUE_TYPES = {
    MetricKind.COUNTER: _CounterValue,
    MetricKind.RATE: _RateValue,
    MetricKind.TREND: _TrendValue,
    MetricKind.GAUGE: _GaugeValue,
}


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    Point-in-time copy of every metric in a collector.

    Attributes:
        metrics: Snapshot per metric name.
        elapsed_seconds: Collector age when the snapshot was taken.
    """

    metrics: Dict[str, MetricSnapshot]
    elapsed_seconds: float

    def __contains__(self, name: object) -> bool:
        return name in self.metrics

    def __getitem__(self, name: str) -> MetricSnapshot:
        return self.metrics[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.metrics)

    def get(self, name: str) -> Optional[MetricSnapshot]:
        return self.metrics.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsed_seconds": self.elapsed_seconds,
            "metrics": {name: snap.to_dict() for name, snap in sorted(self.metrics.items())},
        }


class MetricCollector:
    """
    Collects named metrics for one run.

    Safe for any number of concurrent callers, coroutines or threads.
    Metrics are created lazily on first record(); declare() pre-registers a
    name so thresholds can reference it before any sample exists.

    Example:
        collector = MetricCollector()
        collector.record("http_req_duration", MetricKind.TREND, 123.4)
        collector.record("errors", MetricKind.RATE, 0)
        snap = collector.snapshot()
        print(snap["http_req_duration"].percentile(95))
    """

    def __init__(
        self,
        *,
        builtins: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._started = clock()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        if builtins:
            for name, kind in BUILTIN_METRICS.items():
                self.declare(name, kind)

    def declare(self, name: str, kind: Union[MetricKind, str]) -> None:
        """
        Register a metric without recording a sample.

        Raises:
            ConfigError: If the name already exists with a different kind.
        """
        self._get_or_create(name, MetricKind(kind))

    def record(self, name: str, kind: Union[MetricKind, str], value: float = 1) -> None:
        """
        Add one sample.

        Counter adds ``value``; Rate counts ``value`` as true when truthy;
        Trend stores ``value``; Gauge replaces the current value.
        """
        self._get_or_create(name, MetricKind(kind)).add(value)

    def known_metrics(self) -> Dict[str, MetricKind]:
        with self._lock:
            return {name: metric.kind for name, metric in self._metrics.items()}

    def reset_clock(self) -> None:
        """Restart the elapsed-time base used for counter rates."""
        self._started = self._clock()

    def snapshot(self) -> MetricsSnapshot:
        """Consistent per-metric copy of all metrics."""
        with self._lock:
            metrics = list(self._metrics.items())
        elapsed = max(0.0, self._clock() - self._started)
        return MetricsSnapshot(
            metrics={name: metric.snapshot(elapsed) for name, metric in metrics},
            elapsed_seconds=elapsed,
        )

    def _get_or_create(self, name: str, kind: MetricKind):
        metric = self._metrics.get(name)
        if metric is None:
            with self._lock:
                metric = self._metrics.get(name)
                if metric is None:
                    metric = _VALUE_TYPES[kind](name)
                    self._metrics[name] = metric
        if metric.kind is not kind:
            raise ConfigError(
                f"Metric {name!r} is a {metric.kind.value}, not a {kind.value}",
                code="metric_kind_mismatch",
                details={"metric": name},
            )
        return metric


def prometheus_format(snapshot: MetricsSnapshot, prefix: str = "loadrig") -> str:
    """
    Export a snapshot in Prometheus text exposition format.

    Trends are exported as summaries with the usual quantiles.
    """
    lines: List[str] = []

    for name in sorted(snapshot.metrics):
        snap = snapshot.metrics[name]
        metric = f"{prefix}_{name}"
        lines.append(f"# HELP {metric} {snap.kind.value} metric {name}")

        if isinstance(snap, CounterSnapshot):
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric}_total {snap.count:g}")
        elif isinstance(snap, RateSnapshot):
            lines.append(f"# TYPE {metric} gauge")
            lines.append(f"{metric} {snap.rate if snap.rate is not None else 'NaN'}")
            lines.append(f'{metric}_samples{{result="pass"}} {snap.passes}')
            lines.append(f'{metric}_samples{{result="fail"}} {snap.fails}')
        elif isinstance(snap, TrendSnapshot):
            lines.append(f"# TYPE {metric} summary")
            for q in (0.5, 0.9, 0.95, 0.99):
                value = snap.percentile(q * 100)
                lines.append(
                    f'{metric}{{quantile="{q}"}} {value if value is not None else "NaN"}'
                )
            lines.append(f"{metric}_sum {snap.total}")
            lines.append(f"{metric}_count {snap.count}")
        else:
            lines.append(f"# TYPE {metric} gauge")
            lines.append(f"{metric} {snap.value if snap.value is not None else 'NaN'}")

        lines.append("")

    return "\n".join(lines)
