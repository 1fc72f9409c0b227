"""Human-readable end-of-run summary."""

from __future__ import annotations

from typing import List, Optional

from loadrig.metrics import CounterSnapshot, GaugeSnapshot, RateSnapshot, TrendSnapshot
from loadrig.runner import RunResult


def format_summary(result: RunResult) -> str:
    """
    Format a RunResult as plain text.

    Args:
        result: Finished run.

    Returns:
        Multi-line string suitable for printing.
    """
    lines: List[str] = []
    verdict = "PASSED" if result.passed else "FAILED"

    lines.append("=" * 60)
    lines.append(f"SCENARIO: {result.scenario} [{verdict}]")
    lines.append("=" * 60)
    lines.append(f"Duration: {_fmt(result.duration_seconds)}s")
    lines.append(f"Started:  {result.started_at.isoformat()}")
    lines.append(f"Finished: {result.finished_at.isoformat()}")
    if result.aborted:
        lines.append("Stopped early on request")
    if result.dropped_iterations:
        lines.append(f"Dropped iterations: {result.dropped_iterations}")
    if result.interrupted_iterations:
        lines.append(f"Interrupted iterations: {result.interrupted_iterations}")

    if result.checks:
        lines.append("")
        lines.append("--- Checks ---")
        for name, tally in sorted(result.checks.items()):
            pct = tally.passes / tally.total * 100 if tally.total else 0.0
            mark = "ok" if tally.fails == 0 else "x"
            lines.append(
                f"  [{mark}] {name}: {tally.passes}/{tally.total} ({pct:.1f}%)"
            )

    lines.append("")
    lines.append("--- Metrics ---")
    for name in sorted(result.snapshot):
        metric = result.snapshot[name]
        if isinstance(metric, TrendSnapshot):
            lines.append(
                f"  {name}: avg={_fmt(metric.avg, 2)} min={_fmt(metric.min, 2)} "
                f"med={_fmt(metric.med, 2)} max={_fmt(metric.max, 2)} "
                f"p(90)={_fmt(metric.percentile(90), 2)} "
                f"p(95)={_fmt(metric.percentile(95), 2)}"
            )
        elif isinstance(metric, RateSnapshot):
            rate = None if metric.rate is None else metric.rate * 100
            lines.append(
                f"  {name}: {_fmt(rate, 2)}% ({metric.passes} of {metric.total})"
            )
        elif isinstance(metric, CounterSnapshot):
            lines.append(f"  {name}: {metric.count:g} ({_fmt(metric.rate, 2)}/s)")
        elif isinstance(metric, GaugeSnapshot):
            lines.append(
                f"  {name}: {_fmt(metric.value, 0)} min={_fmt(metric.min, 0)} max={_fmt(metric.max, 0)}"
            )

    if result.thresholds:
        lines.append("")
        lines.append("--- Thresholds ---")
        for threshold in result.thresholds:
            lines.append(f"  {threshold.describe()}")

    lines.append("")
    return "\n".join(lines)


def _fmt(val: Optional[float], decimals: int = 1) -> str:
    """Format a value, handling None."""
    if val is None:
        return "N/A"
    return f"{val:.{decimals}f}"
