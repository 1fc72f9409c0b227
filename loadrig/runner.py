"""
Driver loop: setup, load phase, drain, verdict, teardown.

Usage:
    runner = LoadRunner(scenario, options=RunOptions(graceful_stop=5))
    result = await runner.run()
    if not result.passed:
        ...

    # or, from synchronous code
    result = run_scenario(scenario)

Only ConfigError (before setup) and SetupError (during setup) escape run().
A failed verdict is reported on the RunResult, never raised, unless the
caller asks for it with ``result.raise_for_thresholds()``.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from loadrig import telemetry
from loadrig.durations import format_duration
from loadrig.exceptions import SetupError, ThresholdViolation
from loadrig.executor import CheckTally, WorkloadExecutor, require_async
from loadrig.metrics import (
    MetricCollector,
    MetricsSnapshot,
    ThresholdExpression,
    ThresholdResult,
    evaluate,
    parse_thresholds,
    validate_thresholds,
    verdict,
)
from loadrig.models import RunOptions, parse_profile
from loadrig.scenario import Scenario
from loadrig.schedule import ArrivalSchedule, Schedule, StagedSchedule, build_schedule
from loadrig.transport import HttpxTransport, Transport
from loadrig.vus import VirtualUser, VUManager

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """
    Outcome of one run.

    Attributes:
        scenario: Scenario name.
        passed: True when every threshold held.
        thresholds: One result per threshold expression.
        snapshot: Final metric values the verdict was computed from.
        started_at: Wall-clock start of the load phase (UTC).
        finished_at: Wall-clock end of the drain (UTC).
        duration_seconds: Load phase plus drain.
        dropped_iterations: Arrivals dropped because the pool was at its cap.
        interrupted_iterations: Iterations cancelled after the grace period.
        aborted: True if stop() cut the run short.
        checks: Pass/fail tally per check name.
    """

    scenario: str
    passed: bool
    thresholds: List[ThresholdResult]
    snapshot: MetricsSnapshot
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    dropped_iterations: int = 0
    interrupted_iterations: int = 0
    aborted: bool = False
    checks: Dict[str, CheckTally] = field(default_factory=dict)

    def failures(self) -> List[ThresholdResult]:
        return [result for result in self.thresholds if not result.passed]

    def raise_for_thresholds(self) -> None:
        """Raise ThresholdViolation if any threshold failed."""
        failed = self.failures()
        if failed:
            raise ThresholdViolation(
                f"{len(failed)} threshold(s) failed in scenario {self.scenario!r}",
                failures=[result.describe() for result in failed],
                code="thresholds_failed",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario,
            "passed": self.passed,
            "thresholds": [result.to_dict() for result in self.thresholds],
            "metrics": self.snapshot.to_dict(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "dropped_iterations": self.dropped_iterations,
            "interrupted_iterations": self.interrupted_iterations,
            "aborted": self.aborted,
            "checks": {
                name: {"passes": tally.passes, "fails": tally.fails}
                for name, tally in self.checks.items()
            },
        }


class LoadRunner:
    """
    Runs one scenario from setup to verdict.

    Args:
        scenario: What to run.
        options: Driver tuning; defaults to RunOptions().
        transport: Request transport. When omitted an HttpxTransport is
            created for the run and closed afterwards.
        collector: Metric collector; a fresh one per run by default.
    """

    def __init__(
        self,
        scenario: Scenario,
        *,
        options: Optional[RunOptions] = None,
        transport: Optional[Transport] = None,
        collector: Optional[MetricCollector] = None,
    ) -> None:
        self.scenario = scenario
        self.options = options or RunOptions()
        self.collector = collector or MetricCollector()
        self._transport = transport
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._manager: Optional[VUManager] = None

    def stop(self) -> None:
        """
        Stop admitting new iterations now; in-flight ones get the grace
        period. Safe to call from a signal handler or another thread.
        """
        self._stop_requested = True
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    @property
    def manager(self) -> Optional[VUManager]:
        return self._manager

    async def run(self) -> RunResult:
        """
        Execute the scenario.

        Raises:
            ConfigError: Bad profile, thresholds or hooks. Nothing has run yet.
            SetupError: Setup hook failed. No load was generated.
        """
        scenario = self.scenario
        profile = scenario.profile
        if isinstance(profile, Mapping):
            profile = dict(profile)
        schedule = build_schedule(parse_profile(profile))

        for name, kind in scenario.metrics.items():
            self.collector.declare(name, kind)
        thresholds = parse_thresholds(scenario.thresholds)
        validate_thresholds(thresholds, self.collector.known_metrics())

        require_async(scenario.workload, "workload")
        require_async(scenario.setup, "setup")
        require_async(scenario.teardown, "teardown")

        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        transport = self._transport
        owns_transport = transport is None
        if transport is None:
            transport = HttpxTransport(timeout=self.options.iteration_timeout)
        executor = WorkloadExecutor(
            self.collector,
            transport,
            headers=scenario.headers,
            base_url=scenario.base_url,
            iteration_timeout=self.options.iteration_timeout,
        )
        try:
            setup_data = await self._run_setup(executor)
            result = await self._run_load(executor, schedule, thresholds, setup_data)
            await self._run_teardown(executor, setup_data)
        finally:
            if owns_transport:
                await transport.aclose()

        telemetry.log(
            "info",
            "run.finish",
            scenario=scenario.name,
            passed=result.passed,
            duration=round(result.duration_seconds, 3),
            dropped=result.dropped_iterations,
        )
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_setup(self, executor: WorkloadExecutor) -> Any:
        hook = self.scenario.setup
        if hook is None:
            return None
        ctx = executor.context_for(0, 0)
        with telemetry.span("run.setup", scenario=self.scenario.name):
            try:
                data = await hook(ctx)
            except SetupError:
                raise
            except Exception as exc:
                raise SetupError(
                    f"Setup failed: {exc.__class__.__name__}: {exc}",
                    code="setup_failed",
                ) from exc
        telemetry.log("info", "run.setup", scenario=self.scenario.name)
        return data

    async def _run_teardown(self, executor: WorkloadExecutor, setup_data: Any) -> None:
        hook = self.scenario.teardown
        if hook is None:
            return
        ctx = executor.context_for(0, 0, setup_data)
        with telemetry.span("run.teardown", scenario=self.scenario.name):
            try:
                await hook(ctx, ctx.setup_data)
            except Exception as exc:
                logger.error("Teardown failed: %s: %s", exc.__class__.__name__, exc)
                telemetry.log("error", "run.teardown", error=str(exc))
                return
        telemetry.log("info", "run.teardown", scenario=self.scenario.name)

    async def _run_load(
        self,
        executor: WorkloadExecutor,
        schedule: Schedule,
        thresholds: List[ThresholdExpression],
        setup_data: Any,
    ) -> RunResult:
        scenario = self.scenario

        async def iterate(vu: VirtualUser) -> None:
            await executor.run_iteration(vu, scenario.workload, setup_data)

        max_vus = None
        if isinstance(schedule, ArrivalSchedule):
            max_vus = schedule.profile.max_concurrency
        manager = VUManager(self.collector, iterate, max_vus=max_vus)
        self._manager = manager

        deadline = schedule.total_duration
        if self.options.max_duration is not None and self.options.max_duration < deadline:
            logger.info(
                "Run capped at %s (profile is %s)",
                format_duration(self.options.max_duration),
                format_duration(deadline),
            )
            deadline = self.options.max_duration

        self.collector.reset_clock()
        started_at = datetime.now(timezone.utc)
        started = self._loop.time()
        telemetry.log(
            "info",
            "run.start",
            scenario=scenario.name,
            profile=schedule.kind,
            duration=format_duration(deadline),
        )
        aborted = False
        try:
            with telemetry.span("run.load", scenario=scenario.name, profile=schedule.kind):
                if isinstance(schedule, StagedSchedule):
                    aborted = await self._drive_staged(schedule, manager, deadline)
                else:
                    aborted = await self._drive_arrivals(schedule, manager, deadline)
        finally:
            manager.stop_admission()
            stats = manager.stats()
            telemetry.log(
                "info",
                "run.drain",
                running=stats.running,
                grace=self.options.graceful_stop,
            )
            interrupted = await manager.drain(self.options.graceful_stop)
            manager.shutdown()

        if aborted:
            logger.warning("Run stopped early after %.1fs", self._loop.time() - started)

        snapshot = self.collector.snapshot()
        results = evaluate(thresholds, snapshot)
        for result in results:
            if not result.passed:
                logger.warning("Threshold failed: %s", result.describe())
        return RunResult(
            scenario=scenario.name,
            passed=verdict(results),
            thresholds=results,
            snapshot=snapshot,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_seconds=self._loop.time() - started,
            dropped_iterations=manager.dropped,
            interrupted_iterations=interrupted,
            aborted=aborted,
            checks=executor.check_tallies(),
        )

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    async def _drive_staged(
        self, schedule: StagedSchedule, manager: VUManager, deadline: float
    ) -> bool:
        """Reconcile live VUs with the schedule every tick. True if stopped."""
        loop = self._loop
        started = loop.time()
        current_stage = -1
        while True:
            elapsed = loop.time() - started
            if elapsed >= deadline:
                return False
            window = schedule.stage_at(elapsed)
            target = schedule.target_at(elapsed)
            if window.index != current_stage:
                current_stage = window.index
                telemetry.log(
                    "info",
                    "run.stage",
                    stage=window.index,
                    target=window.to_target,
                    duration=format_duration(window.end - window.start),
                )
            manager.ensure_concurrency(target)
            wait = min(self.options.tick_interval, deadline - elapsed)
            if await self._wait_for_stop(wait):
                return True

    async def _drive_arrivals(
        self, schedule: ArrivalSchedule, manager: VUManager, deadline: float
    ) -> bool:
        """Dispatch arrivals at their absolute offsets. True if stopped."""
        profile = schedule.profile
        manager.preallocate(profile.pre_allocated)
        rng = random.Random(self.options.seed)
        loop = self._loop
        started = loop.time()
        n = 0
        while True:
            offset = schedule.arrival_offset(n)
            if offset is None or offset >= deadline:
                break
            if profile.jitter > 0:
                offset += rng.uniform(0.0, profile.jitter) * schedule.interval
            delay = started + offset - loop.time()
            if delay > 0:
                if await self._wait_for_stop(delay):
                    return True
            else:
                # Behind schedule: catch up without sleeping, but let started
                # iterations run between dispatches.
                if self._stop_event.is_set():
                    return True
                await asyncio.sleep(0)
            manager.dispatch_arrival()
            n += 1
        remaining = started + deadline - loop.time()
        if remaining > 0:
            return await self._wait_for_stop(remaining)
        return self._stop_event.is_set()

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; True if stop() was called meanwhile."""
        if self._stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return False
        return True


def run_scenario(
    scenario: Scenario,
    *,
    options: Optional[RunOptions] = None,
    transport: Optional[Transport] = None,
) -> RunResult:
    """Blocking wrapper around ``LoadRunner(...).run()``."""
    return asyncio.run(LoadRunner(scenario, options=options, transport=transport).run())
