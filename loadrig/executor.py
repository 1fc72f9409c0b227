"""
Workload execution: one iteration of a user workload for one virtual user.

The workload is an ``async def workload(ctx: VUContext)``. Everything it
learns about the target goes through ``ctx.request`` / ``ctx.batch`` and
everything it concludes goes through ``ctx.check``; the executor turns both
into metrics. Nothing a workload raises during steady state escapes the
executor: it becomes a failed check.
"""
from __future__ import annotations

import asyncio
import inspect
import json as jsonlib
import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib.parse import urljoin

from loadrig import telemetry
from loadrig.exceptions import ConfigError, SetupError
from loadrig.metrics import MetricCollector, MetricKind
from loadrig.models import CheckResult, RequestOutcome
from loadrig.transport import Body, Transport

if TYPE_CHECKING:
    from loadrig.vus import VirtualUser

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]
Workload = Callable[["VUContext"], Awaitable[None]]
BatchRequest = Union[Tuple[str, str], Tuple[str, str, Body], Tuple[str, str, Body, Mapping[str, str]]]

ITERATION_ERROR = "iteration completed"
ITERATION_TIMEOUT = "iteration timeout"
ITERATION_INTERRUPTED = "iteration interrupted"


@dataclass
class CheckTally:
    """Pass/fail counts for one check name across the run."""

    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails


class VUContext:
    """
    What a workload sees during one iteration.

    ``vu_id`` and ``iteration`` are read-only. Setup and teardown receive a
    context with ``vu_id == 0`` and ``iteration == 0``.
    """

    def __init__(
        self,
        executor: "WorkloadExecutor",
        *,
        vu_id: int,
        iteration: int,
        setup_data: Any = None,
    ) -> None:
        self._executor = executor
        self._vu_id = vu_id
        self._iteration = iteration
        if isinstance(setup_data, Mapping):
            setup_data = MappingProxyType(dict(setup_data))
        self._setup_data = setup_data
        self.headers: Dict[str, str] = dict(executor.headers)

    @property
    def vu_id(self) -> int:
        return self._vu_id

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def setup_data(self) -> Any:
        return self._setup_data

    def url(self, path: str) -> str:
        """Resolve ``path`` against the run's base URL."""
        base = self._executor.base_url
        if not base or "://" in path:
            return path
        return urljoin(base.rstrip("/") + "/", path.lstrip("/"))

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Body = None,
        json: Any = None,
    ) -> RequestOutcome:
        """
        Perform one request through the run's transport and record it.

        ``json`` is serialized and sent as the body when ``body`` is None.
        """
        merged = dict(self.headers)
        if headers:
            merged.update(headers)
        if body is None and json is not None:
            body = jsonlib.dumps(json)
            merged.setdefault("Content-Type", "application/json")
        outcome = await self._executor.transport.request(
            method, self.url(url), merged, body
        )
        self._executor.record_request(outcome)
        return outcome

    async def get(self, url: str, **kwargs: Any) -> RequestOutcome:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> RequestOutcome:
        return await self.request("POST", url, **kwargs)

    async def batch(self, requests: Sequence[BatchRequest]) -> List[RequestOutcome]:
        """
        Issue several requests concurrently; results keep the input order.

        Each entry is ``(method, url[, body[, headers]])``.
        """
        calls = []
        for entry in requests:
            method, url = entry[0], entry[1]
            body = entry[2] if len(entry) > 2 else None
            headers = entry[3] if len(entry) > 3 else None
            calls.append(self.request(method, url, headers=headers, body=body))
        return list(await asyncio.gather(*calls))

    def check(self, subject: Any, checks: Mapping[str, Predicate]) -> bool:
        """
        Evaluate named predicates against ``subject``.

        Every predicate runs and is recorded; a predicate that raises counts
        as failed. Returns True only if all passed.
        """
        outcome = subject if isinstance(subject, RequestOutcome) else None
        all_passed = True
        for name, predicate in checks.items():
            try:
                passed = bool(predicate(subject))
            except Exception as exc:
                logger.debug("Check %r raised %s", name, exc)
                passed = False
            self._executor.record_check(CheckResult(name=name, passed=passed, outcome=outcome))
            all_passed = all_passed and passed
        return all_passed

    def fail(self, name: str) -> None:
        """Record a failed check without a predicate."""
        self._executor.record_check(CheckResult(name=name, passed=False))

    async def sleep(self, seconds: float) -> None:
        """Think time. Suspends this VU only."""
        if seconds > 0:
            await asyncio.sleep(seconds)

    def record(self, name: str, kind: Union[MetricKind, str], value: float = 1) -> None:
        """Add a sample to a custom metric."""
        self._executor.collector.record(name, kind, value)

    def log(self, message: str, level: str = "info", **attrs: Any) -> None:
        """Emit a telemetry event tagged with this VU; caller attributes win."""
        fields = {"vu": self._vu_id, "iteration": self._iteration, **attrs}
        telemetry.log(level, message, **fields)

    async def preflight(self, url: str, *, method: str = "GET") -> RequestOutcome:
        """
        Mandatory reachability check, meant for setup.

        Raises:
            SetupError: If the target gave no response at all (status 0).
        """
        target = self.url(url)
        outcome = await self._executor.transport.request(
            method, target, dict(self.headers), None
        )
        self._executor.record_request(outcome)
        if outcome.status == 0:
            raise SetupError(
                f"Cannot reach target endpoint: {target}",
                target=target,
                status_code=0,
                code="target_unreachable",
            )
        return outcome


class WorkloadExecutor:
    """
    Runs workload iterations and turns what they report into metrics.

    Records per request: ``http_reqs``, ``http_req_duration`` (ms),
    ``http_req_failed`` and ``data_received``. Per check: one sample on
    ``checks`` (1 pass / 0 fail) and one on ``errors`` (1 fail / 0 pass).
    Per iteration: ``iterations`` and ``iteration_duration`` (ms).
    """

    def __init__(
        self,
        collector: MetricCollector,
        transport: Transport,
        *,
        headers: Optional[Mapping[str, str]] = None,
        base_url: Optional[str] = None,
        iteration_timeout: float = 60.0,
    ) -> None:
        self.collector = collector
        self.transport = transport
        self.headers: Dict[str, str] = dict(headers or {})
        self.base_url = base_url
        self._iteration_timeout = iteration_timeout
        self._tallies: Dict[str, CheckTally] = {}
        self._tally_lock = threading.Lock()

    def context_for(self, vu_id: int, iteration: int, setup_data: Any = None) -> VUContext:
        return VUContext(self, vu_id=vu_id, iteration=iteration, setup_data=setup_data)

    async def run_iteration(
        self,
        vu: "VirtualUser",
        workload: Workload,
        setup_data: Any = None,
    ) -> bool:
        """
        Run ``workload`` once as ``vu`` within the iteration time budget.

        Returns:
            False if the workload raised or timed out, True otherwise.

        Raises:
            asyncio.CancelledError: Forced termination; recorded as a failed
                check before propagating.
        """
        ctx = self.context_for(vu.vu_id, vu.iteration, setup_data)
        started = time.perf_counter()
        completed = True
        try:
            await asyncio.wait_for(workload(ctx), timeout=self._iteration_timeout)
        except asyncio.CancelledError:
            ctx.fail(ITERATION_INTERRUPTED)
            raise
        except asyncio.TimeoutError:
            completed = False
            logger.warning(
                "VU %d iteration %d exceeded %.1fs budget",
                vu.vu_id,
                vu.iteration,
                self._iteration_timeout,
            )
            ctx.fail(ITERATION_TIMEOUT)
        except Exception as exc:
            completed = False
            logger.warning(
                "VU %d iteration %d failed: %s: %s",
                vu.vu_id,
                vu.iteration,
                exc.__class__.__name__,
                exc,
            )
            ctx.fail(ITERATION_ERROR)
        self.collector.record("iterations", MetricKind.COUNTER, 1)
        self.collector.record(
            "iteration_duration",
            MetricKind.TREND,
            (time.perf_counter() - started) * 1000.0,
        )
        return completed

    def record_request(self, outcome: RequestOutcome) -> None:
        self.collector.record("http_reqs", MetricKind.COUNTER, 1)
        self.collector.record("http_req_duration", MetricKind.TREND, outcome.duration_ms)
        self.collector.record("http_req_failed", MetricKind.RATE, outcome.failed)
        if outcome.body:
            self.collector.record("data_received", MetricKind.COUNTER, len(outcome.body))

    def record_check(self, result: CheckResult) -> None:
        self.collector.record("checks", MetricKind.RATE, result.passed)
        self.collector.record("errors", MetricKind.RATE, not result.passed)
        with self._tally_lock:
            tally = self._tallies.setdefault(result.name, CheckTally())
            if result.passed:
                tally.passes += 1
            else:
                tally.fails += 1

    def check_tallies(self) -> Dict[str, CheckTally]:
        with self._tally_lock:
            return {
                name: CheckTally(tally.passes, tally.fails)
                for name, tally in self._tallies.items()
            }


def require_async(fn: Optional[Callable[..., Any]], role: str) -> None:
    """Reject hooks that are not coroutine functions."""
    if fn is None:
        return
    if not (inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None))):
        raise ConfigError(
            f"{role} must be an async function",
            code="sync_hook",
            details={"role": role, "hook": getattr(fn, "__name__", repr(fn))},
        )
