"""
Scenario definition: what to run, how hard, and what counts as passing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from loadrig.executor import VUContext, Workload
from loadrig.metrics import MetricKind
from loadrig.models import ArrivalRateProfile, StagedProfile

SetupHook = Callable[[VUContext], Awaitable[Any]]
TeardownHook = Callable[[VUContext, Any], Awaitable[None]]


@dataclass
class Scenario:
    """
    A named workload bound to a load profile.

    Attributes:
        name: Human-readable scenario name.
        workload: ``async def workload(ctx)`` run once per iteration.
        profile: StagedProfile, ArrivalRateProfile, or a mapping parsed
            with ``parse_profile``.
        thresholds: Metric name -> expressions, e.g.
            ``{"http_req_failed": ["rate<0.1"]}``.
        setup: Optional ``async def setup(ctx)``; its return value is handed
            read-only to every iteration and to teardown.
        teardown: Optional ``async def teardown(ctx, data)``.
        headers: Default headers for every request.
        base_url: Relative request paths resolve against this.
        metrics: Custom metrics the workload records, declared up front so
            thresholds can reference them.
    """

    name: str
    workload: Workload
    profile: Union[StagedProfile, ArrivalRateProfile, Mapping[str, Any]]
    thresholds: Mapping[str, List[str]] = field(default_factory=dict)
    setup: Optional[SetupHook] = None
    teardown: Optional[TeardownHook] = None
    headers: Dict[str, str] = field(default_factory=dict)
    base_url: Optional[str] = None
    metrics: Dict[str, MetricKind] = field(default_factory=dict)

    def with_thresholds(self, **thresholds: List[str]) -> "Scenario":
        """Copy with extra thresholds merged in."""
        merged = {name: list(exprs) for name, exprs in self.thresholds.items()}
        for name, exprs in thresholds.items():
            merged.setdefault(name, []).extend(exprs)
        return Scenario(
            name=self.name,
            workload=self.workload,
            profile=self.profile,
            thresholds=merged,
            setup=self.setup,
            teardown=self.teardown,
            headers=dict(self.headers),
            base_url=self.base_url,
            metrics=dict(self.metrics),
        )
