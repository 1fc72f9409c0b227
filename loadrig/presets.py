"""
Ready-made scenarios driven by environment configuration.

    load    Typical user traffic: ramp to V_USERS, hold, ramp down. Think
            time between requests; strict latency and error thresholds.
    stress  Up to 3x V_USERS through several plateaus, no think time,
            lenient thresholds, pre-flight reachability check in setup.

Both switch to a constant arrival rate when RPS_RATE is set.

Usage:
    from loadrig.config import get_settings
    from loadrig.presets import stress_scenario
    from loadrig.runner import run_scenario

    result = run_scenario(stress_scenario(get_settings()))
"""

from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Tuple

from loadrig.config import Settings, build_headers
from loadrig.executor import VUContext
from loadrig.models import ArrivalRateProfile, Stage, StagedProfile
from loadrig.scenario import Scenario

LOAD_USER_AGENT = "loadrig-load-test/1.0"
STRESS_USER_AGENT = "loadrig-stress-test/1.0"
STRESS_MULTIPLIER = 3

LOAD_THRESHOLDS = {
    "http_req_duration": ["p(95)<2000"],
    "http_req_failed": ["rate<0.1"],
    "errors": ["rate<0.1"],
}

STRESS_THRESHOLDS = {
    "http_req_duration": ["p(95)<5000"],
    "http_req_failed": ["rate<0.3"],
    "errors": ["rate<0.3"],
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------------------------------------------------
# load
# ----------------------------------------------------------------------


def load_profile(settings: Settings):
    if settings.arrival_mode:
        return ArrivalRateProfile(
            rate=settings.rps_rate,
            time_unit=1.0,
            duration=settings.test_duration,
            pre_allocated=min(settings.v_users, 50),
            max_concurrency=settings.v_users,
        )
    return StagedProfile(
        stages=[
            Stage(duration=settings.ramp_up_time, target=settings.v_users),
            Stage(duration=settings.test_duration, target=settings.v_users),
            Stage(duration="1m", target=0),
        ]
    )


def load_scenario(
    settings: Settings, *, think_time: Tuple[float, float] = (1.0, 3.0)
) -> Scenario:
    """Average-load scenario. ``think_time`` bounds the pause between requests."""
    low, high = think_time

    async def workload(ctx: VUContext) -> None:
        health = await ctx.get("/health")
        ctx.check(
            health,
            {
                "Health check status is 200": lambda r: r.status == 200,
                "Health check response time < 500ms": lambda r: r.duration_ms < 500,
                "Health check has valid response": lambda r: r.has_body,
            },
        )

        await ctx.sleep(random.uniform(low, high))

        data = await ctx.get("/data")
        ctx.check(
            data,
            {
                "Data endpoint status is 200 or 404": lambda r: r.status in (200, 404),
                # A missing data resource is an expected answer, however slow.
                "Data endpoint response time < 1000ms": lambda r: (
                    r.status == 404 or r.duration_ms < 1000
                ),
            },
        )

        if ctx.vu_id == 1 and ctx.iteration == 1:
            ctx.log("Load test configuration", **settings.describe())

    async def setup(ctx: VUContext) -> Dict[str, Any]:
        ctx.log("Starting load test", target=settings.target_endpoint)
        return {}

    async def teardown(ctx: VUContext, data: Any) -> None:
        ctx.log("Load test completed", target=settings.target_endpoint)

    return Scenario(
        name="load",
        workload=workload,
        profile=load_profile(settings),
        thresholds=LOAD_THRESHOLDS,
        setup=setup,
        teardown=teardown,
        headers=build_headers(settings, LOAD_USER_AGENT),
        base_url=settings.target_endpoint,
    )


# ----------------------------------------------------------------------
# stress
# ----------------------------------------------------------------------


def stress_profile(settings: Settings):
    max_vus = settings.v_users * STRESS_MULTIPLIER
    if settings.arrival_mode:
        return ArrivalRateProfile(
            rate=settings.rps_rate * STRESS_MULTIPLIER,
            time_unit=1.0,
            duration=settings.test_duration,
            pre_allocated=min(max_vus, 100),
            max_concurrency=max_vus,
        )
    return StagedProfile(
        stages=[
            Stage(duration=settings.ramp_up_time, target=settings.v_users),
            Stage(duration="2m", target=max_vus // 2),
            Stage(duration="3m", target=max_vus * 3 // 4),
            Stage(duration=settings.test_duration, target=max_vus),
            Stage(duration="2m", target=max_vus // 2),
            Stage(duration="1m", target=0),
        ]
    )


def _responded(r) -> bool:
    return 200 <= r.status < 500


def _not_timing_out(r) -> bool:
    return r.status != 0


def stress_scenario(settings: Settings) -> Scenario:
    """Breaking-point scenario: 3x the configured load with no think time."""
    max_vus = settings.v_users * STRESS_MULTIPLIER

    async def workload(ctx: VUContext) -> None:
        data = await ctx.get("/data")
        ctx.check(
            data,
            {
                "Data endpoint responded": _responded,
                "Data endpoint response time < 10s": lambda r: r.duration_ms < 10000,
                "Data endpoint not timing out": _not_timing_out,
            },
        )

        responses = await ctx.batch([("GET", "/health"), ("GET", "/status")])
        for index, response in enumerate(responses, start=1):
            ctx.check(
                response,
                {
                    f"Batch request {index} responded": _responded,
                    f"Batch request {index} not timing out": _not_timing_out,
                },
            )

        posted = await ctx.post(
            "/test-data",
            json={
                "stress_test": True,
                "timestamp": _now(),
                "vu": ctx.vu_id,
                "iteration": ctx.iteration,
            },
        )
        ctx.check(
            posted,
            {
                "POST request handled": lambda r: _responded(r) or r.status in (404, 405),
                "POST request not timing out": _not_timing_out,
            },
        )

        if ctx.vu_id == 1 and ctx.iteration % 100 == 0:
            ctx.log("Stress test progress", completed=ctx.iteration)

    async def setup(ctx: VUContext) -> Dict[str, Any]:
        ctx.log(
            "Starting stress test",
            target=settings.target_endpoint,
            base_vus=settings.v_users,
            max_vus=max_vus,
            multiplier=STRESS_MULTIPLIER,
        )
        await ctx.preflight("/health")
        return {"start_time": _now(), "target_endpoint": settings.target_endpoint}

    async def teardown(ctx: VUContext, data: Any) -> None:
        ctx.log(
            "Stress test completed",
            started_at=data["start_time"],
            ended_at=_now(),
            target=data["target_endpoint"],
        )

    return Scenario(
        name="stress",
        workload=workload,
        profile=stress_profile(settings),
        thresholds=STRESS_THRESHOLDS,
        setup=setup,
        teardown=teardown,
        headers=build_headers(settings, STRESS_USER_AGENT),
        base_url=settings.target_endpoint,
    )


PRESETS: Dict[str, Callable[[Settings], Scenario]] = {
    "load": load_scenario,
    "stress": stress_scenario,
}
