"""
loadrig - Drive scheduled HTTP load at a target and judge it with thresholds.

Define a scenario:
    from loadrig import Scenario, StagedProfile, Stage, run_scenario

    async def workload(ctx):
        r = await ctx.get("/health")
        ctx.check(r, {"status is 200": lambda r: r.status == 200})
        await ctx.sleep(1)

    scenario = Scenario(
        name="smoke",
        workload=workload,
        profile=StagedProfile(stages=[Stage(duration="30s", target=10)]),
        thresholds={"http_req_failed": ["rate<0.1"]},
        base_url="https://httpbin.org",
    )
    result = run_scenario(scenario)
    print(result.passed)

Open-model load (constant arrival rate):
    from loadrig import ArrivalRateProfile

    profile = ArrivalRateProfile(
        rate=50, duration="2m", pre_allocated=20, max_concurrency=100
    )

Environment-driven presets:
    from loadrig.config import get_settings
    from loadrig.presets import load_scenario, stress_scenario

CLI:
    loadrig run stress --env-file .env
"""

# =============================================================================
# Core API
# =============================================================================
from loadrig.runner import LoadRunner, RunResult, run_scenario  # noqa: F401
from loadrig.scenario import Scenario  # noqa: F401
from loadrig.executor import VUContext, WorkloadExecutor  # noqa: F401

# =============================================================================
# Profiles and options
# =============================================================================
from loadrig.models import (  # noqa: F401
    ArrivalRateProfile,
    CheckResult,
    RequestOutcome,
    RunOptions,
    Stage,
    StagedProfile,
    parse_profile,
)
from loadrig.schedule import ArrivalSchedule, StagedSchedule, build_schedule  # noqa: F401

# =============================================================================
# Metrics
# =============================================================================
from loadrig.metrics import (  # noqa: F401
    MetricCollector,
    MetricKind,
    MetricsSnapshot,
    ThresholdResult,
)

# =============================================================================
# Transport
# =============================================================================
from loadrig.transport import HttpxTransport, Transport  # noqa: F401

# =============================================================================
# Exceptions
# =============================================================================
from loadrig.exceptions import (  # noqa: F401
    ConfigError,
    InvalidTransition,
    LoadrigError,
    SetupError,
    ThresholdViolation,
)

__version__ = "0.1.0"

__all__ = [
    "LoadRunner",
    "RunResult",
    "run_scenario",
    "Scenario",
    "VUContext",
    "WorkloadExecutor",
    "ArrivalRateProfile",
    "CheckResult",
    "RequestOutcome",
    "RunOptions",
    "Stage",
    "StagedProfile",
    "parse_profile",
    "ArrivalSchedule",
    "StagedSchedule",
    "build_schedule",
    "MetricCollector",
    "MetricKind",
    "MetricsSnapshot",
    "ThresholdResult",
    "HttpxTransport",
    "Transport",
    "ConfigError",
    "InvalidTransition",
    "LoadrigError",
    "SetupError",
    "ThresholdViolation",
]
