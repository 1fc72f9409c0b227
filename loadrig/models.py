from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from loadrig.durations import parse_duration
from loadrig.exceptions import ConfigError


class Stage(BaseModel):
    """
    One linear ramp segment.

    Attributes:
        duration: Segment length in seconds (duration strings accepted).
        target: Concurrency reached at the end of the segment.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: float
    target: int = Field(ge=0)

    @field_validator("duration", mode="before")
    @classmethod
    def parse_duration_field(cls, value: Any) -> float:
        return parse_duration(value)


class StagedProfile(BaseModel):
    """
    Ramp through an ordered list of stages.

    Concurrency is interpolated linearly from the previous stage's target
    (``start_vus`` for the first stage) to the current stage's target.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["staged"] = "staged"
    stages: List[Stage]
    start_vus: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def require_stages(self) -> "StagedProfile":
        if not self.stages:
            raise ConfigError("stages must not be empty", code="empty_stages")
        if self.total_duration <= 0:
            raise ConfigError(
                "Staged profile has zero total duration", code="zero_duration"
            )
        return self

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def peak_target(self) -> int:
        return max([self.start_vus] + [stage.target for stage in self.stages])


class ArrivalRateProfile(BaseModel):
    """
    Start ``rate`` iterations per ``time_unit`` regardless of concurrency.

    Attributes:
        rate: Arrivals per time unit.
        time_unit: Seconds per time unit (default 1s).
        duration: Length of the constant-rate phase.
        pre_allocated: VUs created before the run starts.
        max_concurrency: Hard cap on VUs; arrivals beyond it are dropped.
        ramp_down: Optional tail during which the rate falls linearly to 0.
            0 ends the run abruptly at ``duration``.
        jitter: Fraction of the inter-arrival gap by which each arrival may be
            shifted at random. 0 keeps arrivals evenly spaced.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["arrival_rate"] = "arrival_rate"
    rate: float = Field(gt=0)
    time_unit: float = 1.0
    duration: float
    pre_allocated: int = Field(ge=0)
    max_concurrency: int = Field(ge=1)
    ramp_down: float = 0.0
    jitter: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("time_unit", "duration", "ramp_down", mode="before")
    @classmethod
    def parse_duration_fields(cls, value: Any) -> float:
        return parse_duration(value)

    @model_validator(mode="after")
    def check_allocation(self) -> "ArrivalRateProfile":
        if self.max_concurrency < self.pre_allocated:
            raise ConfigError(
                "max_concurrency must be >= pre_allocated",
                code="preallocation_exceeds_cap",
                details={
                    "pre_allocated": self.pre_allocated,
                    "max_concurrency": self.max_concurrency,
                },
            )
        if self.time_unit <= 0:
            raise ConfigError("time_unit must be positive", code="invalid_time_unit")
        if self.duration <= 0:
            raise ConfigError(
                "Arrival-rate profile has zero duration", code="zero_duration"
            )
        return self

    @property
    def rate_per_second(self) -> float:
        return self.rate / self.time_unit

    @property
    def total_duration(self) -> float:
        return self.duration + self.ramp_down


LoadProfile = Annotated[
    Union[StagedProfile, ArrivalRateProfile], Field(discriminator="kind")
]

_profile_adapter: TypeAdapter = TypeAdapter(LoadProfile)


def parse_profile(data: Union[Dict[str, Any], StagedProfile, ArrivalRateProfile]):
    """
    Build a profile from a plain mapping (e.g. decoded JSON).

    A mapping without ``kind`` is treated as staged when it has ``stages``.

    Raises:
        ConfigError: On any validation failure.
    """
    if isinstance(data, (StagedProfile, ArrivalRateProfile)):
        return data
    if not isinstance(data, dict):
        raise ConfigError(f"Profile must be a mapping, got {type(data).__name__}")
    payload = dict(data)
    if "kind" not in payload:
        payload["kind"] = "staged" if "stages" in payload else "arrival_rate"
    try:
        return _profile_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ConfigError(
            "Invalid load profile",
            code="invalid_profile",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


class RunOptions(BaseModel):
    """
    Driver loop tuning.

    Attributes:
        tick_interval: Seconds between control-loop reconciliations.
        graceful_stop: Drain period for in-flight iterations after admission
            closes; stragglers are cancelled afterwards.
        iteration_timeout: Time budget for one workload iteration.
        max_duration: Optional hard wall-clock limit for the whole run.
        seed: Seed for arrival jitter.
    """

    model_config = ConfigDict(extra="forbid")

    tick_interval: float = Field(default=0.1, gt=0, le=1.0)
    graceful_stop: float = 30.0
    iteration_timeout: float = 60.0
    max_duration: Optional[float] = None
    seed: int = 0

    @field_validator("graceful_stop", "iteration_timeout", "max_duration", mode="before")
    @classmethod
    def parse_duration_fields(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        return parse_duration(value)

    @model_validator(mode="after")
    def check_budgets(self) -> "RunOptions":
        if self.iteration_timeout <= 0:
            raise ConfigError(
                "iteration_timeout must be positive", code="invalid_timeout"
            )
        return self


@dataclass(frozen=True)
class RequestOutcome:
    """
    One observed interaction with the target.

    ``status`` 0 means no response (connection error or timeout).
    """

    status: int
    duration_ms: float
    body: bytes = b""
    method: str = "GET"
    url: str = ""
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            raise ValueError("duration_ms must be non-negative")

    @property
    def has_body(self) -> bool:
        return len(self.body) > 0

    @property
    def failed(self) -> bool:
        """No response or an HTTP error status."""
        return self.status == 0 or self.status >= 400

    def json(self) -> Any:
        return json.loads(self.body)


@dataclass(frozen=True)
class CheckResult:
    """Result of one named check; never mutated after creation."""

    name: str
    passed: bool
    outcome: Optional[RequestOutcome] = None
