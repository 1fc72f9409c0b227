"""
Schedule interpretation: load profile -> target as a function of elapsed time.

StagedSchedule answers "how many VUs should be live at t". ArrivalSchedule
answers "how many iterations per second should start at t" and, inverted,
"when does the n-th arrival happen".

Usage:
    schedule = build_schedule(StagedProfile(stages=[Stage(duration="30s", target=10)]))
    schedule.target_at(15.0)   # -> 5
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from loadrig.exceptions import ConfigError
from loadrig.models import ArrivalRateProfile, StagedProfile


@dataclass(frozen=True)
class StageWindow:
    """A stage resolved to absolute offsets."""

    index: int
    start: float
    end: float
    from_target: int
    to_target: int

    def value_at(self, elapsed: float) -> float:
        if self.end <= self.start:
            return float(self.to_target)
        fraction = (elapsed - self.start) / (self.end - self.start)
        fraction = min(1.0, max(0.0, fraction))
        return self.from_target + (self.to_target - self.from_target) * fraction


class StagedSchedule:
    """Piecewise-linear concurrency target built from a StagedProfile."""

    kind = "staged"

    def __init__(self, profile: StagedProfile) -> None:
        if not profile.stages:
            raise ConfigError("stages must not be empty", code="empty_stages")
        self._profile = profile
        self._windows: List[StageWindow] = []
        start = 0.0
        previous = profile.start_vus
        for index, stage in enumerate(profile.stages):
            end = start + stage.duration
            self._windows.append(
                StageWindow(
                    index=index,
                    start=start,
                    end=end,
                    from_target=previous,
                    to_target=stage.target,
                )
            )
            start = end
            previous = stage.target

    @property
    def profile(self) -> StagedProfile:
        return self._profile

    @property
    def total_duration(self) -> float:
        return self._windows[-1].end

    @property
    def windows(self) -> Tuple[StageWindow, ...]:
        return tuple(self._windows)

    @property
    def max_target(self) -> int:
        return self._profile.peak_target

    def stage_at(self, elapsed: float) -> StageWindow:
        """Stage active at ``elapsed``; boundaries belong to the ending stage."""
        for window in self._windows:
            if elapsed <= window.end:
                return window
        return self._windows[-1]

    def value_at(self, elapsed: float) -> float:
        """Exact interpolated concurrency (fractional)."""
        if elapsed <= 0:
            first = self._windows[0]
            # A zero-length first stage jumps straight to its target.
            return float(first.to_target if first.end <= 0 else first.from_target)
        return self.stage_at(elapsed).value_at(elapsed)

    def target_at(self, elapsed: float) -> int:
        """
        Whole number of VUs that should be live at ``elapsed``.

        Interpolated values are rounded down, so at every stage boundary the
        result equals that stage's configured target exactly.
        """
        value = self.value_at(elapsed)
        # Guard float error right at a boundary (e.g. 2.9999999 -> 3).
        nearest = round(value)
        if abs(value - nearest) < 1e-9:
            return int(nearest)
        return int(math.floor(value))


class ArrivalSchedule:
    """
    Constant arrival rate, optionally followed by a linear ramp-down tail.

    With rate r (per second), duration D and tail R the cumulative arrival
    count is:

        A(t) = r*t                               0 <= t <= D
        A(t) = r*D + r*(x - x^2 / (2R)), x=t-D   D <  t <= D + R
    """

    kind = "arrival_rate"

    def __init__(self, profile: ArrivalRateProfile) -> None:
        if profile.max_concurrency < profile.pre_allocated:
            raise ConfigError(
                "max_concurrency must be >= pre_allocated",
                code="preallocation_exceeds_cap",
            )
        self._profile = profile
        self._rate = profile.rate_per_second
        self._duration = profile.duration
        self._ramp_down = profile.ramp_down

    @property
    def profile(self) -> ArrivalRateProfile:
        return self._profile

    @property
    def total_duration(self) -> float:
        return self._duration + self._ramp_down

    @property
    def interval(self) -> float:
        """Spacing between arrivals during the constant phase."""
        return 1.0 / self._rate

    def rate_at(self, elapsed: float) -> float:
        """Arrivals per second at ``elapsed``."""
        if elapsed < 0 or elapsed > self.total_duration:
            return 0.0
        if elapsed <= self._duration:
            return self._rate
        into_tail = elapsed - self._duration
        return self._rate * max(0.0, 1.0 - into_tail / self._ramp_down)

    def cumulative(self, elapsed: float) -> float:
        """Expected number of arrivals in [0, elapsed]."""
        if elapsed <= 0:
            return 0.0
        if elapsed <= self._duration:
            return self._rate * elapsed
        base = self._rate * self._duration
        if self._ramp_down <= 0:
            return base
        x = min(elapsed - self._duration, self._ramp_down)
        return base + self._rate * (x - x * x / (2 * self._ramp_down))

    def arrivals_between(self, start: float, end: float) -> float:
        return self.cumulative(end) - self.cumulative(start)

    @property
    def total_arrivals(self) -> int:
        """Number of arrivals the whole profile dispatches."""
        constant = math.ceil(self._rate * self._duration - 1e-9)
        if self._ramp_down <= 0:
            return constant
        tail_end = self._rate * (self._duration + self._ramp_down / 2)
        return max(constant, math.ceil(tail_end - 1e-9))

    def arrival_offset(self, n: int) -> Optional[float]:
        """
        Elapsed time of the n-th arrival (0-based), or None past the end.

        The constant phase places arrival n at n / rate, so the first one
        fires immediately and the phase end is exclusive.
        """
        if n < 0:
            raise ValueError("n must be >= 0")
        offset = n / self._rate
        if offset < self._duration - 1e-9:
            return offset
        if self._ramp_down <= 0:
            return None
        remaining = n - self._rate * self._duration
        # Solve r*(x - x^2/(2R)) = remaining for the smaller root.
        discriminant = 1.0 - 2.0 * remaining / (self._rate * self._ramp_down)
        if discriminant <= 0:
            return None
        x = self._ramp_down * (1.0 - math.sqrt(discriminant))
        return self._duration + x


Schedule = Union[StagedSchedule, ArrivalSchedule]


def build_schedule(profile: Union[StagedProfile, ArrivalRateProfile]) -> Schedule:
    """Pick the schedule matching the profile's kind."""
    if isinstance(profile, StagedProfile):
        return StagedSchedule(profile)
    if isinstance(profile, ArrivalRateProfile):
        return ArrivalSchedule(profile)
    raise ConfigError(f"Unsupported profile type: {type(profile).__name__}")
