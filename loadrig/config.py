"""
Run configuration from environment variables.

Usage:
    from loadrig.config import get_settings

    settings = get_settings()
    print(settings.target_endpoint, settings.v_users)

Values are validated when Settings is constructed; a bad value raises
ConfigError before anything is sent to the target.
"""

import base64
import os
from functools import lru_cache
from typing import Dict, Optional

from loadrig.durations import parse_duration
from loadrig.exceptions import ConfigError

AUTH_TYPES = ("none", "basic_auth", "bearer_token")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    # Unset and empty both mean "use the default".
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _positive_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(
            f"{name} must be a positive integer, got {raw!r}",
            code="invalid_env",
            details={"variable": name, "value": raw},
        ) from None
    if value <= 0:
        raise ConfigError(
            f"{name} must be a positive integer, got {raw!r}",
            code="invalid_env",
            details={"variable": name, "value": raw},
        )
    return value


def _duration(name: str, raw: str) -> float:
    try:
        return parse_duration(raw)
    except ConfigError as exc:
        raise ConfigError(
            f"{name}: {exc.message}",
            code="invalid_env",
            details={"variable": name, "value": raw},
        ) from exc


class Settings:
    """Scenario configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Target
        self.target_endpoint: str = _env("TARGET_ENDPOINT", "https://httpbin.org").rstrip("/")

        # Load shape
        self.v_users: int = _positive_int("V_USERS", _env("V_USERS", "10"))
        self.test_duration: str = _env("TEST_DURATION", "5m")
        self.ramp_up_time: str = _env("RAMP_UP_TIME", "1m")
        rps = _env("RPS_RATE")
        self.rps_rate: Optional[int] = _positive_int("RPS_RATE", rps) if rps else None

        # Authentication
        self.auth_type: str = _env("AUTH_TYPE", "none").lower()
        if self.auth_type not in AUTH_TYPES:
            raise ConfigError(
                f"AUTH_TYPE must be one of {', '.join(AUTH_TYPES)}, got {self.auth_type!r}",
                code="invalid_env",
                details={"variable": "AUTH_TYPE", "value": self.auth_type},
            )
        self.basic_auth_user: str = _env("BASIC_AUTH_USER", "")
        self.basic_auth_pass: str = _env("BASIC_AUTH_PASS", "")
        self.bearer_token: str = _env("BEARER_TOKEN", "")

        self.test_duration_seconds: float = _duration("TEST_DURATION", self.test_duration)
        self.ramp_up_seconds: float = _duration("RAMP_UP_TIME", self.ramp_up_time)

    @property
    def arrival_mode(self) -> bool:
        """RPS_RATE switches scenarios from staged VUs to a constant arrival rate."""
        return self.rps_rate is not None

    def describe(self) -> Dict[str, object]:
        """Configuration summary without credentials."""
        return {
            "target": self.target_endpoint,
            "v_users": self.v_users,
            "duration": self.test_duration,
            "ramp_up": self.ramp_up_time,
            "rps_rate": self.rps_rate if self.rps_rate is not None else "not specified",
            "auth_type": self.auth_type,
        }


def build_headers(settings: Settings, user_agent: str) -> Dict[str, str]:
    """Default request headers, including Authorization when configured."""
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
    }
    if settings.auth_type == "basic_auth":
        if settings.basic_auth_user and settings.basic_auth_pass:
            raw = f"{settings.basic_auth_user}:{settings.basic_auth_pass}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
    elif settings.auth_type == "bearer_token":
        if settings.bearer_token:
            headers["Authorization"] = f"Bearer {settings.bearer_token}"
    return headers


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
