"""
Typed exceptions for loadrig.

Provides structured error handling with:
- LoadrigError: Base exception for all loadrig errors
- ConfigError: Invalid profile, threshold or environment configuration
- SetupError: Setup hook or pre-flight check failed before load started
- ThresholdViolation: Raised on demand when a finished run failed its thresholds
- InvalidTransition: Virtual user lifecycle state machine misuse

Only ConfigError and SetupError terminate a run early. Everything that
happens during steady state (failed checks, dropped arrivals, transport
failures) is recorded as metrics instead of being raised.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LoadrigError(Exception):
    """Base exception for all loadrig errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or CLI output."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(LoadrigError):
    """Configuration or validation error.

    Raised when:
    - A load profile is empty or contradictory
    - A threshold references an unknown metric or has bad syntax
    - An environment variable holds an unusable value

    Examples:
        ConfigError("stages must not be empty", code="empty_stages")
        ConfigError("Unknown metric", details={"metric": "http_req_durations"})
    """

    pass


class SetupError(LoadrigError):
    """Setup or pre-flight failure. No load is generated after this.

    Attributes:
        target: Endpoint the pre-flight check was aimed at, if any
        status_code: Observed status (0 means no response)
    """

    def __init__(
        self,
        message: str,
        *,
        target: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if target:
            details["target"] = target
        if status_code is not None:
            details["status_code"] = status_code

        self.target = target
        self.status_code = status_code

        super().__init__(message, code=code, details=details)

    @property
    def is_unreachable(self) -> bool:
        """True if the target never answered."""
        return self.status_code == 0


class ThresholdViolation(LoadrigError):
    """One or more thresholds failed at the end of a run.

    Attributes:
        failures: Human-readable description of each failed threshold
    """

    def __init__(
        self,
        message: str,
        *,
        failures: Optional[List[str]] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        self.failures = list(failures or [])
        details["failures"] = self.failures
        super().__init__(message, code=code, details=details)


class InvalidTransition(LoadrigError):
    """A virtual user was moved between states the lifecycle does not allow."""

    pass


__all__ = [
    "LoadrigError",
    "ConfigError",
    "SetupError",
    "ThresholdViolation",
    "InvalidTransition",
]
