"""Human-readable duration strings ("5m", "1m30s", "250ms") to seconds."""

from __future__ import annotations

import math
import re
from typing import Any

from loadrig.exceptions import ConfigError

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Numbers are taken as seconds. Strings are one or more ``<number><unit>``
    parts with units ms, s, m or h; a bare number string is seconds.

    Raises:
        ConfigError: On negative values or unparseable strings.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}", code="invalid_duration")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        seconds = _parse_string(value)
    else:
        raise ConfigError(f"Invalid duration: {value!r}", code="invalid_duration")
    if seconds < 0 or not math.isfinite(seconds):
        raise ConfigError(
            f"Duration must be finite and non-negative: {value!r}", code="invalid_duration"
        )
    return seconds


def _parse_string(raw: str) -> float:
    text = raw.strip().lower().replace(" ", "")
    if not text:
        raise ConfigError("Empty duration string", code="invalid_duration")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"Invalid duration: {raw!r}", code="invalid_duration")
    return total


def format_duration(seconds: float) -> str:
    """Compact form used in logs and summaries, e.g. 90 -> '1m30s'."""
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs:g}s")
    return "".join(parts)
