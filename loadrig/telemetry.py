"""Structured run events: Logfire spans/logs, mirrored to stdlib logging."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import logfire

logger = logging.getLogger("loadrig.events")

_configured = False

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def enabled() -> bool:
    # Logfire is opt-in so a load run never ships events by surprise.
    return _env_truthy(os.getenv("LOADRIG_LOGFIRE"))


def _console_setting():
    if _env_truthy(os.getenv("LOADRIG_LOGFIRE_CONSOLE")):
        return None
    return False


def configure() -> bool:
    global _configured
    if not enabled():
        return False
    if not _configured:
        try:
            logfire.configure(
                service_name="loadrig",
                send_to_logfire="if-token-present",
                console=_console_setting(),
            )
        except Exception as exc:
            logger.debug("Logfire configure failed: %s", exc)
            return False
        _configured = True
    return True


@contextmanager
def span(name: str, **attrs: Any) -> Iterator[None]:
    """Trace a block; a plain no-op unless Logfire is enabled."""
    if not configure():
        yield
        return
    with logfire.span(name, **attrs):
        yield


def log(level: str, message: str, **attrs: Any) -> None:
    """Emit one event to the logging mirror and, when enabled, Logfire."""
    if attrs:
        logger.log(_LEVELS.get(level, logging.INFO), "%s %s", message, attrs)
    else:
        logger.log(_LEVELS.get(level, logging.INFO), "%s", message)
    if not configure():
        return
    fn = getattr(logfire, level, None) or logfire.info
    try:
        fn(message, **attrs)
    except Exception as exc:
        logger.debug("Logfire emit failed: %s", exc)
