"""Pytest configuration and shared doubles."""

import asyncio
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

# Ensure the project root is in sys.path for proper imports with pytest-xdist
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from loadrig.models import RequestOutcome  # noqa: E402

Handler = Callable[[str, str], Tuple[int, bytes]]


class FakeTransport:
    """
    Transport double answering every request from ``handler``.

    Tracks calls and the peak number of concurrent requests.
    """

    def __init__(self, handler: Optional[Handler] = None, *, delay: float = 0.0) -> None:
        self.handler = handler or (lambda method, url: (200, b"ok"))
        self.delay = delay
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def request(self, method, url, headers=None, body=None) -> RequestOutcome:
        self.calls.append((method, url, dict(headers or {}), body))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            status, payload = self.handler(method, url)
        finally:
            self.in_flight -= 1
        return RequestOutcome(
            status=status,
            duration_ms=self.delay * 1000.0,
            body=payload,
            method=method,
            url=url,
        )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def transport_factory():
    return FakeTransport
