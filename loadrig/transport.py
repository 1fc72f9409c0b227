"""
HTTP transport: the one place that talks to the network.

The engine only depends on the Transport protocol. HttpxTransport is the
default, sharing one httpx.AsyncClient (one connection pool) across every
virtual user of a run.

A request that gets no response (connection refused, DNS failure, timeout)
is returned as an outcome with status 0 instead of raising, so workloads
can check it like any other status.
"""
from __future__ import annotations

import time
from typing import Mapping, Optional, Protocol, Union

import httpx

from loadrig.models import RequestOutcome

Body = Union[bytes, str, None]


class Transport(Protocol):
    """Performs one request and reports what was observed."""

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Body = None,
    ) -> RequestOutcome:
        ...


class HttpxTransport:
    """
    Transport on top of httpx.AsyncClient.

    Args:
        timeout: Per-request timeout in seconds.
        max_connections: Connection pool size; None means httpx's default.
        verify: TLS verification flag passed to httpx.
        client: Bring your own client (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        max_connections: Optional[int] = None,
        verify: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            limits = httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            )
            client = httpx.AsyncClient(
                timeout=timeout, limits=limits, verify=verify, follow_redirects=True
            )
        self._client = client

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Body = None,
    ) -> RequestOutcome:
        method = method.upper()
        started = time.perf_counter()
        try:
            response = await self._client.request(
                method, url, headers=dict(headers or {}), content=body
            )
        except httpx.TransportError as exc:
            return RequestOutcome(
                status=0,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                method=method,
                url=url,
                error=str(exc) or exc.__class__.__name__,
            )
        return RequestOutcome(
            status=response.status_code,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            body=response.content,
            method=method,
            url=url,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
