"""Tests for the httpx-backed transport."""

import httpx
import pytest

from loadrig.transport import HttpxTransport


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_response_becomes_outcome(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = request.content
            return httpx.Response(201, content=b'{"id": 1}')

        client = mock_client(handler)
        transport = HttpxTransport(client=client)

        outcome = await transport.request(
            "post", "http://svc/items", {"Authorization": "Bearer t"}, '{"a": 1}'
        )

        assert outcome.status == 201
        assert outcome.body == b'{"id": 1}'
        assert outcome.method == "POST"
        assert outcome.url == "http://svc/items"
        assert outcome.duration_ms >= 0
        assert outcome.json() == {"id": 1}
        assert seen == {"method": "POST", "auth": "Bearer t", "body": b'{"a": 1}'}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_status_zero(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = mock_client(handler)
        transport = HttpxTransport(client=client)

        outcome = await transport.request("GET", "http://down/health")

        assert outcome.status == 0
        assert outcome.failed
        assert "connection refused" in outcome.error
        assert outcome.body == b""
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_status_zero(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = mock_client(handler)
        outcome = await HttpxTransport(client=client).request("GET", "http://slow/")
        assert outcome.status == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self):
        client = mock_client(lambda request: httpx.Response(503))
        outcome = await HttpxTransport(client=client).request("GET", "http://svc/")
        assert outcome.status == 503
        assert outcome.failed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_borrowed_client_is_left_open(self):
        client = mock_client(lambda request: httpx.Response(200))
        async with HttpxTransport(client=client):
            pass
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        transport = HttpxTransport(timeout=1.0, max_connections=5)
        await transport.aclose()
        assert transport._client.is_closed
