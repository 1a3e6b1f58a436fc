import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from mcp_agent_client.errors import McpAuthRequiredError, McpSessionError, McpTransportError
from mcp_agent_client.transport import TRANSPORT_ERROR_MARKER, HttpTransport

URL = "https://mcp.example.com/mcp"


class StaticCredentials:
    def __init__(self, token: str | None) -> None:
        self.token = token
        self.calls = 0

    async def access_token(self) -> str | None:
        self.calls += 1
        return self.token


def _transport(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(URL, client=client, **kwargs)


def test_send_requires_connection() -> None:
    async def _run() -> None:
        transport = HttpTransport(URL)
        with pytest.raises(McpTransportError):
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})

    asyncio.run(_run())


def test_json_response_is_queued_and_session_id_captured() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"Mcp-Session-Id": "abc"},
            json={"jsonrpc": "2.0", "id": body["id"], "result": {"ok": True}},
        )

    async def _run() -> None:
        credentials = StaticCredentials("token-1")
        transport = _transport(handler, headers={"X-Team": "core"}, credentials=credentials)
        transport.protocol_version = "2025-06-18"
        await transport.connect()

        await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        message = await asyncio.wait_for(transport.recv(), timeout=1)
        assert message["result"] == {"ok": True}
        assert transport.session_id == "abc"

        await transport.send({"jsonrpc": "2.0", "id": 2, "method": "ping"})
        await asyncio.wait_for(transport.recv(), timeout=1)
        await transport.close()

        first, second = seen
        assert first.headers["accept"] == "application/json, text/event-stream"
        assert first.headers["authorization"] == "Bearer token-1"
        assert first.headers["x-team"] == "core"
        assert first.headers["mcp-protocol-version"] == "2025-06-18"
        assert "mcp-session-id" not in first.headers
        assert second.headers["mcp-session-id"] == "abc"
        assert credentials.calls == 2

    asyncio.run(_run())


def test_event_stream_messages_are_queued_in_order() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        stream = (
            'data: {"jsonrpc": "2.0", "method": "notifications/progress", '
            '"params": {"progressToken": "t", "progress": 1}}\n\n'
            'data: {"jsonrpc": "2.0", "id": 5, "result": {"content": []}}\n\n'
        )
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=stream.encode(),
        )

    async def _run() -> None:
        transport = _transport(handler)
        await transport.send({"jsonrpc": "2.0", "id": 5, "method": "tools/call"})
        first = await asyncio.wait_for(transport.recv(), timeout=1)
        second = await asyncio.wait_for(transport.recv(), timeout=1)
        await transport.close()

        assert first["method"] == "notifications/progress"
        assert second["id"] == 5

    asyncio.run(_run())


def test_event_stream_without_answer_yields_transport_error_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=b": nothing to see\n\n",
        )

    async def _run() -> None:
        transport = _transport(handler)
        await transport.send({"jsonrpc": "2.0", "id": 3, "method": "tools/call"})
        message = await asyncio.wait_for(transport.recv(), timeout=1)
        await transport.close()

        assert message["id"] == 3
        assert message["error"]["data"] == {TRANSPORT_ERROR_MARKER: True}

    asyncio.run(_run())


def test_accepted_notification_queues_nothing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202)

    async def _run() -> None:
        transport = _transport(handler)
        await transport.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(transport.recv(), timeout=0.05)
        await transport.close()

    asyncio.run(_run())


def test_unauthorized_raises_auth_required_with_metadata_hint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401,
            headers={
                "WWW-Authenticate": (
                    'Bearer resource_metadata="https://mcp.example.com/.well-known/'
                    'oauth-protected-resource", scope="tools"'
                )
            },
        )

    async def _run() -> None:
        transport = _transport(handler)
        with pytest.raises(McpAuthRequiredError) as exc_info:
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "initialize"})
        await transport.close()

        error = exc_info.value
        assert error.server_url == URL
        assert error.resource_metadata_url == (
            "https://mcp.example.com/.well-known/oauth-protected-resource"
        )
        assert error.scope == "tools"

    asyncio.run(_run())


def test_not_found_with_session_id_is_a_session_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="Not Found")

    async def _run() -> None:
        transport = _transport(handler)
        transport.session_id = "gone"
        with pytest.raises(McpSessionError) as exc_info:
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        assert exc_info.value.status_code == 404

        transport.reset_session()
        with pytest.raises(McpTransportError) as plain:
            await transport.send({"jsonrpc": "2.0", "id": 2, "method": "ping"})
        assert not isinstance(plain.value, McpSessionError)
        await transport.close()

    asyncio.run(_run())


def test_bad_request_mentioning_session_is_a_session_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="Bad Request: No valid session ID provided")

    async def _run() -> None:
        transport = _transport(handler)
        with pytest.raises(McpSessionError):
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        await transport.close()

    asyncio.run(_run())


def test_connection_failure_wraps_original_exception() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def _run() -> None:
        transport = _transport(handler)
        with pytest.raises(McpTransportError) as exc_info:
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        await transport.close()

        message = str(exc_info.value)
        assert "ConnectError" in message
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    asyncio.run(_run())
