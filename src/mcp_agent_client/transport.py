from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from .errors import McpAuthRequiredError, McpSessionError, McpTransportError
from .protocol import (
    ACCEPT_HEADER_VALUE,
    INTERNAL_ERROR,
    PROTOCOL_VERSION_HEADER,
    SESSION_ID_HEADER,
    decode_messages,
    is_response_message,
    iter_sse_data,
    make_error_response,
    parse_www_authenticate,
)

logger = logging.getLogger(__name__)

# Marker placed in synthetic error responses produced by the transport itself.
TRANSPORT_ERROR_MARKER = "transportError"


class CredentialProvider(Protocol):
    """Supplies a bearer token for each outgoing request."""

    async def access_token(self) -> str | None: ...


class Transport(ABC):
    """Abstract transport interface for JSON-RPC message exchange."""

    session_id: str | None = None
    protocol_version: str | None = None

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, payload: Mapping[str, Any]) -> None:
        """Send one JSON-RPC message.

        Raises `McpAuthRequiredError` on 401 and `McpSessionError` when the
        server rejects the session id. Callers may cancel a send that is still
        waiting on the server; the exchange is abandoned and nothing is queued.
        """
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> dict[str, Any]:
        """Receive one JSON-RPC message as a dictionary."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError

    def reset_session(self) -> None:
        """Forget the negotiated session id and protocol version."""
        self.session_id = None
        self.protocol_version = None


class HttpTransport(Transport):
    """MCP streamable HTTP transport.

    Every message is POSTed to one endpoint. The reply is either a JSON body or
    a `text/event-stream` body; in both cases the decoded JSON-RPC messages are
    queued for `recv()`. Event streams are drained by background tasks so a
    long-running call never blocks other sends on the same session.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        credentials: CredentialProvider | None = None,
        client: httpx.AsyncClient | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure HTTP transport.

        Args:
            url: MCP endpoint URL.
            headers: Static headers sent with every request.
            credentials: Optional OAuth credential provider.
            client: Optional pre-built httpx client (not closed by `close()`).
            connect_timeout: Connect timeout for the owned httpx client.
        """
        self.url = url
        self._headers = dict(headers) if headers is not None else {}
        self._credentials = credentials
        self._client = client
        self._owns_client = client is None
        self._connect_timeout = connect_timeout
        self._incoming: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._readers: set[asyncio.Task[None]] = set()
        self.session_id = None
        self.protocol_version = None

    async def connect(self) -> None:
        """Create the httpx client if not already available."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._connect_timeout, read=None),
        )

    async def send(self, payload: Mapping[str, Any]) -> None:
        """POST one message and queue whatever the server answers with."""
        if self._client is None:
            raise McpTransportError("http transport is not connected")

        message = dict(payload)
        headers = await self._build_headers()
        sent_session_id = self.session_id
        request = self._client.build_request("POST", self.url, json=message, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise McpTransportError(
                f"failed to reach MCP server: {self.url} ({exc.__class__.__name__}: {exc})"
            ) from exc

        try:
            await self._raise_for_status(response, sent_session_id=sent_session_id)
        except BaseException:
            await response.aclose()
            raise

        assigned = response.headers.get(SESSION_ID_HEADER)
        if assigned:
            if assigned != self.session_id:
                logger.debug("MCP session id assigned by %s: %s", self.url, assigned)
            self.session_id = assigned

        content_type = response.headers.get("content-type", "").lower()
        if response.status_code == 202 or not content_type:
            await response.aclose()
            return

        if "text/event-stream" in content_type:
            task = asyncio.create_task(self._pump_event_stream(response, message))
            self._readers.add(task)
            task.add_done_callback(self._readers.discard)
            return

        try:
            body = await response.aread()
        except httpx.HTTPError as exc:
            raise McpTransportError("failed reading MCP response body") from exc
        finally:
            await response.aclose()

        if not body.strip():
            return
        try:
            messages = decode_messages(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise McpTransportError("received invalid JSON from MCP server") from exc
        for item in messages:
            await self._incoming.put(item)

    async def recv(self) -> dict[str, Any]:
        """Return the next queued JSON-RPC message."""
        return await self._incoming.get()

    async def close(self) -> None:
        """Stop stream readers and close the owned httpx client."""
        for task in list(self._readers):
            task.cancel()
        for task in list(self._readers):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._readers.clear()

        if self._client is not None and self._owns_client:
            client = self._client
            self._client = None
            await client.aclose()

    async def _build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": ACCEPT_HEADER_VALUE,
        }
        headers.update(self._headers)
        if self.protocol_version is not None:
            headers[PROTOCOL_VERSION_HEADER] = self.protocol_version
        if self.session_id is not None:
            headers[SESSION_ID_HEADER] = self.session_id
        if self._credentials is not None:
            token = await self._credentials.access_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _raise_for_status(
        self,
        response: httpx.Response,
        *,
        sent_session_id: str | None,
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        if status == 401:
            params = parse_www_authenticate(response.headers.get("www-authenticate"))
            raise McpAuthRequiredError(
                self.url,
                resource_metadata_url=params.get("resource_metadata"),
                scope=params.get("scope"),
            )

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            body = ""

        mentions_session = "session" in body.lower()
        if status == 404 and sent_session_id is not None:
            raise McpSessionError(
                f"MCP session not found (HTTP 404): {body[:200]}",
                status_code=status,
            )
        if status in (400, 404) and mentions_session:
            raise McpSessionError(
                f"MCP session rejected (HTTP {status}): {body[:200]}",
                status_code=status,
            )
        raise McpTransportError(
            f"MCP server returned HTTP {status}: {body[:200]}",
            status_code=status,
        )

    async def _pump_event_stream(
        self,
        response: httpx.Response,
        request: dict[str, Any],
    ) -> None:
        """Queue every message from one SSE response body."""
        request_id = request.get("id") if "method" in request else None
        answered = False
        failure: str | None = None
        try:
            buffer: list[str] = []
            async for line in response.aiter_lines():
                if line:
                    buffer.append(line)
                    continue
                answered = await self._queue_event_lines(buffer, request_id) or answered
                buffer = []
            if buffer:
                answered = await self._queue_event_lines(buffer, request_id) or answered
        except httpx.HTTPError as exc:
            failure = f"event stream failed: {exc.__class__.__name__}: {exc}"
            logger.warning("MCP event stream from %s failed: %s", self.url, exc)
        finally:
            await response.aclose()

        if request_id is not None and not answered:
            await self._incoming.put(
                make_error_response(
                    request_id,
                    INTERNAL_ERROR,
                    failure or "event stream ended before a response was received",
                    {TRANSPORT_ERROR_MARKER: True},
                )
            )

    async def _queue_event_lines(self, lines: list[str], request_id: Any) -> bool:
        answered = False
        for data in iter_sse_data(lines):
            try:
                messages = decode_messages(data)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed SSE frame from %s", self.url)
                continue
            for item in messages:
                if request_id is not None and is_response_message(item) and item.get("id") == request_id:
                    answered = True
                await self._incoming.put(item)
        return answered
