from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeAlias

from .elicitation import ElicitationRequest, url_elicitations_from_error
from .errors import (
    McpClientError,
    McpProtocolError,
    McpSessionError,
    McpTimeoutError,
    McpTransportError,
    UrlElicitationRequiredError,
)
from .models import InitializeResult, McpPrompt, McpTool, McpToolResult, ProgressNotification, PromptResult
from .protocol import (
    CANCELLED_NOTIFICATION,
    CLIENT_NAME,
    CLIENT_VERSION,
    ELICITATION_CREATE_METHOD,
    INITIALIZE_METHOD,
    INITIALIZED_NOTIFICATION,
    INTERNAL_ERROR,
    MCP_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PING_METHOD,
    PROGRESS_NOTIFICATION,
    PROMPTS_GET_METHOD,
    PROMPTS_LIST_METHOD,
    SAMPLING_CREATE_MESSAGE_METHOD,
    TOOLS_CALL_METHOD,
    TOOLS_LIST_METHOD,
    URL_ELICITATION_REQUIRED,
    extract_error,
    is_request_message,
    is_response_message,
    make_error_response,
    make_notification,
    make_request,
    make_response,
)
from .timeouts import TimeoutCoordinator
from .transport import TRANSPORT_ERROR_MARKER, CredentialProvider, HttpTransport, Transport

logger = logging.getLogger(__name__)

SamplingHandler: TypeAlias = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
ElicitationHandler: TypeAlias = Callable[[ElicitationRequest], Awaitable[dict[str, Any]]]
NotificationHandler: TypeAlias = Callable[[str, dict[str, Any]], Awaitable[None] | None]
SessionChangedHandler: TypeAlias = Callable[[str | None], Awaitable[None] | None]
ProgressCallback: TypeAlias = Callable[[ProgressNotification], Awaitable[None] | None]


class _Aborted(Exception):
    pass


class McpSession:
    """Async session with one MCP server over a JSON-RPC transport."""

    def __init__(
        self,
        transport: Transport,
        *,
        server_id: str,
        server_name: str | None = None,
        timeouts: TimeoutCoordinator | None = None,
        request_timeout: float = 60.0,
        on_notification: NotificationHandler | None = None,
        on_session_changed: SessionChangedHandler | None = None,
    ) -> None:
        """Create a session bound to a transport.

        Args:
            transport: Connected or connectable transport instance.
            server_id: Identifier of the configured server.
            server_name: Display name, used in logs and notifications.
            timeouts: Deadline coordinator for tool calls.
            request_timeout: Timeout for non-tool requests (initialize, lists).
            on_notification: Receives `(method, params)` for server
                notifications other than progress.
            on_session_changed: Receives the new session id whenever it differs
                from the one the session was initialized with.
        """
        self._transport = transport
        self.server_id = server_id
        self.server_name = server_name or server_id
        self.timeouts = timeouts if timeouts is not None else TimeoutCoordinator()
        self._request_timeout = request_timeout
        self.on_notification = on_notification
        self.on_session_changed = on_session_changed

        self._next_request_id = 1
        self._pending: dict[int | str, asyncio.Future[dict[str, Any]]] = {}
        self._progress: dict[int | str, tuple[int | str, ProgressCallback | None]] = {}
        self._sampling_handler: SamplingHandler | None = None
        self._elicitation_handler: ElicitationHandler | None = None
        self._initialize_result: InitializeResult | None = None

        self._receiver_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._started = False
        self._closed = False

    @classmethod
    def connect_http(
        cls,
        url: str,
        *,
        server_id: str,
        server_name: str | None = None,
        headers: Mapping[str, str] | None = None,
        credentials: CredentialProvider | None = None,
        timeouts: TimeoutCoordinator | None = None,
        request_timeout: float = 60.0,
    ) -> McpSession:
        """Create a session for a streamable HTTP MCP endpoint."""
        transport = HttpTransport(url, headers=headers, credentials=credentials)
        return cls(
            transport,
            server_id=server_id,
            server_name=server_name,
            timeouts=timeouts,
            request_timeout=request_timeout,
        )

    @property
    def session_id(self) -> str | None:
        """Session id currently attached to requests, if any."""
        return self._transport.session_id

    @property
    def initialize_result(self) -> InitializeResult | None:
        return self._initialize_result

    @property
    def initialized(self) -> bool:
        return self._initialize_result is not None

    def set_sampling_handler(self, handler: SamplingHandler | None) -> None:
        self._sampling_handler = handler

    def set_elicitation_handler(self, handler: ElicitationHandler | None) -> None:
        self._elicitation_handler = handler

    async def start(self) -> McpSession:
        """Connect transport and start background receive loop once."""
        if self._closed:
            raise McpTransportError("session is closed")
        if self._started:
            return self
        await self._transport.connect()
        self._start_receiver()
        self._started = True
        return self

    async def __aenter__(self) -> McpSession:
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop receive loop, fail pending requests, and close transport."""
        if self._closed:
            return
        self._closed = True

        if self._receiver_task is not None:
            self._receiver_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver_task
            self._receiver_task = None

        for task in list(self._background_tasks):
            task.cancel()
        for task in list(self._background_tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._background_tasks.clear()

        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(McpTransportError("session is closing"))
        self._pending.clear()
        self._progress.clear()
        self.timeouts.clear()

        await self._transport.close()
        self._started = False

    async def initialize(self, session_id: str | None = None) -> InitializeResult:
        """Establish the MCP session, resuming `session_id` when possible.

        A stored session id is validated with `ping`. When the server no longer
        knows it, a fresh session is negotiated instead and the caller sees no
        failure. `on_session_changed` fires once if the resulting id differs
        from `session_id`.
        """
        await self.start()

        if session_id is not None:
            self._transport.session_id = session_id
            self._transport.protocol_version = MCP_PROTOCOL_VERSION
            try:
                await self.request(PING_METHOD)
            except McpSessionError:
                logger.info(
                    "Stored session for %s was rejected; starting a fresh session",
                    self.server_name,
                )
            else:
                logger.info("Resumed MCP session for %s", self.server_name)
                self._initialize_result = InitializeResult(
                    protocol_version=MCP_PROTOCOL_VERSION,
                    session_id=session_id,
                    resumed=True,
                )
                return self._initialize_result

        result = await self._handshake()
        await self._report_session_change(session_id)
        return result

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a JSON-RPC request and await response result."""
        if self._closed:
            raise McpTransportError("session is closed")

        request_id = self._allocate_request_id()
        message = make_request(request_id, method, dict(params) if params is not None else None)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = future

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        try:
            response = await asyncio.wait_for(
                self._exchange(message, future),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise McpTimeoutError(
                f"request timed out for method={method!r} after {timeout_seconds:.1f}s"
            ) from exc
        finally:
            self._pending.pop(request_id, None)

        return _result_or_raise(method, response)

    async def notify(self, method: str, params: Mapping[str, Any] | None = None) -> None:
        await self._transport.send(
            make_notification(method, dict(params) if params is not None else None)
        )

    async def ping(self) -> None:
        await self.request(PING_METHOD)

    async def list_tools(self) -> list[McpTool]:
        """Return every tool the server advertises, following pagination."""
        try:
            return await self._list_tools_once()
        except McpSessionError:
            logger.info("Session rejected while listing tools on %s; reconnecting", self.server_name)
        await self.reinitialize()
        return await self._list_tools_once()

    async def list_prompts(self) -> list[McpPrompt]:
        prompts: list[McpPrompt] = []
        cursor: str | None = None
        while True:
            result = await self.request(PROMPTS_LIST_METHOD, {"cursor": cursor} if cursor else {})
            raw = result.get("prompts") if isinstance(result, dict) else None
            if isinstance(raw, list):
                prompts.extend(
                    McpPrompt.from_payload(item)
                    for item in raw
                    if isinstance(item, dict) and isinstance(item.get("name"), str)
                )
            cursor = _next_cursor(result)
            if cursor is None:
                return prompts

    async def get_prompt(
        self,
        name: str,
        arguments: Mapping[str, str] | None = None,
    ) -> PromptResult:
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = dict(arguments)
        result = await self.request(PROMPTS_GET_METHOD, params)
        if not isinstance(result, dict):
            return PromptResult()
        description = result.get("description")
        messages = result.get("messages")
        return PromptResult(
            description=description if isinstance(description, str) else None,
            messages=[item for item in messages if isinstance(item, dict)]
            if isinstance(messages, list)
            else [],
        )

    async def call_tool(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        abort: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> McpToolResult:
        """Invoke a tool and return its result.

        Timeouts and aborts resolve to an error result. A rejected session is
        re-established once and the call retried; if the retry is rejected as
        well, that also becomes an error result. `McpAuthRequiredError` and
        `UrlElicitationRequiredError` propagate to the caller.
        """
        try:
            return await self._call_tool_once(name, arguments, abort, on_progress)
        except McpSessionError as exc:
            logger.info(
                "Session rejected while calling %s on %s (%s); reconnecting",
                name,
                self.server_name,
                exc,
            )

        try:
            await self.reinitialize()
            return await self._call_tool_once(name, arguments, abort, on_progress)
        except McpSessionError as exc:
            logger.warning("Retry of %s on %s failed: %s", name, self.server_name, exc)
            return McpToolResult.error(f"Error executing tool: {exc}")

    async def reinitialize(self) -> InitializeResult:
        """Negotiate a brand new session, ignoring any current session id."""
        previous = self.session_id
        result = await self._handshake()
        await self._report_session_change(previous)
        return result

    def extend_timeouts(self) -> int:
        """Extend the deadline of every outstanding tool call on this session."""
        return self.timeouts.extend_all()

    async def _handshake(self) -> InitializeResult:
        self._transport.reset_session()
        result = await self.request(INITIALIZE_METHOD, _initialize_params())
        result_dict = result if isinstance(result, dict) else {}
        protocol_version = result_dict.get("protocolVersion")
        if not isinstance(protocol_version, str):
            protocol_version = MCP_PROTOCOL_VERSION
        self._transport.protocol_version = protocol_version

        await self.notify(INITIALIZED_NOTIFICATION)

        server_info = result_dict.get("serverInfo")
        capabilities = result_dict.get("capabilities")
        self._initialize_result = InitializeResult(
            protocol_version=protocol_version,
            server_info=server_info if isinstance(server_info, dict) else None,
            capabilities=capabilities if isinstance(capabilities, dict) else {},
            session_id=self.session_id,
            raw=result_dict,
        )
        logger.info(
            "MCP session established with %s (protocol %s)",
            self._initialize_result.server_name or self.server_name,
            protocol_version,
        )
        return self._initialize_result

    async def _report_session_change(self, previous: str | None) -> None:
        current = self.session_id
        if current == previous or self.on_session_changed is None:
            return
        await _maybe_await(self.on_session_changed(current))

    async def _list_tools_once(self) -> list[McpTool]:
        tools: list[McpTool] = []
        cursor: str | None = None
        while True:
            result = await self.request(TOOLS_LIST_METHOD, {"cursor": cursor} if cursor else {})
            raw = result.get("tools") if isinstance(result, dict) else None
            if isinstance(raw, list):
                tools.extend(
                    McpTool.from_payload(item)
                    for item in raw
                    if isinstance(item, dict) and isinstance(item.get("name"), str)
                )
            cursor = _next_cursor(result)
            if cursor is None:
                return tools

    async def _call_tool_once(
        self,
        name: str,
        arguments: Mapping[str, Any] | None,
        abort: asyncio.Event | None,
        on_progress: ProgressCallback | None,
    ) -> McpToolResult:
        if self._closed:
            raise McpTransportError("session is closed")

        request_id = self._allocate_request_id()
        progress_token = f"{self.server_id}:{request_id}"
        message = make_request(
            request_id,
            TOOLS_CALL_METHOD,
            {
                "name": name,
                "arguments": dict(arguments) if arguments is not None else {},
                "_meta": {"progressToken": progress_token},
            },
        )
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._pending[request_id] = future
        self._progress[progress_token] = (request_id, on_progress)
        self.timeouts.start(request_id, lambda: self._expire(request_id, name))

        try:
            response = await self._exchange(message, future, abort)
        except McpTimeoutError:
            await self._send_cancelled(request_id, "Request timed out")
            return McpToolResult.error(f"Tool call timed out: {name}")
        except _Aborted:
            await self._send_cancelled(request_id, "Cancelled by user")
            return McpToolResult.error(f"Tool call cancelled: {name}")
        finally:
            self.timeouts.finish(request_id)
            self._pending.pop(request_id, None)
            self._progress.pop(progress_token, None)

        error = extract_error(response)
        if error is not None and error.get("code") == URL_ELICITATION_REQUIRED:
            data = error.get("data")
            raise UrlElicitationRequiredError(
                str(error.get("message", "URL elicitation required")),
                elicitations=url_elicitations_from_error(data),
                code=URL_ELICITATION_REQUIRED,
                data=data,
            )
        return McpToolResult.from_payload(_result_or_raise(TOOLS_CALL_METHOD, response))

    async def _exchange(
        self,
        message: dict[str, Any],
        future: asyncio.Future[dict[str, Any]],
        abort: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Send `message` and wait for its response.

        The send runs as its own task so a server that is slow to answer (a
        JSON body arrives only with the result) cannot hold the caller past
        its timeout or abort. The HTTP exchange is cancelled when the wait
        ends first.
        """
        sending = asyncio.ensure_future(self._transport.send(message))
        try:
            return await _wait_or_abort(future, abort, sending)
        finally:
            if not sending.done():
                sending.cancel()
            with contextlib.suppress(asyncio.CancelledError, McpClientError):
                await sending

    def _expire(self, request_id: int | str, name: str) -> None:
        future = self._pending.get(request_id)
        if future is not None and not future.done():
            future.set_exception(McpTimeoutError(f"tool call {name!r} timed out"))

    async def _send_cancelled(self, request_id: int | str, reason: str) -> None:
        try:
            await self.notify(CANCELLED_NOTIFICATION, {"requestId": request_id, "reason": reason})
        except McpClientError as exc:
            logger.warning("Failed to send cancellation for request %s: %s", request_id, exc)

    def _allocate_request_id(self) -> int:
        request_id = self._next_request_id
        self._next_request_id += 1
        return request_id

    def _start_receiver(self) -> None:
        """Start background receive loop exactly once."""
        if self._receiver_task is not None:
            return
        self._receiver_task = asyncio.create_task(self._receiver_loop())

    def _spawn_background_task(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _receiver_loop(self) -> None:
        """Route incoming messages to request futures, handlers, or listeners."""
        try:
            while not self._closed:
                payload = await self._transport.recv()

                if is_response_message(payload):
                    response_id = payload.get("id")
                    if isinstance(response_id, (int, str)):
                        future = self._pending.pop(response_id, None)
                        if future is not None and not future.done():
                            future.set_result(payload)
                    continue

                method = payload.get("method")
                if not isinstance(method, str):
                    continue

                if is_request_message(payload):
                    self._spawn_background_task(self._handle_server_request(payload))
                    continue

                params = payload.get("params")
                params_dict = params if isinstance(params, dict) else {}
                if method == PROGRESS_NOTIFICATION:
                    await self._handle_progress(params_dict)
                elif self.on_notification is not None:
                    self._spawn_background_task(self._notify_listener(method, params_dict))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._closed:
                return
            logger.error("Receive loop for %s failed: %s", self.server_name, exc)
            transport_error = McpTransportError(f"receiver loop failed: {exc}")
            for future in list(self._pending.values()):
                if not future.done():
                    future.set_exception(transport_error)
            self._pending.clear()

    async def _handle_progress(self, params: dict[str, Any]) -> None:
        token = params.get("progressToken")
        entry = self._progress.get(token) if isinstance(token, (int, str)) else None
        if entry is None:
            return
        request_id, callback = entry
        self.timeouts.extend(request_id)
        if callback is not None:
            await _maybe_await(callback(_progress_from_params(self.server_id, params)))

    async def _notify_listener(self, method: str, params: dict[str, Any]) -> None:
        # Runs off the receive loop: listeners may issue requests of their own.
        if self.on_notification is None:
            return
        try:
            await _maybe_await(self.on_notification(method, params))
        except Exception:
            logger.exception("Notification listener failed for %s", method)

    async def _handle_server_request(self, payload: dict[str, Any]) -> None:
        request_id = payload["id"]
        method = payload["method"]
        params = payload.get("params")
        params_dict = params if isinstance(params, dict) else {}

        try:
            if method == PING_METHOD:
                response = make_response(request_id, {})
            elif method == SAMPLING_CREATE_MESSAGE_METHOD and self._sampling_handler is not None:
                response = make_response(
                    request_id,
                    await self._run_nested(self._sampling_handler(params_dict)),
                )
            elif method == ELICITATION_CREATE_METHOD and self._elicitation_handler is not None:
                request = ElicitationRequest.from_payload(payload)
                response = make_response(
                    request_id,
                    await self._run_nested(self._elicitation_handler(request)),
                )
            else:
                response = make_error_response(
                    request_id,
                    METHOD_NOT_FOUND,
                    f"Method not found: {method}",
                )
        except McpProtocolError as exc:
            response = make_error_response(
                request_id,
                exc.code if exc.code is not None else INTERNAL_ERROR,
                str(exc),
                exc.data,
            )
        except Exception as exc:
            logger.exception("Handler for %s from %s failed", method, self.server_name)
            response = make_error_response(request_id, INTERNAL_ERROR, str(exc))

        try:
            await self._transport.send(response)
        except McpClientError as exc:
            logger.warning("Failed to answer %s request from %s: %s", method, self.server_name, exc)

    async def _run_nested(self, awaitable: Awaitable[dict[str, Any]]) -> dict[str, Any]:
        """Await a sampling/elicitation answer with all tool-call timers extended."""
        self.timeouts.extend_all()
        try:
            return await awaitable
        finally:
            self.timeouts.extend_all()


async def _wait_or_abort(
    future: asyncio.Future[dict[str, Any]],
    abort: asyncio.Event | None,
    sending: asyncio.Future[None] | None = None,
) -> dict[str, Any]:
    """Wait for `future`, raising `_Aborted` if `abort` fires first.

    A failed `sending` task raises its error here; one that finishes cleanly
    just drops out of the wait.
    """
    if abort is not None and abort.is_set():
        raise _Aborted()
    waiters: set[asyncio.Future[Any]] = {future}
    abort_task = asyncio.ensure_future(abort.wait()) if abort is not None else None
    if abort_task is not None:
        waiters.add(abort_task)
    if sending is not None:
        waiters.add(sending)
    try:
        while True:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if future.done():
                return future.result()
            if abort_task is not None and abort_task.done():
                raise _Aborted()
            if sending is not None and sending.done():
                sending.result()
                waiters.discard(sending)
                sending = None
    finally:
        if abort_task is not None:
            abort_task.cancel()


def _result_or_raise(method: str, response: dict[str, Any]) -> Any:
    error = extract_error(response)
    if error is None:
        return response.get("result")
    code = error.get("code")
    message_text = str(error.get("message", "JSON-RPC error"))
    data = error.get("data")
    if isinstance(data, dict) and data.get(TRANSPORT_ERROR_MARKER):
        raise McpTransportError(f"{method} failed: {message_text}")
    raise McpProtocolError(
        f"{method} failed: {message_text}",
        code=code if isinstance(code, int) else None,
        data=data,
    )


def _initialize_params() -> dict[str, Any]:
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {
            "sampling": {},
            "elicitation": {"form": {}, "url": {}},
        },
        "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
    }


def _next_cursor(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    cursor = result.get("nextCursor")
    return cursor if isinstance(cursor, str) and cursor else None


def _progress_from_params(server_id: str, params: dict[str, Any]) -> ProgressNotification:
    progress = params.get("progress")
    total = params.get("total")
    message = params.get("message")
    return ProgressNotification(
        server_id=server_id,
        progress_token=params.get("progressToken"),
        progress=progress if isinstance(progress, (int, float)) else 0,
        total=total if isinstance(total, (int, float)) else None,
        message=message if isinstance(message, str) else None,
    )


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


