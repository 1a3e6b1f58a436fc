from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import McpAuthRequiredError, UrlElicitationRequiredError
from .events import EventSink, ProgressReported, ServerNeedsAuth, ToolCompleted, ToolStarted
from .models import McpTool, ProgressNotification, ToolCallRequest, ToolCallResult
from .session import McpSession

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ServerEntry:
    server_id: str
    session: McpSession
    url: str | None = None
    tools: list[McpTool] = field(default_factory=list)


class ToolDispatcher:
    """Routes model tool calls to the MCP server that advertises each tool.

    Servers are searched in registration order and the first one advertising a
    tool name handles it.
    """

    def __init__(self, *, emit: EventSink | None = None) -> None:
        self._servers: dict[str, _ServerEntry] = {}
        self._emit = emit

    def set_event_sink(self, emit: EventSink | None) -> None:
        self._emit = emit

    def register(
        self,
        server_id: str,
        session: McpSession,
        tools: Sequence[McpTool],
        *,
        url: str | None = None,
    ) -> None:
        entry = self._servers.get(server_id)
        if entry is None:
            self._servers[server_id] = _ServerEntry(server_id, session, url, list(tools))
            return
        entry.session = session
        entry.tools = list(tools)
        if url is not None:
            entry.url = url

    def unregister(self, server_id: str) -> None:
        self._servers.pop(server_id, None)

    def update_tools(self, server_id: str, tools: Sequence[McpTool]) -> None:
        entry = self._servers.get(server_id)
        if entry is not None:
            entry.tools = list(tools)

    def tools_for(self, server_id: str) -> list[McpTool]:
        entry = self._servers.get(server_id)
        return list(entry.tools) if entry is not None else []

    @property
    def server_ids(self) -> list[str]:
        return list(self._servers)

    def find_server(self, tool_name: str) -> str | None:
        """Return the id of the first server advertising `tool_name`."""
        for entry in self._servers.values():
            if any(tool.name == tool_name for tool in entry.tools):
                return entry.server_id
        return None

    def openai_tools(self) -> list[dict[str, Any]]:
        """All advertised tools in completion API format, first name wins."""
        seen: set[str] = set()
        tools: list[dict[str, Any]] = []
        for entry in self._servers.values():
            for tool in entry.tools:
                if tool.name in seen:
                    continue
                seen.add(tool.name)
                tools.append(tool.to_openai_tool())
        return tools

    async def execute(
        self,
        calls: Sequence[ToolCallRequest],
        *,
        abort: asyncio.Event | None = None,
    ) -> list[ToolCallResult]:
        """Run all calls concurrently; results come back in call order."""
        return list(await asyncio.gather(*(self._execute_one(call, abort) for call in calls)))

    async def _execute_one(
        self,
        call: ToolCallRequest,
        abort: asyncio.Event | None,
    ) -> ToolCallResult:
        server_id = self.find_server(call.name)
        self._publish(ToolStarted(tool_call_id=call.id, tool_name=call.name, server_id=server_id))
        result = await self._run(call, server_id, abort)
        self._publish(ToolCompleted(result=result))
        return result

    async def _run(
        self,
        call: ToolCallRequest,
        server_id: str | None,
        abort: asyncio.Event | None,
    ) -> ToolCallResult:
        try:
            arguments = parse_arguments(call.arguments)
        except ValueError as exc:
            return _error_result(
                call,
                f"Failed to parse tool arguments: {exc}\nRaw arguments: {call.arguments}",
                server_id,
            )

        if server_id is None:
            return _error_result(call, f"Tool not found: {call.name}", None)
        entry = self._servers[server_id]

        def _on_progress(progress: ProgressNotification) -> None:
            self._publish(
                ProgressReported(progress=progress, tool_call_id=call.id, tool_name=call.name)
            )

        try:
            outcome = await entry.session.call_tool(
                call.name,
                arguments,
                abort=abort,
                on_progress=_on_progress,
            )
        except McpAuthRequiredError as exc:
            self._publish(ServerNeedsAuth(server_id=server_id, server_url=entry.url or exc.server_url))
            return _error_result(
                call,
                f"Error executing tool: authentication required for {exc.server_url}",
                server_id,
            )
        except UrlElicitationRequiredError as exc:
            links = "\n".join(f"- {item.message}: {item.url}" for item in exc.elicitations if item.url)
            return _error_result(call, f"Error executing tool: {exc}\n{links}".rstrip(), server_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s on %s failed: %s", call.name, server_id, exc)
            return _error_result(call, f"Error executing tool: {exc}", server_id)

        return ToolCallResult(
            tool_call_id=call.id,
            tool_name=call.name,
            text=outcome.text,
            media=outcome.media,
            is_error=outcome.is_error,
            server_id=server_id,
        )

    def _publish(self, event: Any) -> None:
        if self._emit is not None:
            self._emit(event)


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode a tool call's JSON arguments; blank input means no arguments."""
    if not raw.strip():
        return {}
    decoded = json.loads(raw)
    if not isinstance(decoded, Mapping):
        raise ValueError(f"expected a JSON object, got {type(decoded).__name__}")
    return dict(decoded)


def _error_result(call: ToolCallRequest, text: str, server_id: str | None) -> ToolCallResult:
    return ToolCallResult(
        tool_call_id=call.id,
        tool_name=call.name,
        text=text,
        is_error=True,
        server_id=server_id,
    )
