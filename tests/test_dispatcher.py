import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from mcp_agent_client.dispatcher import ToolDispatcher, parse_arguments
from mcp_agent_client.elicitation import ElicitationRequest
from mcp_agent_client.errors import McpAuthRequiredError, UrlElicitationRequiredError
from mcp_agent_client.events import (
    AgenticEvent,
    ProgressReported,
    ServerNeedsAuth,
    ToolCompleted,
    ToolStarted,
)
from mcp_agent_client.models import (
    McpContent,
    McpTool,
    McpToolResult,
    ProgressNotification,
    ToolCallRequest,
)


class FakeSession:
    """Stands in for an McpSession; `behavior` decides each call's outcome."""

    def __init__(self, behavior: Callable[..., Any] | None = None) -> None:
        self.behavior = behavior
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        abort: asyncio.Event | None = None,
        on_progress: Callable[[ProgressNotification], None] | None = None,
    ) -> McpToolResult:
        self.calls.append((name, arguments))
        if self.behavior is not None:
            return await self.behavior(name, arguments, on_progress)
        return McpToolResult(content=[McpContent(type="text", text=f"{name} ok")])


def tools(*names: str) -> list[McpTool]:
    return [McpTool(name=name, input_schema={"type": "object"}) for name in names]


def call(call_id: str, name: str, arguments: str = "{}") -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def test_parse_arguments() -> None:
    assert parse_arguments("") == {}
    assert parse_arguments("  ") == {}
    assert parse_arguments('{"a": 1}') == {"a": 1}
    with pytest.raises(ValueError, match="expected a JSON object, got list"):
        parse_arguments("[1, 2]")
    with pytest.raises(ValueError):
        parse_arguments("{broken")


def test_first_registered_server_wins_duplicate_names() -> None:
    async def _run() -> None:
        first, second = FakeSession(), FakeSession()
        dispatcher = ToolDispatcher()
        dispatcher.register("s1", first, tools("search", "fetch"))  # type: ignore[arg-type]
        dispatcher.register("s2", second, tools("search", "write"))  # type: ignore[arg-type]

        assert dispatcher.find_server("search") == "s1"
        assert dispatcher.find_server("write") == "s2"
        assert dispatcher.find_server("missing") is None
        names = [tool["function"]["name"] for tool in dispatcher.openai_tools()]
        assert names == ["search", "fetch", "write"]

        [result] = await dispatcher.execute([call("c1", "search")])
        assert result.server_id == "s1"
        assert first.calls == [("search", {})]
        assert second.calls == []

        dispatcher.unregister("s1")
        assert dispatcher.find_server("search") == "s2"

    asyncio.run(_run())


def test_results_keep_call_order_when_tools_finish_out_of_order() -> None:
    async def behavior(name: str, arguments: dict[str, Any], on_progress: Any) -> McpToolResult:
        await asyncio.sleep(arguments["delay"])
        return McpToolResult(content=[McpContent(type="text", text=name)])

    async def _run() -> None:
        events: list[AgenticEvent] = []
        dispatcher = ToolDispatcher(emit=events.append)
        dispatcher.register("s", FakeSession(behavior), tools("slow", "fast"))  # type: ignore[arg-type]

        results = await dispatcher.execute(
            [call("a", "slow", '{"delay": 0.05}'), call("b", "fast", '{"delay": 0.0}')]
        )

        assert [result.tool_call_id for result in results] == ["a", "b"]
        assert [result.text for result in results] == ["slow", "fast"]
        started = [event.tool_call_id for event in events if isinstance(event, ToolStarted)]
        completed = [event.result.tool_call_id for event in events if isinstance(event, ToolCompleted)]
        assert started == ["a", "b"]
        assert completed == ["b", "a"]

    asyncio.run(_run())


def test_bad_arguments_and_unknown_tools_become_error_results() -> None:
    async def _run() -> None:
        session = FakeSession()
        dispatcher = ToolDispatcher()
        dispatcher.register("s", session, tools("echo"))  # type: ignore[arg-type]

        parsed, missing = await dispatcher.execute(
            [call("a", "echo", "{oops"), call("b", "nope")]
        )

        assert parsed.is_error
        assert parsed.text.startswith("Failed to parse tool arguments: ")
        assert parsed.text.endswith("\nRaw arguments: {oops")
        assert missing.is_error
        assert missing.text == "Tool not found: nope"
        assert missing.server_id is None
        assert session.calls == []

    asyncio.run(_run())


def test_progress_is_reported_with_tool_call_identity() -> None:
    async def behavior(name: str, arguments: dict[str, Any], on_progress: Any) -> McpToolResult:
        on_progress(ProgressNotification(server_id="s", progress_token="t", progress=1, total=2))
        return McpToolResult()

    async def _run() -> None:
        events: list[AgenticEvent] = []
        dispatcher = ToolDispatcher()
        dispatcher.set_event_sink(events.append)
        dispatcher.register("s", FakeSession(behavior), tools("work"))  # type: ignore[arg-type]
        await dispatcher.execute([call("c9", "work")])

        [progress] = [event for event in events if isinstance(event, ProgressReported)]
        assert progress.tool_call_id == "c9"
        assert progress.tool_name == "work"
        assert progress.progress.percentage == 50

    asyncio.run(_run())


def test_auth_failure_flags_server_and_returns_error_text() -> None:
    async def behavior(name: str, arguments: dict[str, Any], on_progress: Any) -> McpToolResult:
        raise McpAuthRequiredError("https://mcp.example.com/mcp")

    async def _run() -> None:
        events: list[AgenticEvent] = []
        dispatcher = ToolDispatcher(emit=events.append)
        dispatcher.register(
            "s", FakeSession(behavior), tools("private"), url="https://mcp.example.com/mcp"  # type: ignore[arg-type]
        )
        [result] = await dispatcher.execute([call("a", "private")])

        assert result.is_error
        assert result.text == (
            "Error executing tool: authentication required for https://mcp.example.com/mcp"
        )
        assert ServerNeedsAuth(server_id="s", server_url="https://mcp.example.com/mcp") in events

    asyncio.run(_run())


def test_url_elicitation_error_lists_links() -> None:
    async def behavior(name: str, arguments: dict[str, Any], on_progress: Any) -> McpToolResult:
        raise UrlElicitationRequiredError(
            "authorize first",
            elicitations=[
                ElicitationRequest(id="e1", mode="url", message="Connect drive",
                                   url="https://example.com/connect"),
            ],
            code=-32042,
        )

    async def _run() -> None:
        dispatcher = ToolDispatcher()
        dispatcher.register("s", FakeSession(behavior), tools("drive"))  # type: ignore[arg-type]
        [result] = await dispatcher.execute([call("a", "drive")])

        assert result.is_error
        assert result.text.startswith("Error executing tool: URL elicitation required: authorize first")
        assert result.text.endswith("\n- Connect drive: https://example.com/connect")

    asyncio.run(_run())


def test_unexpected_exception_is_reported_as_tool_error() -> None:
    async def behavior(name: str, arguments: dict[str, Any], on_progress: Any) -> McpToolResult:
        raise RuntimeError("disk on fire")

    async def _run() -> None:
        dispatcher = ToolDispatcher()
        dispatcher.register("s", FakeSession(behavior), tools("burn"))  # type: ignore[arg-type]
        [result] = await dispatcher.execute([call("a", "burn")])
        assert result.text == "Error executing tool: disk on fire"
        assert result.is_error

    asyncio.run(_run())


def test_media_content_is_carried_on_the_result() -> None:
    async def behavior(name: str, arguments: dict[str, Any], on_progress: Any) -> McpToolResult:
        return McpToolResult(content=[
            McpContent(type="text", text="chart"),
            McpContent(type="image", data="iVBOR", mime_type="image/png"),
        ])

    async def _run() -> None:
        dispatcher = ToolDispatcher()
        dispatcher.register("s", FakeSession(behavior), tools("plot"))  # type: ignore[arg-type]
        [result] = await dispatcher.execute([call("a", "plot")])
        assert result.text == "chart"
        assert [item.mime_type for item in result.media] == ["image/png"]
        assert not result.is_error

    asyncio.run(_run())
