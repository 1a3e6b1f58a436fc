import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from mcp_agent_client.dispatcher import ToolDispatcher
from mcp_agent_client.elicitation import ElicitationRequest
from mcp_agent_client.errors import McpProtocolError
from mcp_agent_client.events import AgenticEvent, ElicitationRequested, SamplingRequested
from mcp_agent_client.models import McpContent, McpTool, McpToolResult
from mcp_agent_client.proxy import (
    DEFAULT_SAMPLING_MODEL,
    InteractionProxy,
    SamplingProcessor,
    convert_messages,
    convert_tool_choice,
    convert_tools,
    select_model,
    stop_reason,
)


class ScriptedCompletions:
    def __init__(self, responses: list[dict[str, Any]]) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    async def chat_completion(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        self.requests.append(
            {
                "model": model,
                "messages": [dict(message) for message in messages],
                "tools": tools,
                "tool_choice": tool_choice,
                "max_tokens": max_tokens,
            }
        )
        return self.responses.pop(0)


class EchoSession:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def call_tool(self, name: str, arguments: dict[str, Any], **_: Any) -> McpToolResult:
        self.calls.append(arguments)
        return McpToolResult(content=[McpContent(type="text", text=f"echo {arguments['text']}")])


def reply(content: str, finish_reason: str = "stop") -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content},
                         "finish_reason": finish_reason}]}


def tool_reply(call_id: str, text: str) -> dict[str, Any]:
    return {
        "choices": [{
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": call_id, "type": "function",
                                "function": {"name": "echo",
                                             "arguments": f'{{"text": "{text}"}}'}}],
            },
            "finish_reason": "tool_calls",
        }]
    }


def echo_dispatcher() -> tuple[ToolDispatcher, EchoSession]:
    session = EchoSession()
    dispatcher = ToolDispatcher()
    dispatcher.register("s", session, [McpTool(name="echo")])  # type: ignore[arg-type]
    return dispatcher, session


def test_stop_reason_mapping() -> None:
    assert stop_reason("stop") == "endTurn"
    assert stop_reason("length") == "maxTokens"
    assert stop_reason("tool_calls") == "toolUse"
    assert stop_reason("content_filter") == "endTurn"
    assert stop_reason(None) == "endTurn"


def test_tool_choice_and_tool_conversion() -> None:
    assert convert_tool_choice({"type": "auto"}) == "auto"
    assert convert_tool_choice({"mode": "required"}) == "required"
    assert convert_tool_choice({"type": "tool", "name": "echo"}) == {
        "type": "function",
        "function": {"name": "echo"},
    }
    assert convert_tool_choice(None) is None

    assert convert_tools([]) is None
    assert convert_tools([{"name": "echo", "inputSchema": {"type": "object"}}]) == [
        {"type": "function",
         "function": {"name": "echo", "description": "", "parameters": {"type": "object"}}}
    ]


def test_model_hint_needs_provider_prefix() -> None:
    assert select_model({"hints": [{"name": "anthropic/claude"}]}, "d/m") == "anthropic/claude"
    assert select_model({"hints": [{"name": "claude"}]}, "d/m") == "d/m"
    assert select_model({"hints": []}, "d/m") == "d/m"
    assert select_model(None, "d/m") == "d/m"


def test_convert_messages_handles_text_tool_use_and_tool_result() -> None:
    messages = [
        {"role": "user", "content": {"type": "text", "text": "hi"}},
        {"role": "assistant", "content": [
            {"type": "tool_use", "id": "tu1", "name": "echo", "input": {"text": "x"}},
        ]},
        {"role": "user", "content": [
            {"type": "tool_result", "toolUseId": "tu1",
             "content": [{"type": "text", "text": "echo x"}]},
        ]},
        {"role": "user", "content": [
            {"type": "text", "text": "line one"},
            {"type": "image", "data": "...", "mimeType": "image/png"},
            {"type": "text", "text": "line two"},
        ]},
        {"role": "user", "content": {"type": "image", "data": "..."}},
    ]
    assert convert_messages(messages, "be brief") == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "tool_calls": [
            {"id": "tu1", "type": "function",
             "function": {"name": "echo", "arguments": '{"text": "x"}'}},
        ]},
        {"role": "tool", "tool_call_id": "tu1", "content": "echo x"},
        {"role": "user", "content": "line one\nline two"},
    ]


def test_sampling_runs_tools_then_answers() -> None:
    async def _run() -> None:
        dispatcher, session = echo_dispatcher()
        completions = ScriptedCompletions([tool_reply("c1", "ping"), reply("pong")])
        processor = SamplingProcessor(completions, dispatcher)

        result = await processor.process(
            {
                "messages": [{"role": "user", "content": {"type": "text", "text": "go"}}],
                "systemPrompt": "sys",
                "maxTokens": 100,
                "tools": [{"name": "echo", "inputSchema": {"type": "object"}}],
                "toolChoice": {"type": "auto"},
            },
            preferred_model="pref/model",
        )

        assert result == {
            "role": "assistant",
            "content": {"type": "text", "text": "pong"},
            "model": "pref/model",
            "stopReason": "endTurn",
        }
        assert session.calls == [{"text": "ping"}]
        first, second = completions.requests
        assert first["max_tokens"] == 100
        assert first["tool_choice"] == "auto"
        assert second["messages"][-1] == {"role": "tool", "tool_call_id": "c1", "content": "echo ping"}
        assert second["messages"][-2]["tool_calls"][0]["id"] == "c1"

    asyncio.run(_run())


def test_sampling_returns_tool_use_on_last_iteration() -> None:
    async def _run() -> None:
        dispatcher, session = echo_dispatcher()
        completions = ScriptedCompletions([tool_reply("c1", "a"), tool_reply("c2", "b")])
        processor = SamplingProcessor(completions, dispatcher, max_iterations=2)

        result = await processor.process({"messages": []})

        assert result["model"] == DEFAULT_SAMPLING_MODEL
        assert result["stopReason"] == "toolUse"
        assert result["content"] == [
            {"type": "tool_use", "id": "c2", "name": "echo", "input": {"text": "b"}}
        ]
        assert session.calls == [{"text": "a"}]

    asyncio.run(_run())


def test_sampling_length_finish_maps_to_max_tokens() -> None:
    async def _run() -> None:
        dispatcher, _ = echo_dispatcher()
        processor = SamplingProcessor(ScriptedCompletions([reply("cut", "length")]), dispatcher)
        result = await processor.process({"messages": [{"role": "user", "content": "x"}]})
        assert result["stopReason"] == "maxTokens"

    asyncio.run(_run())


def test_sampling_without_sink_is_rejected() -> None:
    async def _run() -> None:
        dispatcher, _ = echo_dispatcher()
        completions = ScriptedCompletions([])
        proxy = InteractionProxy(SamplingProcessor(completions, dispatcher))

        with pytest.raises(McpProtocolError) as exc_info:
            await proxy.handle_sampling("s", "Server", {"messages": []})
        assert exc_info.value.code == -1
        assert str(exc_info.value) == "User rejected sampling request"
        assert completions.requests == []

    asyncio.run(_run())


def test_sampling_approval_with_edited_params() -> None:
    async def _run() -> None:
        dispatcher, _ = echo_dispatcher()
        completions = ScriptedCompletions([reply("done")])
        events: list[AgenticEvent] = []
        proxy = InteractionProxy(
            SamplingProcessor(completions, dispatcher),
            emit=events.append,
            preferred_model="user/choice",
        )

        task = asyncio.create_task(
            proxy.handle_sampling("s", "Server", {"messages": [{"role": "user", "content": "orig"}]})
        )
        await asyncio.sleep(0)
        [event] = events
        assert isinstance(event, SamplingRequested)
        assert event.server_name == "Server"
        assert event.approve({"messages": [{"role": "user", "content": "edited"}]})
        assert not event.reject()

        result = await task
        assert result["content"]["text"] == "done"
        assert result["model"] == "user/choice"
        assert completions.requests[0]["messages"] == [{"role": "user", "content": "edited"}]

    asyncio.run(_run())


def test_elicitation_is_answered_through_the_event() -> None:
    async def _run() -> None:
        dispatcher, _ = echo_dispatcher()
        events: list[AgenticEvent] = []
        proxy = InteractionProxy(SamplingProcessor(ScriptedCompletions([]), dispatcher))
        request = ElicitationRequest(id="7", message="Name?", requested_schema={"type": "object"})

        assert await proxy.handle_elicitation("s", "Server", request) == {"action": "cancel"}

        proxy.set_event_sink(events.append)
        task = asyncio.create_task(proxy.handle_elicitation("s", "Server", request))
        await asyncio.sleep(0)
        [event] = events
        assert isinstance(event, ElicitationRequested)
        assert event.accept({"name": "Ada"})
        assert not event.decline()
        assert await task == {"action": "accept", "content": {"name": "Ada"}}

    asyncio.run(_run())
