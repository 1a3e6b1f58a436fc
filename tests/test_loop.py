import asyncio
import json
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from typing import Any

from mcp_agent_client.dispatcher import ToolDispatcher
from mcp_agent_client.errors import CompletionAuthError, CompletionError
from mcp_agent_client.events import (
    AgenticEvent,
    AuthRequired,
    ContentUpdated,
    ConversationComplete,
    ErrorOccurred,
    GenericNotification,
    MaxIterationsReached,
    MessagePersisted,
    ToolsChanged,
)
from mcp_agent_client.loop import AgenticLoop
from mcp_agent_client.models import MediaAttachment, McpContent, McpTool, McpToolResult, Message, ModelInfo
from mcp_agent_client.store import InMemoryConversationStore
from mcp_agent_client.stream import StreamAccumulator, StreamEvent, parse_completion_stream

Script = Callable[[], AsyncIterator[str]]


def delta(finish_reason: str | None = None, **fields: Any) -> str:
    return "data: " + json.dumps({"choices": [{"delta": fields, "finish_reason": finish_reason}]})


def lines(*items: str, delay: float = 0.0) -> Script:
    async def _gen() -> AsyncIterator[str]:
        for item in items:
            if delay:
                await asyncio.sleep(delay)
            yield item

    return _gen


def tool_call_script(call_id: str, text: str) -> Script:
    return lines(
        delta(content="Let me check."),
        delta(tool_calls=[{"index": 0, "id": call_id, "type": "function",
                           "function": {"name": "echo", "arguments": ""}}]),
        delta(tool_calls=[{"index": 0, "function": {"arguments": f'{{"text": "{text}"}}'}}]),
        delta(finish_reason="tool_calls"),
    )


class ScriptedBackend:
    """Streams pre-scripted SSE lines through the real frame parser."""

    def __init__(self, scripts: list[Script]) -> None:
        self.scripts = list(scripts)
        self.requests: list[list[dict[str, Any]]] = []

    async def stream_chat_completion(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        accumulator: StreamAccumulator | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append([dict(message) for message in messages])
        script = self.scripts.pop(0)
        async for event in parse_completion_stream(script(), accumulator):
            yield event

    async def chat_completion(self, *args: Any, **kwargs: Any) -> dict[str, Any]:
        raise AssertionError("not used by the agentic loop")


class FailingBackend(ScriptedBackend):
    def __init__(self, error: Exception) -> None:
        super().__init__([])
        self.error = error

    async def stream_chat_completion(self, *args: Any, **kwargs: Any) -> AsyncIterator[StreamEvent]:
        raise self.error
        yield  # pragma: no cover


class EchoSession:
    async def call_tool(self, name: str, arguments: dict[str, Any], **_: Any) -> McpToolResult:
        return McpToolResult(content=[McpContent(type="text", text=f"echo {arguments['text']}")])


def user(text: str) -> Message:
    return Message(conversation_id="conv", role="user", content=text)


def make_loop(backend: ScriptedBackend, **kwargs: Any) -> tuple[AgenticLoop, InMemoryConversationStore]:
    dispatcher = ToolDispatcher()
    dispatcher.register("s", EchoSession(), [McpTool(name="echo")])  # type: ignore[arg-type]
    store = InMemoryConversationStore()
    return AgenticLoop(backend, dispatcher, store, **kwargs), store


async def collect(loop: AgenticLoop, messages: list[Message]) -> list[AgenticEvent]:
    return [event async for event in loop.run("conv", "vendor/model", messages)]


def test_max_iterations_stops_after_tool_rounds_in_order() -> None:
    async def _run() -> None:
        backend = ScriptedBackend([tool_call_script("c1", "one"), tool_call_script("c2", "two")])
        loop, store = make_loop(backend, max_iterations=2)

        events = await collect(loop, [user("hi")])

        round_kinds = [
            "iteration_started",
            "content_delta",
            "message_persisted",
            "tool_started",
            "tool_completed",
            "message_persisted",
        ]
        assert [event.kind for event in events] == round_kinds * 2 + ["max_iterations"]
        assert events[-1] == MaxIterationsReached(iterations=2)
        assert not any(isinstance(event, ConversationComplete) for event in events)

        persisted = [event.message for event in events if isinstance(event, MessagePersisted)]
        assert [message.role for message in persisted] == ["assistant", "tool", "assistant", "tool"]
        assert persisted[0].content == "Let me check."
        assert persisted[0].tool_calls is not None
        assert persisted[0].tool_calls[0].arguments == '{"text": "one"}'
        assert persisted[1].content == "echo one"
        assert persisted[1].tool_call_id == "c1"
        assert await store.get_messages("conv") == persisted

        second_request = backend.requests[1]
        assert [message["role"] for message in second_request] == [
            "system", "user", "assistant", "tool",
        ]
        assert second_request[3]["content"] == "echo one"
        assert not loop.running

    asyncio.run(_run())


def test_final_answer_completes_the_turn() -> None:
    async def _run() -> None:
        backend = ScriptedBackend(
            [tool_call_script("c1", "x"), lines(delta(content="All done"), delta(finish_reason="stop"))]
        )
        loop, store = make_loop(backend)
        events = await collect(loop, [user("hi")])

        assert events[-1] == ConversationComplete(conversation_id="conv")
        messages = await store.get_messages("conv")
        assert [message.role for message in messages] == ["assistant", "tool", "assistant"]
        assert messages[-1].content == "All done"

    asyncio.run(_run())


def test_cancel_mid_stream_persists_exact_partial_content() -> None:
    async def endless() -> AsyncIterator[str]:
        while True:
            await asyncio.sleep(0.001)
            yield delta(content="abcde")

    async def _run() -> None:
        backend = ScriptedBackend([endless, lines(delta(content="never"))])
        loop, store = make_loop(backend)
        events: list[AgenticEvent] = []
        cancel_results: list[bool] = []

        async for event in loop.run("conv", "vendor/model", [user("go")]):
            events.append(event)
            if isinstance(event, ContentUpdated) and len(event.content) >= 40 and not cancel_results:
                cancel_results.append(loop.cancel())
                cancel_results.append(loop.cancel())

        assert cancel_results == [True, False]
        assert events[-1] == ConversationComplete(conversation_id="conv", cancelled=True)
        streamed = [event for event in events if isinstance(event, ContentUpdated)]
        persisted = [event.message for event in events if isinstance(event, MessagePersisted)]
        assert len(persisted) == 1
        assert persisted[0].content == streamed[-1].content
        assert len(persisted[0].content) >= 40
        assert len(await store.get_messages("conv")) == 1
        assert len(backend.requests) == 1
        assert loop.cancel() is False

    asyncio.run(_run())


def test_reasoning_is_promoted_when_content_is_empty() -> None:
    async def _run() -> None:
        backend = ScriptedBackend(
            [lines(delta(reasoning="Thinking it over"), delta(content="  "), delta(finish_reason="stop"))]
        )
        loop, store = make_loop(backend)
        await collect(loop, [user("hi")])

        [message] = await store.get_messages("conv")
        assert message.content == "Thinking it over"
        assert message.reasoning is None

    asyncio.run(_run())


def test_completion_auth_error_ends_turn_with_auth_required() -> None:
    async def _run() -> None:
        loop, store = make_loop(FailingBackend(CompletionAuthError("bad key", status_code=401)))
        events = await collect(loop, [user("hi")])

        assert [event.kind for event in events] == ["iteration_started", "auth_required"]
        assert isinstance(events[-1], AuthRequired)
        assert await store.get_messages("conv") == []
        assert not loop.running

    asyncio.run(_run())


def test_side_channel_events_are_held_until_after_persistence() -> None:
    holder: dict[str, AgenticLoop] = {}

    async def noisy() -> AsyncIterator[str]:
        yield delta(content="Hel")
        holder["loop"].emit(
            GenericNotification(server_id="s", server_name="Files", method="notifications/message",
                                params={"level": "info"})
        )
        holder["loop"].emit(ToolsChanged(server_id="s", server_name="Files"))
        yield delta(content="lo")
        yield delta(finish_reason="stop")

    async def _run() -> None:
        loop, store = make_loop(ScriptedBackend([noisy]))
        holder["loop"] = loop
        events = await collect(loop, [user("hi")])

        assert [event.kind for event in events] == [
            "iteration_started",
            "content_delta",
            "content_delta",
            "message_persisted",
            "message_persisted",
            "generic_notification",
            "tools_changed",
            "conversation_complete",
        ]
        assistant, notification = await store.get_messages("conv")
        assert assistant.content == "Hello"
        assert notification.role == "notification"
        assert notification.notification_data == {
            "serverId": "s",
            "serverName": "Files",
            "method": "notifications/message",
            "params": {"level": "info"},
        }

    asyncio.run(_run())


def test_held_notifications_are_persisted_when_the_stream_fails() -> None:
    holder: dict[str, AgenticLoop] = {}

    async def broken() -> AsyncIterator[str]:
        yield delta(content="Hel")
        holder["loop"].emit(
            GenericNotification(server_id="s", server_name="Files", method="notifications/message",
                                params={"level": "warning"})
        )
        raise CompletionError("upstream went away", status_code=502)

    async def _run() -> None:
        loop, store = make_loop(ScriptedBackend([broken]))
        holder["loop"] = loop
        events = await collect(loop, [user("hi")])

        assert [event.kind for event in events] == [
            "iteration_started",
            "content_delta",
            "message_persisted",
            "generic_notification",
            "error",
        ]
        assert isinstance(events[-1], ErrorOccurred)
        assert "upstream went away" in events[-1].message
        (notification,) = await store.get_messages("conv")
        assert notification.role == "notification"
        assert notification.notification_data["params"] == {"level": "warning"}

    asyncio.run(_run())


def test_events_outside_a_turn_go_to_idle_handler() -> None:
    idle: list[AgenticEvent] = []
    loop, _ = make_loop(ScriptedBackend([]), on_idle_event=idle.append)
    event = ToolsChanged(server_id="s", server_name="Files")
    loop.emit(event)
    assert idle == [event]
    assert loop.cancel() is False


def _history_with_tool_media() -> list[Message]:
    return [
        user("draw"),
        Message(conversation_id="conv", role="tool", tool_call_id="a", tool_name="plot",
                content="chart", images=[MediaAttachment(data="IMG", mime_type="image/png")]),
        Message(conversation_id="conv", role="tool", tool_call_id="b", tool_name="speak",
                content="clip", audio=[MediaAttachment(data="AUD", mime_type="audio/mpeg")]),
        Message(conversation_id="conv", role="elicitation", content="local only"),
    ]


def test_tool_media_is_injected_for_capable_models() -> None:
    async def _run() -> None:
        backend = ScriptedBackend([lines(delta(content="ok"), delta(finish_reason="stop"))])
        loop, _ = make_loop(
            backend,
            system_prompt="sys",
            model_info=ModelInfo(id="vendor/model", input_modalities=["text", "image", "audio"]),
        )
        await collect(loop, _history_with_tool_media())

        request = backend.requests[0]
        assert [message["role"] for message in request] == ["system", "user", "tool", "tool", "user"]
        media = request[-1]["content"]
        assert media[0] == {"type": "text", "text": "[Media returned by tool plot, speak]"}
        assert media[1]["image_url"]["url"] == "data:image/png;base64,IMG"
        assert media[2]["input_audio"] == {"data": "AUD", "format": "mp3"}

    asyncio.run(_run())


def test_tool_media_is_filtered_by_model_modalities() -> None:
    async def _run() -> None:
        backend = ScriptedBackend(
            [lines(delta(content="ok"), delta(finish_reason="stop")),
             lines(delta(content="ok"), delta(finish_reason="stop"))]
        )
        loop, _ = make_loop(backend, model_info=ModelInfo(id="m", input_modalities=["text", "image"]))
        await collect(loop, _history_with_tool_media())
        media = backend.requests[0][-1]["content"]
        assert media[0]["text"] == "[Media returned by tool plot]"
        assert len(media) == 2

        loop.model_info = None
        await collect(loop, _history_with_tool_media())
        assert [message["role"] for message in backend.requests[1]] == ["system", "user", "tool", "tool"]

    asyncio.run(_run())
