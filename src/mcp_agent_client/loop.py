from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any

from .completions import CompletionBackend
from .dispatcher import ToolDispatcher
from .errors import CompletionAuthError, CompletionError, McpClientError
from .events import (
    DEFERRABLE_EVENTS,
    AgenticEvent,
    AuthRequired,
    ContentUpdated,
    ConversationComplete,
    ErrorOccurred,
    GenericNotification,
    IterationStarted,
    MaxIterationsReached,
    MessagePersisted,
    ProgressReported,
    ReasoningUpdated,
)
from .models import MediaAttachment, Message, ModelInfo, ToolCallResult, media_message
from .proxy import InteractionProxy
from .store import ConversationStore
from .stream import ContentDelta, ReasoningDelta, StreamAccumulator, StreamCompleted

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant.\nUse markdown when rendering your responses."
DEFAULT_MAX_ITERATIONS = 10

_END = object()


class AgenticLoop:
    """Runs conversational turns: stream, dispatch tools, repeat.

    One turn runs at a time. Events from the turn and from collaborators that
    report through `emit()` are delivered in order by `run()`.
    """

    def __init__(
        self,
        completions: CompletionBackend,
        dispatcher: ToolDispatcher,
        store: ConversationStore,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_iterations: int | None = DEFAULT_MAX_ITERATIONS,
        model_info: ModelInfo | None = None,
        proxy: InteractionProxy | None = None,
        on_idle_event: Callable[[AgenticEvent], None] | None = None,
    ) -> None:
        """Create a loop.

        Args:
            completions: Completion API used for streaming.
            dispatcher: Executes tool calls; its events are routed through this loop.
            store: Persists every assistant, tool, and notification message.
            system_prompt: Prepended to every request.
            max_iterations: Completion requests per turn; 0 or None is unbounded.
            model_info: Modalities of the target model, for media injection.
            proxy: Sampling/elicitation proxy whose events are routed through this loop.
            on_idle_event: Receives collaborator events while no turn is running.
        """
        self._completions = completions
        self._dispatcher = dispatcher
        self._store = store
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.model_info = model_info
        self._proxy = proxy
        self.on_idle_event = on_idle_event

        self._queue: asyncio.Queue[Any] | None = None
        self._abort: asyncio.Event | None = None
        self._stream_task: asyncio.Task[StreamCompleted | None] | None = None
        self._deferring = False
        self._deferred: list[AgenticEvent] = []
        self._history: list[Message] = []

        dispatcher.set_event_sink(self.emit)
        if proxy is not None:
            proxy.set_event_sink(self.emit)

    @property
    def running(self) -> bool:
        return self._queue is not None

    def emit(self, event: AgenticEvent) -> None:
        """Deliver an event, holding side-channel events back while streaming."""
        if self._queue is None:
            if self.on_idle_event is not None:
                self.on_idle_event(event)
            return
        if self._deferring and isinstance(event, DEFERRABLE_EVENTS):
            if not (isinstance(event, ProgressReported) and event.tool_call_id):
                self._deferred.append(event)
                return
        self._queue.put_nowait(event)

    def cancel(self) -> bool:
        """Abort the running turn. Returns False when there is nothing to cancel."""
        if self._abort is None or self._abort.is_set():
            return False
        self._abort.set()
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        return True

    async def run(
        self,
        conversation_id: str,
        model: str,
        messages: Sequence[Message],
    ) -> AsyncIterator[AgenticEvent]:
        """Run one turn over `messages` and yield its events.

        The last event is `ConversationComplete`, `MaxIterationsReached`,
        `AuthRequired`, or `ErrorOccurred`.
        """
        if self._queue is not None:
            raise RuntimeError("a turn is already running")

        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._queue = queue
        self._abort = asyncio.Event()
        self._history = list(messages)
        self._deferred = []
        if self._proxy is not None:
            self._proxy.preferred_model = model

        driver = asyncio.create_task(self._drive(conversation_id, model))
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
            await driver
        finally:
            if not driver.done():
                self.cancel()
                driver.cancel()
                try:
                    await driver
                except asyncio.CancelledError:
                    pass
            self._queue = None
            self._abort = None
            self._stream_task = None
            self._deferring = False

    async def _drive(self, conversation_id: str, model: str) -> None:
        queue = self._events()
        try:
            await self._iterate(conversation_id, model)
        except CompletionAuthError as exc:
            await self._flush_before_failure(conversation_id)
            queue.put_nowait(AuthRequired(message=str(exc)))
        except (CompletionError, McpClientError) as exc:
            logger.warning("Turn for %s failed: %s", conversation_id, exc)
            await self._flush_before_failure(conversation_id)
            queue.put_nowait(ErrorOccurred(message=str(exc), error=exc))
        except Exception as exc:
            logger.exception("Turn for %s failed", conversation_id)
            await self._flush_before_failure(conversation_id)
            queue.put_nowait(ErrorOccurred(message=str(exc), error=exc))
        finally:
            queue.put_nowait(_END)

    async def _iterate(self, conversation_id: str, model: str) -> None:
        queue = self._events()
        abort = self._abort_event()
        iteration = 0
        while not self.max_iterations or iteration < self.max_iterations:
            iteration += 1
            queue.put_nowait(IterationStarted(iteration=iteration))

            accumulator = StreamAccumulator()
            completed = await self._stream(model, accumulator)

            if completed is None:
                await self._finish_cancelled(conversation_id, accumulator)
                return

            if completed.tool_calls:
                assistant = Message(
                    conversation_id=conversation_id,
                    role="assistant",
                    content=accumulator.content.strip(),
                    reasoning=accumulator.reasoning.strip() or None,
                    tool_calls=list(completed.tool_calls),
                )
                await self._persist(assistant)

                results = await self._dispatcher.execute(completed.tool_calls, abort=abort)
                for result in results:
                    await self._persist(_tool_message(conversation_id, result))
                await self._flush_deferred(conversation_id)

                if abort.is_set():
                    self._finish(conversation_id, cancelled=True)
                    return
                continue

            content = accumulator.content
            reasoning = accumulator.reasoning.strip() or None
            if not content.strip() and reasoning:
                content, reasoning = reasoning, None
            await self._persist(
                Message(
                    conversation_id=conversation_id,
                    role="assistant",
                    content=content,
                    reasoning=reasoning,
                )
            )
            await self._flush_deferred(conversation_id)
            self._finish(conversation_id)
            return

        await self._flush_deferred(conversation_id)
        logger.info("Turn for %s stopped after %d iterations", conversation_id, iteration)
        queue.put_nowait(MaxIterationsReached(iterations=iteration))

    async def _stream(self, model: str, accumulator: StreamAccumulator) -> StreamCompleted | None:
        """Stream one completion; returns None when the turn was cancelled."""
        abort = self._abort_event()
        if abort.is_set():
            return None

        api_messages = self.build_api_messages()
        tools = self._dispatcher.openai_tools() or None
        self._deferring = True
        self._stream_task = asyncio.create_task(
            self._consume(model, api_messages, tools, accumulator)
        )
        try:
            return await self._stream_task
        except asyncio.CancelledError:
            if abort.is_set():
                return None
            raise
        finally:
            self._stream_task = None

    async def _consume(
        self,
        model: str,
        api_messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        accumulator: StreamAccumulator,
    ) -> StreamCompleted | None:
        queue = self._events()
        completed: StreamCompleted | None = None
        async for event in self._completions.stream_chat_completion(
            model,
            api_messages,
            tools=tools,
            accumulator=accumulator,
        ):
            if isinstance(event, ContentDelta):
                queue.put_nowait(ContentUpdated(delta=event.text, content=accumulator.content))
            elif isinstance(event, ReasoningDelta):
                queue.put_nowait(
                    ReasoningUpdated(delta=event.text, reasoning=accumulator.reasoning)
                )
            elif isinstance(event, StreamCompleted):
                completed = event
        if completed is None:
            completed = StreamCompleted(
                tool_calls=tuple(accumulator.tool_calls()),
                usage=accumulator.usage,
                finish_reason=accumulator.finish_reason,
            )
        return completed

    def build_api_messages(self) -> list[dict[str, Any]]:
        """System prompt plus serialized history, with tool media re-attached.

        Media returned by a run of tool messages is sent as one extra user
        message after that run, and only in modalities the model accepts.
        """
        api_messages: list[dict[str, Any]] = [{"role": "system", "content": self.system_prompt}]
        allow_images = self.model_info is not None and self.model_info.supports_images
        allow_audio = self.model_info is not None and self.model_info.supports_audio

        images: list[MediaAttachment] = []
        audio: list[MediaAttachment] = []
        sources: list[str] = []

        def _flush_media() -> None:
            if images or audio:
                label = ", ".join(sources)
                api_messages.append(
                    media_message(f"[Media returned by tool {label}]", list(images), list(audio))
                )
            images.clear()
            audio.clear()
            sources.clear()

        for message in self._history:
            if message.role != "tool":
                _flush_media()
            api_message = message.to_api_message()
            if api_message is None:
                continue
            api_messages.append(api_message)
            if message.role == "tool":
                kept_images = message.images if allow_images else []
                kept_audio = message.audio if allow_audio else []
                if kept_images or kept_audio:
                    images.extend(kept_images)
                    audio.extend(kept_audio)
                    sources.append(message.tool_name or "tool")
        _flush_media()
        return api_messages

    async def _persist(self, message: Message) -> None:
        await self._store.save_message(message)
        self._history.append(message)
        self._events().put_nowait(MessagePersisted(message=message))

    async def _flush_deferred(self, conversation_id: str) -> None:
        """Emit side-channel events held back during streaming."""
        queue = self._events()
        self._deferring = False
        deferred, self._deferred = self._deferred, []
        for event in deferred:
            if isinstance(event, GenericNotification):
                await self._persist(
                    Message(
                        conversation_id=conversation_id,
                        role="notification",
                        notification_data=event.to_notification_data(),
                    )
                )
            queue.put_nowait(event)

    async def _flush_before_failure(self, conversation_id: str) -> None:
        """Deliver held-back events ahead of a failed turn's terminal event."""
        try:
            await self._flush_deferred(conversation_id)
        except Exception:
            logger.exception("Failed to persist notifications for %s", conversation_id)

    async def _finish_cancelled(self, conversation_id: str, accumulator: StreamAccumulator) -> None:
        if accumulator.content or accumulator.reasoning:
            await self._persist(
                Message(
                    conversation_id=conversation_id,
                    role="assistant",
                    content=accumulator.content,
                    reasoning=accumulator.reasoning.strip() or None,
                )
            )
        await self._flush_deferred(conversation_id)
        self._finish(conversation_id, cancelled=True)

    def _finish(self, conversation_id: str, *, cancelled: bool = False) -> None:
        self._events().put_nowait(
            ConversationComplete(conversation_id=conversation_id, cancelled=cancelled)
        )

    def _events(self) -> asyncio.Queue[Any]:
        if self._queue is None:
            raise RuntimeError("no turn is running")
        return self._queue

    def _abort_event(self) -> asyncio.Event:
        if self._abort is None:
            raise RuntimeError("no turn is running")
        return self._abort


def _tool_message(conversation_id: str, result: ToolCallResult) -> Message:
    images: list[MediaAttachment] = []
    audio: list[MediaAttachment] = []
    for item in result.media:
        attachment = MediaAttachment(data=item.data, mime_type=item.mime_type or _default_mime(item.type))
        (images if item.type == "image" else audio).append(attachment)
    return Message(
        conversation_id=conversation_id,
        role="tool",
        content=result.text,
        tool_call_id=result.tool_call_id,
        tool_name=result.tool_name,
        images=images,
        audio=audio,
    )


def _default_mime(content_type: str) -> str:
    return "image/png" if content_type == "image" else "audio/wav"
