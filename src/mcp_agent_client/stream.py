from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from .errors import CompletionAuthError, CompletionError
from .models import ToolCallRequest, UsageInfo

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True, slots=True)
class ContentDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True, slots=True)
class StreamCompleted:
    """Final event of a completion stream, emitted exactly once.

    Attributes:
        tool_calls: Fully reassembled tool calls, in index order.
        usage: Token accounting if the provider sent any.
        finish_reason: Finish reason of the first choice, if reported.
    """

    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: UsageInfo | None = None
    finish_reason: str | None = None


StreamEvent: TypeAlias = ContentDelta | ReasoningDelta | StreamCompleted


@dataclass(slots=True)
class _PartialToolCall:
    id: str = ""
    type: str = ""
    name: str = ""
    arguments: str = ""


@dataclass(slots=True)
class StreamAccumulator:
    """Scratch state of one in-flight completion.

    Only the task reading the stream appends to it; other code reads it once
    the stream has finished or been cancelled.
    """

    content: str = ""
    reasoning: str = ""
    finish_reason: str | None = None
    usage: UsageInfo | None = None
    _tool_calls: list[_PartialToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._tool_calls)

    def add_tool_call_fragment(self, fragment: Mapping[str, Any]) -> None:
        """Append one indexed tool-call fragment; string fields are concatenated."""
        index = fragment.get("index")
        if not isinstance(index, int) or index < 0:
            index = len(self._tool_calls)
        while len(self._tool_calls) <= index:
            self._tool_calls.append(_PartialToolCall())
        partial = self._tool_calls[index]

        if isinstance(fragment.get("id"), str):
            partial.id += fragment["id"]
        if isinstance(fragment.get("type"), str):
            partial.type += fragment["type"]
        function = fragment.get("function")
        if isinstance(function, Mapping):
            if isinstance(function.get("name"), str):
                partial.name += function["name"]
            if isinstance(function.get("arguments"), str):
                partial.arguments += function["arguments"]

    def tool_calls(self) -> list[ToolCallRequest]:
        return [
            ToolCallRequest(id=partial.id, name=partial.name, arguments=partial.arguments)
            for partial in self._tool_calls
            if partial.name
        ]


def _reasoning_text(delta: Mapping[str, Any]) -> str:
    reasoning = delta.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        return reasoning
    details = delta.get("reasoning_details")
    if not isinstance(details, list):
        return ""
    parts: list[str] = []
    for item in details:
        if not isinstance(item, Mapping):
            continue
        text = item.get("text")
        if not isinstance(text, str):
            text = item.get("summary")
        if isinstance(text, str):
            parts.append(text)
    return "".join(parts)


def _frame_error(error: Mapping[str, Any]) -> CompletionError:
    message = error.get("message")
    code = error.get("code")
    error_type = CompletionAuthError if code == 401 else CompletionError
    return error_type(
        f"completion stream error: {message if isinstance(message, str) else 'unknown error'}",
        status_code=code if isinstance(code, int) else None,
        data=dict(error),
    )


async def parse_completion_stream(
    lines: AsyncIterable[str],
    accumulator: StreamAccumulator | None = None,
) -> AsyncIterator[StreamEvent]:
    """Turn `data: <json>` lines of a streamed chat completion into events.

    Once a finish reason is seen, later frames are only inspected for usage.
    Reading stops at `[DONE]`, at end of input, or when both a finish reason and
    usage are known. A frame carrying an `error` object raises
    `CompletionError`; frames that are not valid JSON are skipped.
    """
    acc = accumulator if accumulator is not None else StreamAccumulator()

    async for raw_line in lines:
        line = raw_line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == DONE_SENTINEL:
            break

        try:
            frame = json.loads(data)
        except ValueError:
            logger.warning("Skipping malformed completion frame: %.200s", data)
            continue
        if not isinstance(frame, dict):
            continue

        error = frame.get("error")
        if isinstance(error, Mapping):
            raise _frame_error(error)

        usage = frame.get("usage")
        if isinstance(usage, Mapping):
            acc.usage = UsageInfo.from_payload(usage)

        if acc.finish_reason is None:
            choices = frame.get("choices")
            choice = choices[0] if isinstance(choices, list) and choices else None
            if isinstance(choice, Mapping):
                delta = choice.get("delta")
                if isinstance(delta, Mapping):
                    content = delta.get("content")
                    if isinstance(content, str) and content:
                        acc.content += content
                        yield ContentDelta(content)

                    reasoning = _reasoning_text(delta)
                    if reasoning:
                        acc.reasoning += reasoning
                        yield ReasoningDelta(reasoning)

                    fragments = delta.get("tool_calls")
                    if isinstance(fragments, list):
                        for fragment in fragments:
                            if isinstance(fragment, Mapping):
                                acc.add_tool_call_fragment(fragment)

                finish_reason = choice.get("finish_reason")
                if isinstance(finish_reason, str) and finish_reason:
                    acc.finish_reason = finish_reason

        if acc.finish_reason is not None and acc.usage is not None:
            break

    yield StreamCompleted(
        tool_calls=tuple(acc.tool_calls()),
        usage=acc.usage,
        finish_reason=acc.finish_reason,
    )
