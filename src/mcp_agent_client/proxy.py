from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from .completions import CompletionBackend
from .dispatcher import ToolDispatcher
from .elicitation import ElicitationRequest
from .errors import McpProtocolError
from .events import ElicitationRequested, EventSink, SamplingRequested
from .models import ToolCallRequest
from .protocol import USER_REJECTED
from .session import McpSession

logger = logging.getLogger(__name__)

DEFAULT_SAMPLING_MODEL = "deepseek/deepseek-v3.2"
MAX_SAMPLING_ITERATIONS = 10

_STOP_REASONS = {
    "stop": "endTurn",
    "length": "maxTokens",
    "tool_calls": "toolUse",
}


def stop_reason(finish_reason: str | None) -> str:
    """Map a completion finish reason to an MCP sampling stop reason."""
    return _STOP_REASONS.get(finish_reason or "", "endTurn")


def convert_tool_choice(tool_choice: Any) -> Any:
    if not isinstance(tool_choice, Mapping):
        return None
    choice_type = tool_choice.get("type") or tool_choice.get("mode")
    if choice_type in ("none", "auto", "required"):
        return choice_type
    if choice_type == "tool" or (isinstance(choice_type, str) and "name" in tool_choice):
        return {"type": "function", "function": {"name": tool_choice.get("name")}}
    return None


def convert_tools(tools: Any) -> list[dict[str, Any]] | None:
    if not isinstance(tools, list) or not tools:
        return None
    converted: list[dict[str, Any]] = []
    for tool in tools:
        if not isinstance(tool, Mapping):
            continue
        converted.append(
            {
                "type": "function",
                "function": {
                    "name": tool.get("name"),
                    "description": tool.get("description") or "",
                    "parameters": tool.get("inputSchema") or {},
                },
            }
        )
    return converted or None


def _tool_result_text(block: Mapping[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        str(item.get("text", ""))
        for item in content
        if isinstance(item, Mapping) and item.get("type") == "text"
    )


def convert_messages(
    messages: Sequence[Any],
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """Convert MCP sampling messages to completion API messages.

    Text blocks become plain content, `tool_use` blocks on assistant messages
    become `tool_calls`, and `tool_result` blocks on user messages become
    tool-role messages. Image and audio blocks are dropped.
    """
    converted: list[dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        if not isinstance(message, Mapping):
            continue
        role = str(message.get("role") or "user")
        content = message.get("content")

        if isinstance(content, str):
            converted.append({"role": role, "content": content})
        elif isinstance(content, Mapping):
            if content.get("type") == "text":
                converted.append({"role": role, "content": content.get("text", "")})
        elif isinstance(content, list):
            blocks = [block for block in content if isinstance(block, Mapping)]
            tool_uses = [block for block in blocks if block.get("type") == "tool_use"]
            tool_results = [block for block in blocks if block.get("type") == "tool_result"]

            if role == "assistant" and tool_uses:
                converted.append(
                    {
                        "role": "assistant",
                        "tool_calls": [
                            {
                                "id": block.get("id"),
                                "type": "function",
                                "function": {
                                    "name": block.get("name"),
                                    "arguments": json.dumps(block.get("input") or {}),
                                },
                            }
                            for block in tool_uses
                        ],
                    }
                )
            elif role == "user" and tool_results:
                for block in tool_results:
                    converted.append(
                        {
                            "role": "tool",
                            "tool_call_id": block.get("toolUseId"),
                            "content": _tool_result_text(block),
                        }
                    )
            else:
                text = "\n".join(
                    str(block.get("text", "")) for block in blocks if block.get("type") == "text"
                )
                if text:
                    converted.append({"role": role, "content": text})
    return converted


def select_model(model_preferences: Any, default: str) -> str:
    """Use the first model hint when it names a provider-qualified model."""
    if not isinstance(model_preferences, Mapping):
        return default
    hints = model_preferences.get("hints")
    if isinstance(hints, list) and hints and isinstance(hints[0], Mapping):
        name = hints[0].get("name")
        if isinstance(name, str) and "/" in name:
            return name
    return default


def _tool_use_content(tool_calls: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for call in tool_calls:
        function = call.get("function")
        function = function if isinstance(function, Mapping) else {}
        arguments = function.get("arguments")
        try:
            decoded = json.loads(arguments) if isinstance(arguments, str) and arguments else {}
        except ValueError:
            decoded = {}
        content.append(
            {
                "type": "tool_use",
                "id": call.get("id"),
                "name": function.get("name"),
                "input": decoded,
            }
        )
    return content


class SamplingProcessor:
    """Answers `sampling/createMessage` with a short non-streaming agentic loop."""

    def __init__(
        self,
        completions: CompletionBackend,
        dispatcher: ToolDispatcher,
        *,
        default_model: str = DEFAULT_SAMPLING_MODEL,
        max_iterations: int = MAX_SAMPLING_ITERATIONS,
    ) -> None:
        self._completions = completions
        self._dispatcher = dispatcher
        self.default_model = default_model
        self._max_iterations = max_iterations

    async def process(
        self,
        params: Mapping[str, Any],
        *,
        preferred_model: str | None = None,
    ) -> dict[str, Any]:
        messages = params.get("messages")
        system_prompt = params.get("systemPrompt")
        max_tokens = params.get("maxTokens")

        api_messages = convert_messages(
            messages if isinstance(messages, list) else [],
            system_prompt if isinstance(system_prompt, str) else None,
        )
        model = select_model(params.get("modelPreferences"), preferred_model or self.default_model)
        tools = convert_tools(params.get("tools"))
        tool_choice = convert_tool_choice(params.get("toolChoice"))

        for iteration in range(1, self._max_iterations + 1):
            logger.debug(
                "Sampling iteration %d with %d messages on %s",
                iteration,
                len(api_messages),
                model,
            )
            response = await self._completions.chat_completion(
                model,
                api_messages,
                tools=tools,
                tool_choice=tool_choice,
                max_tokens=max_tokens if isinstance(max_tokens, int) else None,
            )
            choices = response.get("choices")
            choice = choices[0] if isinstance(choices, list) and choices else {}
            message = choice.get("message") if isinstance(choice, Mapping) else None
            message = message if isinstance(message, Mapping) else {}
            finish_reason = choice.get("finish_reason") if isinstance(choice, Mapping) else None

            raw_calls = message.get("tool_calls")
            tool_calls = [call for call in raw_calls if isinstance(call, Mapping)] if isinstance(raw_calls, list) else []
            if not tool_calls:
                return {
                    "role": "assistant",
                    "content": {"type": "text", "text": message.get("content") or ""},
                    "model": model,
                    "stopReason": stop_reason(finish_reason),
                }

            if iteration == self._max_iterations:
                logger.info("Sampling hit %d iterations; returning tool calls to server", iteration)
                return {
                    "role": "assistant",
                    "content": _tool_use_content(tool_calls),
                    "model": model,
                    "stopReason": "toolUse",
                }

            requests = [ToolCallRequest.from_openai(call) for call in tool_calls]
            try:
                results = await self._dispatcher.execute(requests)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Sampling tool execution failed: %s", exc)
                return {
                    "role": "assistant",
                    "content": {"type": "text", "text": f"Error during tool execution: {exc}"},
                    "model": model,
                    "stopReason": "endTurn",
                }

            api_messages.append({"role": "assistant", "tool_calls": [dict(call) for call in tool_calls]})
            for result in results:
                api_messages.append(
                    {"role": "tool", "tool_call_id": result.tool_call_id, "content": result.text}
                )

        return {
            "role": "assistant",
            "content": {"type": "text", "text": "Error: Maximum sampling iterations exceeded"},
            "model": model,
            "stopReason": "endTurn",
        }


class InteractionProxy:
    """Bridges server-initiated sampling and elicitation requests to the UI.

    Each request is surfaced as an event carrying a future; the session awaits
    that future and sends the answer back to the server. With no event sink
    attached, sampling is rejected and elicitation is cancelled.
    """

    def __init__(
        self,
        processor: SamplingProcessor,
        *,
        emit: EventSink | None = None,
        preferred_model: str | None = None,
    ) -> None:
        self._processor = processor
        self._emit = emit
        self.preferred_model = preferred_model

    def set_event_sink(self, emit: EventSink | None) -> None:
        self._emit = emit

    def attach(self, session: McpSession) -> None:
        async def _sampling(params: dict[str, Any]) -> dict[str, Any]:
            return await self.handle_sampling(session.server_id, session.server_name, params)

        async def _elicitation(request: ElicitationRequest) -> dict[str, Any]:
            return await self.handle_elicitation(session.server_id, session.server_name, request)

        session.set_sampling_handler(_sampling)
        session.set_elicitation_handler(_elicitation)

    async def handle_sampling(
        self,
        server_id: str,
        server_name: str,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        decision: asyncio.Future[dict[str, Any] | None] = asyncio.get_running_loop().create_future()
        if self._emit is None:
            decision.set_result(None)
        else:
            self._emit(
                SamplingRequested(
                    server_id=server_id,
                    server_name=server_name,
                    params=params,
                    decision=decision,
                )
            )

        approved = await decision
        if approved is None:
            logger.info("Sampling request from %s rejected", server_name)
            raise McpProtocolError("User rejected sampling request", code=USER_REJECTED)
        return await self._processor.process(approved, preferred_model=self.preferred_model)

    async def handle_elicitation(
        self,
        server_id: str,
        server_name: str,
        request: ElicitationRequest,
    ) -> dict[str, Any]:
        answer: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        if self._emit is None:
            answer.set_result(request.to_result("cancel"))
        else:
            self._emit(
                ElicitationRequested(
                    server_id=server_id,
                    server_name=server_name,
                    request=request,
                    answer=answer,
                )
            )
        return await answer
