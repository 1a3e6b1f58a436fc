from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, TypeAlias

from .elicitation import ElicitationAction, ElicitationRequest
from .models import Message, ProgressNotification, ToolCallResult


@dataclass(frozen=True, slots=True)
class IterationStarted:
    """A completion request for one loop iteration is about to stream."""

    kind: ClassVar[Literal["iteration_started"]] = "iteration_started"
    iteration: int


@dataclass(frozen=True, slots=True)
class ContentUpdated:
    """New visible content; `content` is everything streamed so far."""

    kind: ClassVar[Literal["content_delta"]] = "content_delta"
    delta: str
    content: str


@dataclass(frozen=True, slots=True)
class ReasoningUpdated:
    kind: ClassVar[Literal["reasoning_delta"]] = "reasoning_delta"
    delta: str
    reasoning: str


@dataclass(frozen=True, slots=True)
class MessagePersisted:
    kind: ClassVar[Literal["message_persisted"]] = "message_persisted"
    message: Message


@dataclass(frozen=True, slots=True)
class ToolStarted:
    kind: ClassVar[Literal["tool_started"]] = "tool_started"
    tool_call_id: str
    tool_name: str
    server_id: str | None = None


@dataclass(frozen=True, slots=True)
class ToolCompleted:
    kind: ClassVar[Literal["tool_completed"]] = "tool_completed"
    result: ToolCallResult


@dataclass(frozen=True, slots=True)
class ConversationComplete:
    """The turn ended normally or was cancelled; no further events follow."""

    kind: ClassVar[Literal["conversation_complete"]] = "conversation_complete"
    conversation_id: str
    cancelled: bool = False


@dataclass(frozen=True, slots=True)
class MaxIterationsReached:
    kind: ClassVar[Literal["max_iterations"]] = "max_iterations"
    iterations: int


@dataclass(frozen=True, slots=True)
class ErrorOccurred:
    kind: ClassVar[Literal["error"]] = "error"
    message: str
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class AuthRequired:
    """The completion API rejected the configured credentials."""

    kind: ClassVar[Literal["auth_required"]] = "auth_required"
    message: str


@dataclass(frozen=True, slots=True)
class SamplingRequested:
    """A server asks the client to run a completion on its behalf.

    Resolve with `approve()` (optionally passing edited request params) or
    `reject()`. Only the first resolution counts.
    """

    kind: ClassVar[Literal["sampling_request"]] = "sampling_request"
    server_id: str
    server_name: str
    params: dict[str, Any]
    decision: asyncio.Future[dict[str, Any] | None] = field(repr=False)

    def approve(self, params: Mapping[str, Any] | None = None) -> bool:
        if self.decision.done():
            return False
        self.decision.set_result(dict(params) if params is not None else self.params)
        return True

    def reject(self) -> bool:
        if self.decision.done():
            return False
        self.decision.set_result(None)
        return True


@dataclass(frozen=True, slots=True)
class ElicitationRequested:
    """A server asks the user for input (a form or an external URL).

    Resolve with `respond()` or one of its shortcuts. Only the first
    resolution counts.
    """

    kind: ClassVar[Literal["elicitation_request"]] = "elicitation_request"
    server_id: str
    server_name: str
    request: ElicitationRequest
    answer: asyncio.Future[dict[str, Any]] = field(repr=False)

    def respond(
        self,
        action: ElicitationAction,
        content: Mapping[str, Any] | None = None,
    ) -> bool:
        if self.answer.done():
            return False
        self.answer.set_result(self.request.to_result(action, content))
        return True

    def accept(self, content: Mapping[str, Any] | None = None) -> bool:
        return self.respond("accept", content)

    def decline(self) -> bool:
        return self.respond("decline")

    def cancel(self) -> bool:
        return self.respond("cancel")


@dataclass(frozen=True, slots=True)
class ProgressReported:
    kind: ClassVar[Literal["progress"]] = "progress"
    progress: ProgressNotification
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass(frozen=True, slots=True)
class ToolsChanged:
    kind: ClassVar[Literal["tools_changed"]] = "tools_changed"
    server_id: str
    server_name: str


@dataclass(frozen=True, slots=True)
class GenericNotification:
    kind: ClassVar[Literal["generic_notification"]] = "generic_notification"
    server_id: str
    server_name: str
    method: str
    params: dict[str, Any] | None = None

    def to_notification_data(self) -> dict[str, Any]:
        return {
            "serverId": self.server_id,
            "serverName": self.server_name,
            "method": self.method,
            "params": self.params,
        }


@dataclass(frozen=True, slots=True)
class ServerNeedsAuth:
    """An MCP server answered 401; an OAuth flow should be started for it."""

    kind: ClassVar[Literal["server_needs_auth"]] = "server_needs_auth"
    server_id: str
    server_url: str


AgenticEvent: TypeAlias = (
    IterationStarted
    | ContentUpdated
    | ReasoningUpdated
    | MessagePersisted
    | ToolStarted
    | ToolCompleted
    | ConversationComplete
    | MaxIterationsReached
    | ErrorOccurred
    | AuthRequired
    | SamplingRequested
    | ElicitationRequested
    | ProgressReported
    | ToolsChanged
    | GenericNotification
    | ServerNeedsAuth
)

#: Callable that accepts events from collaborators (dispatcher, proxy, manager).
EventSink: TypeAlias = Callable[[AgenticEvent], None]

#: Side-channel events that are held back while a completion is streaming.
DEFERRABLE_EVENTS: tuple[type, ...] = (GenericNotification, ToolsChanged, ProgressReported)
