from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, Field


class InitializeResult(BaseModel):
    """Parsed result for the MCP `initialize` handshake response.

    Attributes:
        protocol_version: Protocol version negotiated by the server.
        server_info: Optional server identity/details object.
        capabilities: Capability map returned by server.
        session_id: Session id assigned by the server, if any.
        resumed: True when a stored session id was accepted by the server.
        raw: Full raw initialize result payload.
    """

    protocol_version: str | None = None
    server_info: dict[str, Any] | None = None
    capabilities: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    resumed: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def server_name(self) -> str | None:
        if self.server_info is None:
            return None
        name = self.server_info.get("name")
        return name if isinstance(name, str) else None


class McpTool(BaseModel):
    """Tool advertised by an MCP server via `tools/list`."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> McpTool:
        schema = payload.get("inputSchema")
        description = payload.get("description")
        return cls(
            name=str(payload["name"]),
            description=description if isinstance(description, str) else None,
            input_schema=dict(schema) if isinstance(schema, Mapping) else {},
        )

    def to_openai_tool(self) -> dict[str, Any]:
        """Return the OpenAI function-tool shape used by the completion API."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": self.input_schema,
            },
        }


class McpContent(BaseModel):
    """One content block of a tool result (`text`, `image`, `audio`, ...)."""

    type: str
    text: str | None = None
    data: Any = None
    mime_type: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> McpContent:
        content_type = payload.get("type")
        if content_type == "text":
            text = payload.get("text")
            return cls(type="text", text=text if isinstance(text, str) else "")
        if content_type in ("image", "audio"):
            mime_type = payload.get("mimeType")
            return cls(
                type=content_type,
                data=payload.get("data"),
                mime_type=mime_type if isinstance(mime_type, str) else None,
            )
        if content_type == "resource":
            return cls(type="resource", data=payload.get("resource"))
        return cls(type=content_type if isinstance(content_type, str) else "unknown")

    @property
    def is_media(self) -> bool:
        return self.type in ("image", "audio") and isinstance(self.data, str)


class McpToolResult(BaseModel):
    """Result payload of a `tools/call` request."""

    content: list[McpContent] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> McpToolResult:
        if not isinstance(payload, Mapping):
            return cls()
        raw_content = payload.get("content")
        content: list[McpContent] = []
        if isinstance(raw_content, list):
            content = [
                McpContent.from_payload(item)
                for item in raw_content
                if isinstance(item, Mapping)
            ]
        return cls(content=content, is_error=payload.get("isError") is True)

    @classmethod
    def error(cls, message: str) -> McpToolResult:
        return cls(content=[McpContent(type="text", text=message)], is_error=True)

    @property
    def text(self) -> str:
        return "\n".join(item.text or "" for item in self.content if item.type == "text")

    @property
    def media(self) -> list[McpContent]:
        return [item for item in self.content if item.is_media]


class McpPromptArgument(BaseModel):
    name: str
    description: str | None = None
    required: bool = False


class McpPrompt(BaseModel):
    """Prompt template advertised by an MCP server via `prompts/list`."""

    name: str
    description: str | None = None
    arguments: list[McpPromptArgument] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> McpPrompt:
        arguments = payload.get("arguments")
        description = payload.get("description")
        parsed: list[McpPromptArgument] = []
        if isinstance(arguments, list):
            for item in arguments:
                if isinstance(item, Mapping) and isinstance(item.get("name"), str):
                    item_description = item.get("description")
                    parsed.append(
                        McpPromptArgument(
                            name=item["name"],
                            description=(
                                item_description if isinstance(item_description, str) else None
                            ),
                            required=item.get("required") is True,
                        )
                    )
        return cls(
            name=str(payload["name"]),
            description=description if isinstance(description, str) else None,
            arguments=parsed,
        )


class PromptResult(BaseModel):
    """Rendered prompt returned by `prompts/get`."""

    description: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def text(self) -> str:
        """Concatenate the text blocks of all prompt messages."""
        parts: list[str] = []
        for message in self.messages:
            content = message.get("content")
            if isinstance(content, Mapping) and content.get("type") == "text":
                parts.append(str(content.get("text", "")))
            elif isinstance(content, str):
                parts.append(content)
        return "\n\n".join(parts)


class ProgressNotification(BaseModel):
    """Progress notification sent by a server while a request is running."""

    server_id: str
    progress_token: Any = None
    progress: float = 0
    total: float | None = None
    message: str | None = None

    @property
    def percentage(self) -> float | None:
        if not self.total:
            return None
        return (self.progress / self.total) * 100


class ToolCallRequest(BaseModel):
    """A tool call requested by the model, arguments still as raw JSON text."""

    id: str
    name: str
    arguments: str = ""

    @classmethod
    def from_openai(cls, payload: Mapping[str, Any]) -> ToolCallRequest:
        function = payload.get("function")
        function = function if isinstance(function, Mapping) else {}
        arguments = function.get("arguments", "")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(payload.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments,
        )

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolCallResult(BaseModel):
    """Outcome of one tool call; produced for every request, errors included."""

    tool_call_id: str
    tool_name: str
    text: str
    media: list[McpContent] = Field(default_factory=list)
    is_error: bool = False
    server_id: str | None = None


#: Conversation roles persisted by the client.
#:
#: ``elicitation`` and ``model_change`` entries are local-only and have no wire
#: representation; ``notification`` entries are sent as user-role context.
MessageRole: TypeAlias = Literal[
    "user",
    "assistant",
    "tool",
    "system",
    "elicitation",
    "notification",
    "model_change",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class MediaAttachment(BaseModel):
    data: str
    mime_type: str


class Message(BaseModel):
    """One persisted conversation entry.

    Attributes:
        id: Message id.
        conversation_id: Owning conversation id.
        role: Message role.
        content: Visible text content.
        timestamp: Creation time (UTC).
        reasoning: Reasoning trace for assistant messages.
        tool_calls: Tool calls requested by an assistant message.
        tool_call_id: Tool call answered by a tool message.
        tool_name: Tool name for a tool message.
        elicitation_data: Elicitation payload for elicitation messages.
        notification_data: Notification payload for notification messages.
        images: Image payloads attached to a tool result or user message.
        audio: Audio payloads attached to a tool result or user message.
    """

    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=_now)
    reasoning: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    elicitation_data: dict[str, Any] | None = None
    notification_data: dict[str, Any] | None = None
    images: list[MediaAttachment] = Field(default_factory=list)
    audio: list[MediaAttachment] = Field(default_factory=list)

    def to_api_message(self) -> dict[str, Any] | None:
        """Convert to the completion API message shape.

        Returns None for roles that are never sent to the model.
        """
        if self.role in ("elicitation", "model_change"):
            return None

        if self.role == "notification":
            data = self.notification_data or {}
            server_name = data.get("serverName") or "MCP Server"
            method = data.get("method") or "unknown"
            text = f'[Notification from MCP server "{server_name}"]\nMethod: {method}\n'
            params = data.get("params")
            if params is not None:
                text += f"Params: {json.dumps(params)}"
            return {"role": "user", "content": text}

        if self.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": self.tool_call_id or "",
                "name": self.tool_name or "",
                "content": self.content,
            }

        if self.role == "system":
            return {"role": "system", "content": self.content}

        if self.role == "assistant" and self.tool_calls:
            message: dict[str, Any] = {
                "role": "assistant",
                "tool_calls": [call.to_openai() for call in self.tool_calls],
            }
            if self.content:
                message["content"] = self.content
            return message

        if self.role == "user" and (self.images or self.audio):
            return {"role": "user", "content": _content_parts(self.content, self.images, self.audio)}

        return {"role": self.role, "content": self.content}


def _content_parts(
    text: str,
    images: list[MediaAttachment],
    audio: list[MediaAttachment],
) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    for image in images:
        parts.append(
            {
                "type": "image_url",
                "image_url": {"url": f"data:{image.mime_type};base64,{image.data}"},
            }
        )
    for clip in audio:
        parts.append(
            {
                "type": "input_audio",
                "input_audio": {"data": clip.data, "format": audio_format(clip.mime_type)},
            }
        )
    return parts


def media_message(
    text: str,
    images: list[MediaAttachment],
    audio: list[MediaAttachment],
) -> dict[str, Any]:
    """Build a user-role message embedding images and audio for the model."""
    return {"role": "user", "content": _content_parts(text, images, audio)}


def audio_format(mime_type: str) -> str:
    """Map an audio MIME type to the completion API's `format` value."""
    subtype = mime_type.split("/", 1)[-1].lower()
    if subtype in ("mpeg", "mp3"):
        return "mp3"
    if subtype in ("wav", "x-wav", "wave"):
        return "wav"
    return subtype


#: OAuth lifecycle status stored alongside a server configuration.
OAuthStatus: TypeAlias = Literal["none", "required", "pending", "authenticated"]


class StoredTokens(BaseModel):
    """OAuth tokens as persisted with a server configuration."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str | None = None
    scope: str | None = None


class ServerConfig(BaseModel):
    """Configuration of one remote MCP server."""

    id: str = Field(default_factory=_new_id)
    name: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    oauth_status: OAuthStatus = "none"
    oauth_tokens: StoredTokens | None = None


class ModelInfo(BaseModel):
    """Model metadata relevant to message serialization."""

    id: str
    input_modalities: list[str] = Field(default_factory=lambda: ["text"])

    @property
    def supports_images(self) -> bool:
        return "image" in self.input_modalities

    @property
    def supports_audio(self) -> bool:
        return "audio" in self.input_modalities

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ModelInfo:
        architecture = payload.get("architecture")
        modalities: list[str] = ["text"]
        if isinstance(architecture, Mapping):
            raw = architecture.get("input_modalities")
            if isinstance(raw, list):
                modalities = [str(item) for item in raw]
        return cls(id=str(payload.get("id", "")), input_modalities=modalities)


class UsageInfo(BaseModel):
    """Token accounting reported by the completion API."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> UsageInfo:
        def _int(key: str) -> int | None:
            value = payload.get(key)
            return value if isinstance(value, int) else None

        cost = payload.get("cost")
        return cls(
            prompt_tokens=_int("prompt_tokens"),
            completion_tokens=_int("completion_tokens"),
            total_tokens=_int("total_tokens"),
            cost=float(cost) if isinstance(cost, (int, float)) else None,
            raw=dict(payload),
        )
