from __future__ import annotations

import json
import re
from collections.abc import Iterable, Iterator
from typing import Any

# JSON-RPC protocol version used by MCP envelopes.
JSONRPC_VERSION = "2.0"

# MCP protocol revision requested during initialize.
MCP_PROTOCOL_VERSION = "2025-06-18"

CLIENT_NAME = "mcp-agent-client"
CLIENT_VERSION = "0.1.0"

# HTTP headers used by the streamable HTTP transport.
SESSION_ID_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
ACCEPT_HEADER_VALUE = "application/json, text/event-stream"

# Client-initiated request methods.
INITIALIZE_METHOD = "initialize"
PING_METHOD = "ping"
TOOLS_LIST_METHOD = "tools/list"
TOOLS_CALL_METHOD = "tools/call"
PROMPTS_LIST_METHOD = "prompts/list"
PROMPTS_GET_METHOD = "prompts/get"

# Client-initiated notifications.
INITIALIZED_NOTIFICATION = "notifications/initialized"
CANCELLED_NOTIFICATION = "notifications/cancelled"

# Server-initiated requests.
SAMPLING_CREATE_MESSAGE_METHOD = "sampling/createMessage"
ELICITATION_CREATE_METHOD = "elicitation/create"

# Server-initiated notifications.
PROGRESS_NOTIFICATION = "notifications/progress"
TOOLS_LIST_CHANGED_NOTIFICATION = "notifications/tools/list_changed"
RESOURCES_LIST_CHANGED_NOTIFICATION = "notifications/resources/list_changed"

# JSON-RPC error codes.
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
USER_REJECTED = -1
URL_ELICITATION_REQUIRED = -32042

_WWW_AUTHENTICATE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def make_request(
    request_id: int | str,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC request envelope."""
    payload: dict[str, Any] = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
    }
    if params is not None:
        payload["params"] = params
    return payload


def make_notification(
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC notification envelope (no id)."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def make_response(request_id: int | str, result: Any) -> dict[str, Any]:
    """Build a JSON-RPC success response envelope."""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error_response(
    request_id: int | str,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build a JSON-RPC error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error,
    }


def is_response_message(payload: dict[str, Any]) -> bool:
    """Return True when payload is a response (has id, no method)."""
    return "id" in payload and "method" not in payload


def is_request_message(payload: dict[str, Any]) -> bool:
    """Return True when payload is a server-initiated request."""
    return isinstance(payload.get("method"), str) and payload.get("id") is not None


def extract_error(payload: dict[str, Any]) -> dict[str, Any] | None:
    """Return JSON-RPC error object if present and valid."""
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Yield the joined `data:` payload of each server-sent event."""
    buffer: list[str] = []
    for raw_line in lines:
        line = raw_line.rstrip("\r")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip(" "))
    if buffer:
        yield "\n".join(buffer)


def decode_messages(data: str) -> list[dict[str, Any]]:
    """Decode one JSON body or SSE data payload into JSON-RPC messages.

    Batched bodies (JSON arrays) are flattened; non-object entries are dropped.
    """
    decoded = json.loads(data)
    if isinstance(decoded, list):
        return [item for item in decoded if isinstance(item, dict)]
    if isinstance(decoded, dict):
        return [decoded]
    return []


def parse_www_authenticate(header: str | None) -> dict[str, str]:
    """Parse `key="value"` pairs out of a Bearer WWW-Authenticate header."""
    params: dict[str, str] = {}
    if not header:
        return params
    if header.lower().startswith("bearer "):
        header = header[7:]
    for key, value in _WWW_AUTHENTICATE_PARAM.findall(header):
        params[key] = value
    return params
