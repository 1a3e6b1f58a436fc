from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any, Protocol

import httpx

from .errors import CompletionAuthError, CompletionError
from .models import ModelInfo
from .stream import StreamAccumulator, StreamEvent, parse_completion_stream

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class CompletionBackend(Protocol):
    """What the agentic loop and sampling processor need from a completion API."""

    def stream_chat_completion(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        accumulator: StreamAccumulator | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def chat_completion(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]: ...


class CompletionClient:
    """Client for an OpenAI-compatible chat completion API (OpenRouter by default)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
        connect_timeout: float = 30.0,
        app_title: str | None = "mcp-agent-client",
        referer: str | None = None,
    ) -> None:
        """Create a completion client.

        Args:
            api_key: Bearer API key.
            base_url: API root; `/chat/completions` and `/models` are appended.
            client: Optional pre-built httpx client (not closed by `aclose()`).
            connect_timeout: Connect timeout for the owned httpx client.
            app_title: Sent as `X-Title` for provider attribution.
            referer: Sent as `HTTP-Referer` for provider attribution.
        """
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client if client is not None else httpx.AsyncClient(
            timeout=httpx.Timeout(connect_timeout, read=None),
        )
        self._owns_client = client is None
        self._app_title = app_title
        self._referer = referer

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CompletionClient:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def chat_completion(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Run a non-streaming completion and return the decoded response body."""
        body = _request_body(model, messages, tools, tool_choice, max_tokens, stream=False)
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise CompletionError(f"completion request failed: {exc}") from exc

        _raise_for_status(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise CompletionError("completion response is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise CompletionError("completion response is not a JSON object")
        error = payload.get("error")
        if isinstance(error, dict):
            raise CompletionError(
                f"completion failed: {error.get('message', 'unknown error')}",
                data=error,
            )
        return payload

    async def stream_chat_completion(
        self,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any = None,
        max_tokens: int | None = None,
        accumulator: StreamAccumulator | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as content, reasoning, and completion events.

        Closing the iterator early (cancellation) closes the HTTP response.
        """
        body = _request_body(model, messages, tools, tool_choice, max_tokens, stream=True)
        request = self._client.build_request(
            "POST",
            f"{self._base_url}/chat/completions",
            json=body,
            headers={**self._headers(), "Accept": "text/event-stream"},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise CompletionError(f"completion request failed: {exc}") from exc

        try:
            if response.status_code >= 400:
                text = (await response.aread()).decode("utf-8", errors="replace")
                _raise_for_status(response.status_code, text)
            try:
                async for event in parse_completion_stream(response.aiter_lines(), accumulator):
                    yield event
            except httpx.HTTPError as exc:
                raise CompletionError(f"completion stream failed: {exc}") from exc
        finally:
            await response.aclose()

    async def list_models(self) -> list[ModelInfo]:
        try:
            response = await self._client.get(f"{self._base_url}/models", headers=self._headers())
        except httpx.HTTPError as exc:
            raise CompletionError(f"model listing failed: {exc}") from exc
        _raise_for_status(response.status_code, response.text)
        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            return []
        return [ModelInfo.from_payload(item) for item in data if isinstance(item, dict)]

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if self._app_title:
            headers["X-Title"] = self._app_title
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        return headers


def _request_body(
    model: str,
    messages: Sequence[Mapping[str, Any]],
    tools: Sequence[Mapping[str, Any]] | None,
    tool_choice: Any,
    max_tokens: int | None,
    *,
    stream: bool,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": [dict(message) for message in messages],
        "stream": stream,
    }
    if tools:
        body["tools"] = [dict(tool) for tool in tools]
    if tool_choice is not None:
        body["tool_choice"] = tool_choice
    if max_tokens is not None:
        body["max_tokens"] = max_tokens
    if stream:
        body["usage"] = {"include": True}
    return body


def _raise_for_status(status_code: int, text: str) -> None:
    if status_code < 400:
        return
    if status_code == 401:
        raise CompletionAuthError(
            "completion API rejected the API key (HTTP 401)",
            status_code=status_code,
        )
    raise CompletionError(
        f"completion API returned HTTP {status_code}: {text[:300]}",
        status_code=status_code,
    )
