from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TypeVar

from .completions import DEFAULT_BASE_URL
from .loop import DEFAULT_MAX_ITERATIONS, DEFAULT_SYSTEM_PROMPT
from .oauth import DEFAULT_CLIENT_ID, DEFAULT_REDIRECT_URI
from .proxy import DEFAULT_SAMPLING_MODEL
from .timeouts import DEFAULT_TIMEOUT, EXTENDED_TIMEOUT

_N = TypeVar("_N", int, float)


@dataclass(slots=True)
class ClientSettings:
    """Runtime settings, usually read from the environment."""

    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_SAMPLING_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tool_timeout: float = DEFAULT_TIMEOUT
    extended_tool_timeout: float = EXTENDED_TIMEOUT
    oauth_client_id: str = DEFAULT_CLIENT_ID
    oauth_redirect_uri: str = DEFAULT_REDIRECT_URI

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientSettings:
        """Build settings from `OPENROUTER_*`, `MCP_AGENT_*`, and `MCP_OAUTH_*` variables.

        Unset or blank variables keep their defaults. Malformed numbers raise
        `ValueError` naming the variable.
        """
        env = os.environ if environ is None else environ

        def _get(name: str) -> str | None:
            value = env.get(name)
            if value is None or not value.strip():
                return None
            return value

        settings = cls(api_key=_get("OPENROUTER_API_KEY"))
        settings.base_url = _get("OPENROUTER_BASE_URL") or settings.base_url
        settings.model = _get("MCP_AGENT_MODEL") or settings.model
        settings.system_prompt = _get("MCP_AGENT_SYSTEM_PROMPT") or settings.system_prompt
        settings.max_iterations = _number(
            "MCP_AGENT_MAX_ITERATIONS", _get("MCP_AGENT_MAX_ITERATIONS"), settings.max_iterations, int
        )
        settings.tool_timeout = _number(
            "MCP_AGENT_TOOL_TIMEOUT", _get("MCP_AGENT_TOOL_TIMEOUT"), settings.tool_timeout, float
        )
        settings.extended_tool_timeout = _number(
            "MCP_AGENT_TOOL_TIMEOUT_EXTENDED",
            _get("MCP_AGENT_TOOL_TIMEOUT_EXTENDED"),
            settings.extended_tool_timeout,
            float,
        )
        settings.oauth_client_id = _get("MCP_OAUTH_CLIENT_ID") or settings.oauth_client_id
        settings.oauth_redirect_uri = _get("MCP_OAUTH_REDIRECT_URI") or settings.oauth_redirect_uri
        return settings


def _number(name: str, raw: str | None, default: _N, kind: Callable[[str], _N]) -> _N:
    if raw is None:
        return default
    try:
        value = kind(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value
