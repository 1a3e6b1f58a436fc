from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .elicitation import ElicitationRequest


class McpClientError(Exception):
    """Base exception for the mcp-agent-client package."""


class McpTransportError(McpClientError):
    """Raised when the HTTP transport fails or returns an unexpected status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class McpTimeoutError(McpClientError):
    """Raised when a request exceeds its (possibly extended) deadline."""


class McpProtocolError(McpClientError):
    """Raised when a JSON-RPC response carries an error object."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class McpSessionError(McpTransportError):
    """Raised when the server rejects the current session id."""


class McpAuthRequiredError(McpClientError):
    """Raised when an MCP server answers 401 and needs OAuth credentials."""

    def __init__(
        self,
        server_url: str,
        message: str = "OAuth authentication required",
        *,
        resource_metadata_url: str | None = None,
        scope: str | None = None,
    ) -> None:
        super().__init__(f"{message} (server: {server_url})")
        self.server_url = server_url
        self.resource_metadata_url = resource_metadata_url
        self.scope = scope


class UrlElicitationRequiredError(McpProtocolError):
    """Raised when a tool call needs URL-mode elicitation before it can run."""

    def __init__(
        self,
        message: str,
        *,
        elicitations: list[ElicitationRequest],
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message, code=code, data=data)
        self.elicitations = elicitations

    def __str__(self) -> str:
        return (
            f"URL elicitation required: {self.args[0]} "
            f"({len(self.elicitations)} elicitations required)"
        )


class OAuthError(McpClientError):
    """Raised when an OAuth discovery, exchange, or refresh step fails."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status

    def __str__(self) -> str:
        message = str(self.args[0])
        if self.code is not None:
            return f"{message} (code: {self.code})"
        return message


class CompletionError(McpClientError):
    """Raised when the completion API fails or streams an error frame."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.data = data


class CompletionAuthError(CompletionError):
    """Raised when the completion API rejects the configured API key."""
