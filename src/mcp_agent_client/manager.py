from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .dispatcher import ToolDispatcher
from .errors import McpAuthRequiredError, McpClientError, OAuthError
from .events import EventSink, GenericNotification, ServerNeedsAuth, ToolsChanged
from .models import McpTool, ServerConfig
from .oauth import OAuthClient, OAuthCredentialProvider, OAuthTokens
from .protocol import TOOLS_LIST_CHANGED_NOTIFICATION
from .proxy import InteractionProxy
from .session import McpSession
from .store import ConversationStore
from .timeouts import DEFAULT_TIMEOUT, EXTENDED_TIMEOUT, TimeoutCoordinator
from .transport import CredentialProvider

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ServerConfig, CredentialProvider | None], McpSession]


class ServerManager:
    """Connects the configured MCP servers of a conversation and keeps them usable.

    Connected sessions are registered with the dispatcher. Session ids are
    persisted per conversation so later connects can resume them. Servers
    answering 401 are tracked until `complete_authorization()` succeeds.
    """

    def __init__(
        self,
        store: ConversationStore,
        dispatcher: ToolDispatcher,
        *,
        oauth: OAuthClient | None = None,
        proxy: InteractionProxy | None = None,
        emit: EventSink | None = None,
        tool_timeout: float = DEFAULT_TIMEOUT,
        extended_tool_timeout: float = EXTENDED_TIMEOUT,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._oauth = oauth if oauth is not None else OAuthClient()
        self._owns_oauth = oauth is None
        self._proxy = proxy
        self._emit = emit
        self._tool_timeout = tool_timeout
        self._extended_tool_timeout = extended_tool_timeout
        self._session_factory = session_factory or self._default_session
        self._sessions: dict[str, McpSession] = {}
        self._credentials: dict[str, OAuthCredentialProvider] = {}
        self._needs_auth: set[str] = set()
        self._auth_hints: dict[str, McpAuthRequiredError] = {}
        self._pending_auth: dict[str, str] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def oauth(self) -> OAuthClient:
        return self._oauth

    @property
    def sessions(self) -> dict[str, McpSession]:
        return dict(self._sessions)

    @property
    def needs_auth(self) -> set[str]:
        return set(self._needs_auth)

    def set_event_sink(self, emit: EventSink | None) -> None:
        self._emit = emit

    async def connect_all(self, conversation_id: str) -> list[str]:
        """Connect every enabled server; returns the ids that connected."""
        connected: list[str] = []
        for server in await self._store.list_servers():
            if not server.enabled:
                continue
            if await self.connect_server(conversation_id, server):
                connected.append(server.id)
        return connected

    async def connect_server(self, conversation_id: str, server: ServerConfig) -> bool:
        """Initialize one server, resuming its stored session when possible.

        Returns False when the server needs authorization or could not be
        reached; neither case raises.
        """
        await self.disconnect(server.id)

        credentials: OAuthCredentialProvider | None = None
        if server.oauth_status != "none" or server.oauth_tokens is not None:
            credentials = self._credentials_for(server)

        session = self._session_factory(server, credentials)
        session.on_notification = self._notification_handler(server)
        session.on_session_changed = self._session_changed_handler(conversation_id, server.id)
        if self._proxy is not None:
            self._proxy.attach(session)

        stored_session_id = await self._store.get_session_id(conversation_id, server.id)
        if stored_session_id is not None:
            logger.debug("Attempting to resume session for %s", server.name)

        try:
            await session.initialize(stored_session_id)
            tools = await session.list_tools()
        except McpAuthRequiredError as exc:
            await session.close()
            await self._mark_needs_auth(server, exc)
            return False
        except McpClientError as exc:
            logger.warning("Failed to initialize MCP server %s: %s", server.name, exc)
            await session.close()
            return False

        self._sessions[server.id] = session
        self._dispatcher.register(server.id, session, tools, url=server.url)
        self._needs_auth.discard(server.id)
        self._auth_hints.pop(server.id, None)
        logger.info("Connected %s with %d tools", server.name, len(tools))

        if server.oauth_status in ("required", "pending"):
            latest = await self._store.get_server(server.id) or server
            await self._store.save_server(latest.model_copy(update={"oauth_status": "authenticated"}))
        return True

    async def refresh_tools(self, server_id: str) -> list[McpTool]:
        session = self._sessions.get(server_id)
        if session is None:
            return []
        try:
            tools = await session.list_tools()
        except McpClientError as exc:
            logger.warning("Failed to refresh tools for %s: %s", server_id, exc)
            return self._dispatcher.tools_for(server_id)
        self._dispatcher.update_tools(server_id, tools)
        logger.info("Refreshed tools for %s: %d tools", server_id, len(tools))
        return tools

    async def disconnect(self, server_id: str) -> None:
        session = self._sessions.pop(server_id, None)
        self._dispatcher.unregister(server_id)
        if session is not None:
            await session.close()

    async def close(self) -> None:
        for server_id in list(self._sessions):
            await self.disconnect(server_id)
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        if self._owns_oauth:
            await self._oauth.aclose()

    async def begin_authorization(self, server_id: str, *, scope: str | None = None) -> str:
        """Start the OAuth flow for a server and return the URL to open."""
        server = await self._require_server(server_id)
        hint = self._auth_hints.get(server_id)
        url = await self._oauth.build_authorization_url(
            server.url,
            client_id=server.oauth_client_id,
            scope=scope or (hint.scope if hint is not None else None),
            resource_metadata_url=hint.resource_metadata_url if hint is not None else None,
        )
        state = parse_qs(urlsplit(url).query).get("state", [""])[0]
        self._pending_auth[state] = server_id
        await self._store.save_server(server.model_copy(update={"oauth_status": "pending"}))
        return url

    async def complete_authorization(self, conversation_id: str, callback_url: str) -> bool:
        """Finish an OAuth flow from its redirect URL, then reconnect the server."""
        callback = self._oauth.parse_callback(callback_url)
        if callback.error is not None:
            raise OAuthError(callback.error_description or callback.error, code=callback.error)
        if callback.code is None or callback.state is None:
            raise OAuthError("Authorization callback is missing code or state")

        server_id = self._pending_auth.pop(callback.state, None)
        if server_id is None:
            raise OAuthError("Unknown or expired state parameter")
        server = await self._require_server(server_id)

        tokens = await self._oauth.exchange_code_for_tokens(
            callback.code,
            callback.state,
            client_id=server.oauth_client_id,
            client_secret=server.oauth_client_secret,
        )
        server = server.model_copy(
            update={"oauth_tokens": tokens.to_stored(), "oauth_status": "authenticated"}
        )
        await self._store.save_server(server)
        self._credentials.pop(server_id, None)
        return await self.connect_server(conversation_id, server)

    def _default_session(
        self,
        server: ServerConfig,
        credentials: CredentialProvider | None,
    ) -> McpSession:
        return McpSession.connect_http(
            server.url,
            server_id=server.id,
            server_name=server.name,
            headers=server.headers,
            credentials=credentials,
            timeouts=TimeoutCoordinator(
                timeout=self._tool_timeout,
                extended_timeout=self._extended_tool_timeout,
            ),
        )

    def _credentials_for(self, server: ServerConfig) -> OAuthCredentialProvider:
        provider = self._credentials.get(server.id)
        if provider is not None:
            return provider

        server_id = server.id

        async def _load(_url: str) -> OAuthTokens | None:
            latest = await self._store.get_server(server_id)
            if latest is None or latest.oauth_tokens is None:
                return None
            return OAuthTokens.from_stored(latest.oauth_tokens)

        async def _save(_url: str, tokens: OAuthTokens | None) -> None:
            latest = await self._store.get_server(server_id)
            if latest is None:
                return
            update: dict[str, Any] = {
                "oauth_tokens": tokens.to_stored() if tokens is not None else None,
                "oauth_status": "authenticated" if tokens is not None else "required",
            }
            await self._store.save_server(latest.model_copy(update=update))

        provider = OAuthCredentialProvider(
            server.url,
            self._oauth,
            load_tokens=_load,
            save_tokens=_save,
            client_id=server.oauth_client_id,
            client_secret=server.oauth_client_secret,
        )
        self._credentials[server_id] = provider
        return provider

    async def _mark_needs_auth(self, server: ServerConfig, exc: McpAuthRequiredError) -> None:
        logger.info("MCP server %s requires OAuth", server.name)
        self._needs_auth.add(server.id)
        self._auth_hints[server.id] = exc
        latest = await self._store.get_server(server.id) or server
        if latest.oauth_status != "pending":
            await self._store.save_server(latest.model_copy(update={"oauth_status": "required"}))
        self._publish(ServerNeedsAuth(server_id=server.id, server_url=server.url))

    def _notification_handler(
        self,
        server: ServerConfig,
    ) -> Callable[[str, dict[str, Any]], Awaitable[None]]:
        async def _on_notification(method: str, params: dict[str, Any]) -> None:
            if method == TOOLS_LIST_CHANGED_NOTIFICATION:
                await self.refresh_tools(server.id)
                self._publish(ToolsChanged(server_id=server.id, server_name=server.name))
                return
            self._publish(
                GenericNotification(
                    server_id=server.id,
                    server_name=server.name,
                    method=method,
                    params=params or None,
                )
            )

        return _on_notification

    def _session_changed_handler(
        self,
        conversation_id: str,
        server_id: str,
    ) -> Callable[[str | None], Awaitable[None]]:
        async def _on_session_changed(session_id: str | None) -> None:
            await self._store.set_session_id(conversation_id, server_id, session_id)
            logger.debug("Stored session id for %s", server_id)
            if server_id in self._sessions:
                self._spawn_background_task(self.refresh_tools(server_id))

        return _on_session_changed

    def _spawn_background_task(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _require_server(self, server_id: str) -> ServerConfig:
        server = await self._store.get_server(server_id)
        if server is None:
            raise KeyError(f"unknown MCP server: {server_id}")
        return server

    def _publish(self, event: Any) -> None:
        if self._emit is not None:
            self._emit(event)
