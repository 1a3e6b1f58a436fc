from __future__ import annotations

from typing import Protocol

from .models import Message, ServerConfig


class ConversationStore(Protocol):
    """Persistence collaborator for conversations, sessions, and servers."""

    async def save_message(self, message: Message) -> None: ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def get_session_id(self, conversation_id: str, server_id: str) -> str | None: ...

    async def set_session_id(
        self,
        conversation_id: str,
        server_id: str,
        session_id: str | None,
    ) -> None: ...

    async def get_server(self, server_id: str) -> ServerConfig | None: ...

    async def save_server(self, server: ServerConfig) -> None: ...

    async def list_servers(self) -> list[ServerConfig]: ...


class InMemoryConversationStore:
    """Dictionary-backed `ConversationStore`, used by the CLI and tests."""

    def __init__(self, servers: list[ServerConfig] | None = None) -> None:
        self._messages: dict[str, list[Message]] = {}
        self._session_ids: dict[tuple[str, str], str] = {}
        self._servers: dict[str, ServerConfig] = {server.id: server for server in servers or []}

    async def save_message(self, message: Message) -> None:
        messages = self._messages.setdefault(message.conversation_id, [])
        for index, existing in enumerate(messages):
            if existing.id == message.id:
                messages[index] = message
                return
        messages.append(message)

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    async def get_session_id(self, conversation_id: str, server_id: str) -> str | None:
        return self._session_ids.get((conversation_id, server_id))

    async def set_session_id(
        self,
        conversation_id: str,
        server_id: str,
        session_id: str | None,
    ) -> None:
        key = (conversation_id, server_id)
        if session_id is None:
            self._session_ids.pop(key, None)
        else:
            self._session_ids[key] = session_id

    async def get_server(self, server_id: str) -> ServerConfig | None:
        return self._servers.get(server_id)

    async def save_server(self, server: ServerConfig) -> None:
        self._servers[server.id] = server

    async def list_servers(self) -> list[ServerConfig]:
        return list(self._servers.values())
