from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Set
from uuid import uuid4

from chatgate.logging import get_logger
from chatgate.storage.memory import MemoryStore
from chatgate.storage.models import ChatSession

logger = get_logger(__name__)

IDLE_CLOSE_CODE = 1000
IDLE_CLOSE_REASON = "Inactive timeout"

# Anything else a client sends is stored as "user"; admins may also post as these
MESSAGE_ROLES = frozenset({"user", "assistant", "system"})


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SocketLike(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class ChatConnection:
    """One live socket, its owner, and the chat session it is attached to."""

    def __init__(
        self, websocket: SocketLike, user_id: str, connection_id: str | None = None
    ) -> None:
        self._websocket = websocket
        self.connection_id = connection_id or str(uuid4())
        self.user_id = user_id
        self.chat_session_id: Optional[str] = None
        self.last_activity = time.monotonic()

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    async def send_event(self, payload: Dict[str, Any]) -> None:
        try:
            await self._websocket.send_json(payload)
        except Exception as exc:
            raise ConnectionError(f"send failed on {self.connection_id}") from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        try:
            await self._websocket.close(code=code, reason=reason)
        except Exception as exc:
            raise ConnectionError(f"close failed on {self.connection_id}") from exc


class ChatHub:
    """Process-wide registry of chat sockets and per-chat-session fan-out.

    Only the event loop mutates ``connections`` and ``user_sessions``, so no
    lock is taken; every loop over the registry iterates a snapshot.
    """

    def __init__(self, store: MemoryStore, *, idle_timeout_seconds: int = 30 * 60) -> None:
        self.store = store
        self.idle_timeout_seconds = idle_timeout_seconds
        self.connections: Dict[str, ChatConnection] = {}
        self.user_sessions: Dict[str, Set[str]] = {}
        self.logger = logger

    async def connect(self, websocket: SocketLike, user_id: str) -> ChatConnection:
        connection = ChatConnection(websocket, user_id)
        self.connections[connection.connection_id] = connection
        self.logger.info(
            "websocket_connection_opened",
            connection_id=connection.connection_id,
            user_id=user_id,
        )
        try:
            await connection.send_event(
                {
                    "type": "user_joined",
                    "userId": user_id,
                    "message": "Connected to chat server",
                    "timestamp": _timestamp(),
                }
            )
        except ConnectionError:
            self.disconnect(connection.connection_id)
            raise
        return connection

    def _require_registered(self, connection: ChatConnection) -> None:
        """Raise ConnectionError once the hub has evicted ``connection``."""
        if connection.connection_id not in self.connections:
            self.logger.warning(
                "websocket_event_for_unknown_connection",
                connection_id=connection.connection_id,
            )
            raise ConnectionError(f"connection {connection.connection_id} is not registered")

    async def handle_frame(self, connection: ChatConnection, raw: str) -> None:
        self._require_registered(connection)
        try:
            event = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self.logger.warning(
                "websocket_invalid_json", connection_id=connection.connection_id
            )
            await self._send_error(connection, "Invalid message format")
            return
        if not isinstance(event, dict):
            await self._send_error(connection, "Invalid message format")
            return
        await self.handle_event(connection, event)

    async def handle_event(self, connection: ChatConnection, event: Dict[str, Any]) -> None:
        self._require_registered(connection)
        connection.touch()
        event_type = event.get("type")
        try:
            if event_type == "message":
                await self._handle_message(connection, event)
            elif event_type == "typing":
                await self._handle_typing(connection, event)
            elif event_type == "join":
                await self.join(connection, event.get("sessionId"))
            else:
                self.logger.warning(
                    "websocket_unknown_event",
                    event_type=event_type,
                    connection_id=connection.connection_id,
                )
                await self._send_error(connection, "Unknown message type")
        except ConnectionError:
            raise
        except Exception as exc:
            self.logger.error(
                "websocket_event_failed",
                connection_id=connection.connection_id,
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._send_error(connection, "Failed to process message")

    def _owned_chat_session(
        self, connection: ChatConnection, session_id: Any
    ) -> Optional[ChatSession]:
        if not isinstance(session_id, str) or not session_id:
            return None
        chat_session = self.store.get_chat_session(session_id)
        if chat_session is None or chat_session.user_id != connection.user_id:
            return None
        return chat_session

    async def _deny(self, connection: ChatConnection, session_id: Any) -> None:
        self.logger.warning(
            "websocket_chat_access_denied",
            connection_id=connection.connection_id,
            user_id=connection.user_id,
            chat_session_id=session_id,
        )
        await connection.send_event(
            {
                "type": "access_denied",
                "sessionId": session_id,
                "content": "Session not found or access denied",
                "timestamp": _timestamp(),
            }
        )

    def _associate(self, connection: ChatConnection, session_id: str) -> None:
        if connection.chat_session_id and connection.chat_session_id != session_id:
            self._release_membership(connection)
        connection.chat_session_id = session_id
        self.user_sessions.setdefault(connection.user_id, set()).add(session_id)

    def _release_membership(self, connection: ChatConnection) -> None:
        session_id = connection.chat_session_id
        if not session_id:
            return
        still_attached = any(
            other.user_id == connection.user_id
            and other.chat_session_id == session_id
            and other.connection_id != connection.connection_id
            for other in self.connections.values()
        )
        if still_attached:
            return
        memberships = self.user_sessions.get(connection.user_id)
        if memberships is None:
            return
        memberships.discard(session_id)
        if not memberships:
            del self.user_sessions[connection.user_id]

    async def join(self, connection: ChatConnection, session_id: Any) -> bool:
        """Attach ``connection`` to a chat session its user owns."""
        if self._owned_chat_session(connection, session_id) is None:
            await self._deny(connection, session_id)
            return False
        self._associate(connection, session_id)
        await connection.send_event(
            {"type": "joined", "sessionId": session_id, "timestamp": _timestamp()}
        )
        return True

    def _message_role(self, connection: ChatConnection, requested: Any) -> str:
        if not isinstance(requested, str) or requested not in MESSAGE_ROLES:
            return "user"
        user = self.store.get_user(connection.user_id)
        if user is None or user.role != "admin":
            return "user"
        return requested

    async def _handle_message(self, connection: ChatConnection, event: Dict[str, Any]) -> None:
        session_id = event.get("sessionId")
        content = event.get("content")
        if not session_id or not isinstance(content, str) or not content.strip():
            await self._send_error(connection, "Session ID and content are required")
            return
        if self._owned_chat_session(connection, session_id) is None:
            await self._deny(connection, session_id)
            return
        role = self._message_role(connection, event.get("role"))
        message = self.store.create_chat_message(
            session_id, connection.user_id, content, role
        )
        self._associate(connection, session_id)
        delivered = await self.broadcast(
            session_id,
            {
                "type": "message",
                "sessionId": session_id,
                "userId": connection.user_id,
                "content": content,
                "role": role,
                "messageId": message.id,
                "timestamp": message.created_at.isoformat(),
            },
        )
        self.logger.info(
            "chat_message_processed",
            connection_id=connection.connection_id,
            chat_session_id=session_id,
            message_id=message.id,
            delivered=delivered,
        )

    async def _handle_typing(self, connection: ChatConnection, event: Dict[str, Any]) -> None:
        session_id = event.get("sessionId")
        if not session_id or connection.chat_session_id != session_id:
            return
        await self.broadcast(
            session_id,
            {
                "type": "typing",
                "sessionId": session_id,
                "userId": connection.user_id,
                "timestamp": _timestamp(),
            },
            exclude=connection.connection_id,
        )

    async def broadcast(
        self,
        session_id: str,
        payload: Dict[str, Any],
        *,
        exclude: Optional[str] = None,
    ) -> int:
        """Send ``payload`` to every connection attached to ``session_id``.

        A failing socket is dropped from the registry and the loop carries on.
        """
        delivered = 0
        for connection in list(self.connections.values()):
            if connection.connection_id == exclude:
                continue
            if connection.chat_session_id != session_id:
                continue
            if connection.connection_id not in self.connections:
                continue
            try:
                await connection.send_event(payload)
                delivered += 1
            except ConnectionError as exc:
                self.logger.warning(
                    "websocket_send_failed",
                    connection_id=connection.connection_id,
                    error=str(exc.__cause__ or exc),
                )
                self.disconnect(connection.connection_id)
        self.logger.debug("chat_broadcast", chat_session_id=session_id, delivered=delivered)
        return delivered

    async def _send_error(self, connection: ChatConnection, content: str) -> None:
        try:
            await connection.send_event(
                {"type": "error", "content": content, "timestamp": _timestamp()}
            )
        except ConnectionError:
            self.logger.warning(
                "websocket_error_send_failed", connection_id=connection.connection_id
            )
            self.disconnect(connection.connection_id)

    def disconnect(self, connection_id: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        self._release_membership(connection)
        del self.connections[connection_id]
        self.logger.info(
            "websocket_connection_closed",
            connection_id=connection_id,
            user_id=connection.user_id,
        )

    async def cleanup_inactive(
        self, timeout_seconds: Optional[int] = None, *, now: Optional[float] = None
    ) -> int:
        """Close and drop connections idle for longer than the timeout."""
        timeout = self.idle_timeout_seconds if timeout_seconds is None else timeout_seconds
        now = time.monotonic() if now is None else now
        stale = [
            connection
            for connection in list(self.connections.values())
            if now - connection.last_activity > timeout
        ]
        for connection in stale:
            self.logger.info(
                "websocket_idle_cleanup", connection_id=connection.connection_id
            )
            try:
                await connection.close(IDLE_CLOSE_CODE, IDLE_CLOSE_REASON)
            except ConnectionError:
                self.logger.debug(
                    "websocket_idle_close_failed", connection_id=connection.connection_id
                )
            self.disconnect(connection.connection_id)
        return len(stale)

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self.connections),
            "users": len({c.user_id for c in self.connections.values()}),
            "chat_sessions": len(
                {c.chat_session_id for c in self.connections.values() if c.chat_session_id}
            ),
        }
