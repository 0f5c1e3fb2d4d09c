from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation
from chatgate.storage.models import ChatMessage, ChatSession, User, utcnow

DEFAULT_ROLE = "end-user"
ROLES = ("admin", DEFAULT_ROLE)


class MemoryStore:
    """In-memory store for users, chat history and configuration blobs.

    When ``data_dir`` is given the whole state is mirrored to
    ``<data_dir>/state/memory_store.json`` after every write and reloaded on start.
    """

    def __init__(self, data_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.chat_sessions: Dict[str, ChatSession] = {}
        self.messages: Dict[str, List[ChatMessage]] = {}
        self.config_blobs: Dict[str, Dict[str, Any]] = {}
        # RLock so helpers can nest under public methods
        self._data_lock = threading.RLock()
        self.data_dir = Path(data_dir) if data_dir else None
        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def create_or_update_user(
        self,
        subject: str,
        email: str,
        display_name: str,
        role: str = DEFAULT_ROLE,
    ) -> User:
        """Upsert on the identity-provider subject and stamp ``last_login``.

        An existing user's role is left untouched so admin promotions survive
        later logins.
        """
        now = utcnow()
        with self._data_lock:
            existing = self.get_user_by_subject(subject)
            owner = self.get_user_by_email(email) if email else None
            if owner and (existing is None or owner.id != existing.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing:
                user = replace(
                    existing,
                    email=email or existing.email,
                    display_name=display_name or existing.display_name,
                    last_login=now,
                )
                self.logger.info("user_login_recorded", user_id=user.id)
            else:
                user = User(
                    id=str(uuid.uuid4()),
                    subject=subject,
                    email=email,
                    display_name=display_name or email,
                    role=role if role in ROLES else DEFAULT_ROLE,
                    created_at=now,
                    last_login=now,
                )
                self.logger.info("user_created", user_id=user.id, role=user.role)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.subject == subject), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == lowered), None
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user = replace(user, role=role)
            self.users[user_id] = user
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user = replace(user, is_active=is_active)
            self.users[user_id] = user
            self._persist_state()
            return user

    # chat
    def create_chat_session(self, user_id: str, title: str | None = None) -> ChatSession:
        with self._data_lock:
            session = ChatSession(
                id=str(uuid.uuid4()), user_id=user_id, title=title or "New chat"
            )
            self.chat_sessions[session.id] = session
            self.messages[session.id] = []
            self._persist_state()
            return session

    def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        with self._data_lock:
            return self.chat_sessions.get(session_id)

    def list_chat_sessions(self, user_id: str) -> List[ChatSession]:
        with self._data_lock:
            owned = [s for s in self.chat_sessions.values() if s.user_id == user_id]
            return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def create_chat_message(
        self, session_id: str, user_id: str, content: str, role: str = "user"
    ) -> ChatMessage:
        with self._data_lock:
            if session_id not in self.chat_sessions:
                raise ConstraintViolation(
                    "chat session not found", {"field": "session_id"}
                )
            message = ChatMessage(
                id=str(uuid.uuid4()),
                session_id=session_id,
                user_id=user_id,
                content=content,
                role=role,
            )
            self.messages.setdefault(session_id, []).append(message)
            self._persist_state()
            return message

    def list_chat_messages(self, session_id: str) -> List[ChatMessage]:
        with self._data_lock:
            return list(self.messages.get(session_id, []))

    # configuration blobs (values are stored as given; callers encrypt secrets)
    def get_config(self, name: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            blob = self.config_blobs.get(name)
            return dict(blob) if blob is not None else None

    def set_config(self, name: str, blob: Dict[str, Any]) -> None:
        with self._data_lock:
            self.config_blobs[name] = dict(blob)
            self._persist_state()

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.data_dir / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "subject": user.subject,
            "email": user.email,
            "display_name": user.display_name,
            "role": user.role,
            "created_at": user.created_at.isoformat(),
            "last_login": user.last_login.isoformat() if user.last_login else None,
            "is_active": user.is_active,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        last_login = data.get("last_login")
        return User(
            id=data["id"],
            subject=data["subject"],
            email=data["email"],
            display_name=data.get("display_name") or data["email"],
            role=data.get("role", DEFAULT_ROLE),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_login=datetime.fromisoformat(last_login) if last_login else None,
            is_active=data.get("is_active", True),
        )

    def _persist_state(self) -> None:
        if self.data_dir is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "chat_sessions": [
                {
                    "id": s.id,
                    "user_id": s.user_id,
                    "title": s.title,
                    "created_at": s.created_at.isoformat(),
                }
                for s in self.chat_sessions.values()
            ],
            "messages": [
                {
                    "id": m.id,
                    "session_id": m.session_id,
                    "user_id": m.user_id,
                    "content": m.content,
                    "role": m.role,
                    "created_at": m.created_at.isoformat(),
                }
                for msgs in self.messages.values()
                for m in msgs
            ],
            "config_blobs": self.config_blobs,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.chat_sessions = {
            s["id"]: ChatSession(
                id=s["id"],
                user_id=s["user_id"],
                title=s.get("title") or "New chat",
                created_at=datetime.fromisoformat(s["created_at"]),
            )
            for s in data.get("chat_sessions", [])
        }
        self.messages = {session_id: [] for session_id in self.chat_sessions}
        for m in data.get("messages", []):
            self.messages.setdefault(m["session_id"], []).append(
                ChatMessage(
                    id=m["id"],
                    session_id=m["session_id"],
                    user_id=m["user_id"],
                    content=m["content"],
                    role=m.get("role", "user"),
                    created_at=datetime.fromisoformat(m["created_at"]),
                )
            )
        self.config_blobs = dict(data.get("config_blobs", {}))
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True
