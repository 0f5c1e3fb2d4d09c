from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class User:
    id: str
    subject: str
    email: str
    display_name: str
    role: str = "end-user"
    created_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    is_active: bool = True


@dataclass
class ChatSession:
    id: str
    user_id: str
    title: str = "New chat"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ChatMessage:
    id: str
    session_id: str
    user_id: str
    content: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthSession:
    """Server-side record behind a session cookie."""

    id: str
    user_id: str
    subject: str
    email: str
    display_name: str
    role: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime

    @classmethod
    def new(
        cls,
        user_id: str,
        subject: str,
        email: str,
        display_name: str,
        role: str,
        *,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "AuthSession":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            subject=subject,
            email=email,
            display_name=display_name,
            role=role,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "expires_at", "last_activity"):
            data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthSession":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            subject=data.get("subject", ""),
            email=data.get("email", ""),
            display_name=data.get("display_name", ""),
            role=data.get("role", "end-user"),
            created_at=_parse_ts(data["created_at"]),
            expires_at=_parse_ts(data["expires_at"]),
            last_activity=_parse_ts(data.get("last_activity") or data["created_at"]),
        )


@dataclass
class OIDCState:
    """One in-flight login attempt, keyed by its state value."""

    state: str
    nonce: str
    code_verifier: str
    redirect_uri: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.nonce,
            "code_verifier": self.code_verifier,
            "redirect_uri": self.redirect_uri,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, state: str, data: Dict[str, Any]) -> "OIDCState":
        return cls(
            state=state,
            nonce=data["nonce"],
            code_verifier=data["code_verifier"],
            redirect_uri=data["redirect_uri"],
            created_at=_parse_ts(data["created_at"]),
        )
