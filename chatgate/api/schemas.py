from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ActionResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


class RefreshResponse(BaseModel):
    success: bool = True
    message: str = "Session refreshed"
    expires_at: datetime


class SessionUser(BaseModel):
    id: str
    email: str
    display_name: str
    role: str


class SessionInfo(BaseModel):
    expires_at: datetime
    last_activity: datetime


class SessionStatusResponse(BaseModel):
    success: bool = True
    authenticated: bool
    user: Optional[SessionUser] = None
    session: Optional[SessionInfo] = None


class ChatSessionCreateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ChatSessionResponse(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: datetime


class ChatMessageResponse(BaseModel):
    id: str
    session_id: str
    user_id: str
    content: str
    role: str
    created_at: datetime


class ChatMessageListResponse(BaseModel):
    session_id: str
    messages: List[ChatMessageResponse]


class OIDCConfigRequest(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=256)
    client_secret: Optional[str] = Field(default=None, max_length=1024)


class OIDCConfigResponse(BaseModel):
    issuer: Optional[str]
    client_id: Optional[str]
    client_secret: str = ""
    redirect_uri: str


class ConnectionStatsResponse(BaseModel):
    connections: int
    users: int
    chat_sessions: int
