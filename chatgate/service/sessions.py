from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from chatgate.logging import get_logger
from chatgate.service.tokens import SessionTokenCodec
from chatgate.storage.models import AuthSession
from chatgate.storage.session_store import SessionStore

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    session: AuthSession
    token: str


class SessionManager:
    """Create, verify, rotate and destroy server-side sessions.

    A session is valid only while both its signed token and its store record
    are; the record is the sole source of identity and role data.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: SessionTokenCodec,
        *,
        timeout_seconds: int = 8 * 60 * 60,
        refresh_threshold_seconds: int = 60 * 60,
        strict_refresh: bool = False,
    ) -> None:
        self.store = store
        self.codec = codec
        self.timeout_seconds = timeout_seconds
        self.refresh_threshold = timedelta(seconds=refresh_threshold_seconds)
        self.strict_refresh = strict_refresh
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create_session(
        self,
        user_id: str,
        subject: str,
        email: str,
        display_name: str,
        role: str,
    ) -> IssuedSession:
        session = AuthSession.new(
            user_id,
            subject,
            email,
            display_name,
            role,
            ttl_seconds=self.timeout_seconds,
            now=self._now(),
        )
        await self.store.save(session)
        token = self.codec.issue(session)
        self.logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            expires_at=session.expires_at.isoformat(),
        )
        return IssuedSession(session=session, token=token)

    async def _load_live(self, token: str) -> Optional[AuthSession]:
        claims = self.codec.decode(token)
        if not claims:
            return None
        session_id = claims["sid"]
        session = await self.store.get(session_id)
        if session is None:
            return None
        if session.expires_at < self._now():
            await self.store.delete(session_id)
            self.logger.info("session_expired_evicted", session_id=session_id)
            return None
        return session

    async def verify_session(self, token: str) -> Optional[AuthSession]:
        """Resolve ``token`` to its live session and record the activity."""
        session = await self._load_live(token)
        if session is None:
            return None
        session.last_activity = self._now()
        await self.store.save(session)
        return session

    async def get_session(self, token: str) -> Optional[AuthSession]:
        """Resolve ``token`` without touching ``last_activity``."""
        return await self._load_live(token)

    def needs_refresh(self, session: AuthSession) -> bool:
        remaining = session.expires_at - self._now()
        return timedelta(0) < remaining <= self.refresh_threshold

    async def refresh_session(self, token: str) -> Optional[IssuedSession]:
        """Rotate the session when it is inside the refresh window.

        Returns None both when there is no valid session and when no refresh is
        due; callers tell the two apart with ``verify_session`` if they need to.
        """
        session = await self.verify_session(token)
        if session is None:
            return None
        if not self.needs_refresh(session):
            return None
        if self.strict_refresh:
            if not await self.store.take(session.id):
                self.logger.warning("session_refresh_lost_race", session_id=session.id)
                return None
        else:
            await self.destroy_session(session.id)
        issued = await self.create_session(
            session.user_id,
            session.subject,
            session.email,
            session.display_name,
            session.role,
        )
        self.logger.info(
            "session_refreshed",
            old_session_id=session.id,
            session_id=issued.session.id,
        )
        return issued

    async def destroy_session(self, session_id: str) -> None:
        removed = await self.store.delete(session_id)
        self.logger.info("session_destroyed", session_id=session_id, existed=removed)
