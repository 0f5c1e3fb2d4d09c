from __future__ import annotations

from typing import Optional

from chatgate.logging import get_logger
from chatgate.storage.models import AuthSession
from chatgate.storage.redis_cache import KeyValueCache, ttl_until

logger = get_logger(__name__)


class SessionStore:
    """Session records keyed by id, expiring with the session itself."""

    key_prefix = "session:"

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def save(self, session: AuthSession) -> None:
        await self.cache.set_json(
            self._key(session.id), session.to_dict(), ttl_until(session.expires_at)
        )

    async def get(self, session_id: str) -> Optional[AuthSession]:
        data = await self.cache.get_json(self._key(session_id))
        if data is None:
            return None
        try:
            return AuthSession.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "session_record_invalid", session_id=session_id, error=str(exc)
            )
            await self.cache.delete(self._key(session_id))
            return None

    async def delete(self, session_id: str) -> bool:
        return await self.cache.delete(self._key(session_id))

    async def take(self, session_id: str) -> bool:
        """Remove the record only if it is still present; True for the single winner."""
        return await self.cache.pop_json(self._key(session_id)) is not None
