from __future__ import annotations

from typing import Optional

from chatgate.logging import get_logger
from chatgate.storage.models import OIDCState
from chatgate.storage.redis_cache import KeyValueCache

logger = get_logger(__name__)


class OIDCStateStore:
    """Single-use storage for in-flight login attempts."""

    key_prefix = "oidc:state:"

    def __init__(self, cache: KeyValueCache, *, ttl_seconds: int = 600) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def put(self, record: OIDCState) -> None:
        await self.cache.set_json(
            f"{self.key_prefix}{record.state}", record.to_dict(), self.ttl_seconds
        )

    async def consume(self, state: str) -> Optional[OIDCState]:
        """Read and delete the state atomically; later calls return None."""
        if not state:
            return None
        data = await self.cache.pop_json(f"{self.key_prefix}{state}")
        if data is None:
            return None
        try:
            return OIDCState.from_dict(state, data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("oidc_state_record_invalid", error=str(exc))
            return None
