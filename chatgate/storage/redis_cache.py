from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

from chatgate.logging import get_logger

logger = get_logger(__name__)

_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


class KeyValueCache(Protocol):
    """Keyed JSON storage with per-record TTL backing sessions and login state."""

    async def set_json(self, key: str, value: dict, ttl_seconds: int) -> None: ...

    async def get_json(self, key: str) -> Optional[dict]: ...

    async def pop_json(self, key: str) -> Optional[dict]: ...

    async def delete(self, key: str) -> bool: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


def ttl_until(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least 1.

    Naive timestamps are treated as UTC; Redis rejects zero or negative TTLs.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _loads(raw: Any, key: str) -> Optional[dict]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("cache_record_corrupt", key=key)
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper storing JSON documents under namespaced keys."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_json(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def get_json(self, key: str) -> Optional[dict]:
        return _loads(await self.client.get(key), key)

    async def pop_json(self, key: str) -> Optional[dict]:
        """Atomically read and delete ``key``.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua GET+DEL on servers
        that reject it, so two concurrent callers can never both observe the value.
        """
        try:
            raw = await self.client.getdel(key)
        except ResponseError as exc:
            if "unknown command" not in str(exc).lower():
                raise
            raw = await self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _loads(raw, key)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
