from __future__ import annotations

import copy
import threading
import time
from typing import Dict, Optional, Tuple

from chatgate.logging import get_logger


class MemoryCache:
    """In-process stand-in for RedisCache used in tests and local development.

    Records live in a dict guarded by a thread lock; expired entries are dropped
    lazily on access and by ``purge_expired``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data: Dict[str, Tuple[dict, float]] = {}
        self._lock = threading.Lock()

    def _get_live(self, key: str, now: float) -> Optional[dict]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._data[key]
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def set_json(self, key: str, value: dict, ttl_seconds: int) -> None:
        expires_at = time.monotonic() + max(1, int(ttl_seconds))
        with self._lock:
            self._data[key] = (copy.deepcopy(value), expires_at)

    async def get_json(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._get_live(key, time.monotonic())
            return copy.deepcopy(value) if value is not None else None

    async def pop_json(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._get_live(key, time.monotonic())
            self._data.pop(key, None)
            return value

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            stale = [key for key, (_, exp) in self._data.items() if exp <= now]
            for key in stale:
                del self._data[key]
        if stale:
            self.logger.debug("memory_cache_purged", count=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
