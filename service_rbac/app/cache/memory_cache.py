"""
In-process TTL cache.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Tuple

from shared.logging import get_logger


class InMemoryCache:
    """Dictionary cache whose entries expire after ``ttl`` milliseconds."""

    def __init__(self, default_ttl_ms: int = 300_000, clock=time.monotonic):
        self.default_ttl_ms = default_ttl_ms
        self.logger = get_logger("rbac.cache.memory")
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl_ms = self.default_ttl_ms if ttl is None else ttl
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl_ms / 1000.0)
        self.logger.debug("Cached value", key=key, ttl_ms=ttl_ms)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
