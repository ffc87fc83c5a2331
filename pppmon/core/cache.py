from typing import Any, Optional, Dict, Callable, List
import asyncio
import logging
import time

from pppmon.config import settings

logger = logging.getLogger(__name__)

class CacheEntry:
    def __init__(self, value: Any, stored_at: float):
        self.value = value
        self.stored_at = stored_at

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.stored_at < ttl_seconds

class RouterDataCache:
    """Latest reconciled subscriber list per router, served to read queries.

    Entries older than ``ttl_seconds`` are treated as missing so the caller
    goes back to the router. ``clock`` must be monotonic; tests pass a fake.
    """

    def __init__(self, ttl_seconds: float = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self._cache: Dict[int, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, router_id: int) -> Optional[List[Any]]:
        async with self._lock:
            entry = self._cache.get(router_id)
            if entry is None:
                return None

            if not entry.is_fresh(self.clock(), self.ttl_seconds):
                del self._cache[router_id]
                return None

            return entry.value

    async def set(self, router_id: int, users: List[Any]):
        async with self._lock:
            self._cache[router_id] = CacheEntry(users, self.clock())

    async def invalidate(self, router_id: int):
        async with self._lock:
            if self._cache.pop(router_id, None) is not None:
                logger.debug(f"[CACHE] Invalidated router {router_id}")
