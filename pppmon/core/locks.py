from contextlib import asynccontextmanager
from typing import Dict, Hashable
import asyncio


class KeyedLock:
    """One asyncio.Lock per key, created on demand.

    A key's lock is dropped as soon as nobody holds or waits for it, so keys
    for deleted routers and subscribers do not pile up.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
