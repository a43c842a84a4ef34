"""Per-key asyncio locks."""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """
    Hand out one asyncio.Lock per key, dropping it once nobody holds or waits on it.

    Holders of different keys never contend with each other.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refcounts[key] = self._refcounts.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
