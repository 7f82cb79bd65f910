"""
Keyed asyncio locks.

Hands out one asyncio.Lock per key so work on the same key serializes
while different keys run in parallel. A key's lock is dropped once no
task holds it or waits for it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    """
    Registry of per-key locks.

    Usage:
        locks = KeyedLocks()
        async with locks.acquire(("user-1", "short_term")):
            ...
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}  # holders + waiters per key

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for `key` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        return key in self._locks and self._locks[key].locked()

    def __len__(self) -> int:
        return len(self._locks)
