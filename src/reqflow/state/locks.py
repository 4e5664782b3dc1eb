from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """One asyncio.Lock per artifact key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}
        self._holders: dict[tuple[str, int], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, namespace: str, item_id: int) -> asyncio.Lock:
        key = (namespace, item_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, namespace: str, item_id: int) -> AsyncIterator[None]:
        key = (namespace, item_id)
        lock = self.lock_for(namespace, item_id)
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders.pop(key) - 1
            if remaining:
                self._holders[key] = remaining
            else:
                self._locks.pop(key, None)
