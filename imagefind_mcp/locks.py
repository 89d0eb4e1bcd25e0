from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """One asyncio.Lock per cache key, dropped again once nobody holds or waits on it.

    Used only to avoid generating the same artifact twice in one process;
    correctness of cache files does not depend on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = asyncio.Lock()

    async def _get(self, key: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._refs[key] = self._refs.get(key, 0) + 1
            return lock

    async def _put(self, key: str) -> None:
        async with self._guard:
            remaining = self._refs.get(key, 1) - 1
            if remaining <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._refs[key] = remaining

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = await self._get(key)
        try:
            async with lock:
                yield
        finally:
            await self._put(key)


_scan_locks: Dict[int, asyncio.Lock] = {}


def get_scan_lock() -> asyncio.Lock:
    """Lock serializing index scans (startup scan and on-demand rescans).

    Kept per event loop; asyncio locks cannot be shared between loops.
    """
    loop_id = id(asyncio.get_running_loop())
    lock = _scan_locks.get(loop_id)
    if lock is None:
        _scan_locks.clear()
        lock = asyncio.Lock()
        _scan_locks[loop_id] = lock
    return lock
