# app/services/keyed_lock.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Hashable


@dataclass
class _Entry:
    lock: asyncio.Lock
    holders: int = 0


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when no task
    holds or waits for it.

    Used to serialize every mutation of a (meeting_id, identity_key) session
    without a global lock: unrelated keys never wait on each other.
    """

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(lock=asyncio.Lock())
            self._entries[key] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
