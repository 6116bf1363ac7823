from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """One asyncio lock per key, created on demand and dropped once idle.

    ``hold`` acquires several keys in sorted order so that two callers asking
    for overlapping key sets cannot deadlock each other.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry.lock.locked())

    async def acquire(self, keys: Iterable[str]) -> List[str]:
        ordered = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                entry = self._entries.get(key)
                if entry is None:
                    entry = self._entries[key] = _Entry()
                entry.users += 1
                try:
                    await entry.lock.acquire()
                except BaseException:
                    self._release_user(key, entry)
                    raise
                acquired.append(key)
        except BaseException:
            self.release(acquired)
            raise
        return acquired

    def release(self, keys: Iterable[str]) -> None:
        for key in reversed(list(keys)):
            entry = self._entries.get(key)
            if entry is None:
                continue
            entry.lock.release()
            self._release_user(key, entry)

    def _release_user(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users <= 0 and self._entries.get(key) is entry:
            del self._entries[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[List[str]]:
        acquired = await self.acquire(keys)
        try:
            yield acquired
        finally:
            self.release(acquired)
