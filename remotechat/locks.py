"""Per-key asyncio locks that do not outlive their users."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """One asyncio.Lock per key.

    A key's lock exists only while some task holds it or waits for it,
    so keys seen once (conversation keys, rotated-out credentials) do not
    accumulate. Entry bookkeeping never straddles an await.
    """

    def __init__(self):
        self._entries: dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]
