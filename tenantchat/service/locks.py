from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class ChatLockRegistry:
    """Per-chat ``asyncio.Lock`` objects, created on demand.

    Holding a chat's lock serializes reconcile, stream and persist for that
    chat only. Entries are reference counted and dropped once no task holds
    or waits on them, so the registry does not grow with every chat ever seen.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, chat_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        self._waiters[chat_id] = self._waiters.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[chat_id] - 1
            if remaining:
                self._waiters[chat_id] = remaining
            else:
                self._waiters.pop(chat_id, None)
                self._locks.pop(chat_id, None)

    def is_locked(self, chat_id: str) -> bool:
        lock = self._locks.get(chat_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
