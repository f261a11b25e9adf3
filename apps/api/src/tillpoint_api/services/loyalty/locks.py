"""Per-account asyncio locks."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from threading import Lock
from typing import AsyncIterator, Dict
from uuid import UUID
from weakref import WeakKeyDictionary


@dataclass(slots=True)
class _LockEntry:
    lock: asyncio.Lock
    holders: int = 0


class AccountLockRegistry:
    """Hands out one ``asyncio.Lock`` per account per event loop.

    Entries are reference counted and dropped once no coroutine holds or waits
    on them, so the registry only grows with the number of accounts in flight.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._loops: "WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, _LockEntry]]" = WeakKeyDictionary()

    @asynccontextmanager
    async def hold(self, account_id: UUID | str) -> AsyncIterator[None]:
        key = str(account_id)
        loop = asyncio.get_running_loop()
        with self._guard:
            locks = self._loops.get(loop)
            if locks is None:
                locks = {}
                self._loops[loop] = locks
            entry = locks.get(key)
            if entry is None:
                entry = _LockEntry(lock=asyncio.Lock())
                locks[key] = entry
            entry.holders += 1

        try:
            async with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0 and locks.get(key) is entry:
                    del locks[key]

    def active_count(self) -> int:
        with self._guard:
            return sum(len(locks) for locks in self._loops.values())


_REGISTRY = AccountLockRegistry()


def get_account_lock_registry() -> AccountLockRegistry:
    return _REGISTRY


__all__ = ["AccountLockRegistry", "get_account_lock_registry"]
