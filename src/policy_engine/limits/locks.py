"""Per-key asyncio locks.

One lock per account (or per idempotency reference), created lazily and
dropped once no task holds or waits for it, so the registry does not grow
with the number of accounts ever seen. Different keys never contend.

Locks are reentrant per task: a coroutine that already holds a key may
enter it again, which lets an outer operation hold an account for its whole
unit of work while inner components lock the same account themselves.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """Registry of task-reentrant asyncio locks keyed by string."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, asyncio.Task] = {}
        self._users: dict[str, int] = {}

    def is_held(self, key: str) -> bool:
        return key in self._owners

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        task = asyncio.current_task()
        if task is not None and self._owners.get(key) is task:
            yield
            return

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                if task is not None:
                    self._owners[key] = task
                try:
                    yield
                finally:
                    self._owners.pop(key, None)
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_many(self, keys: list[str]) -> AsyncIterator[None]:
        """Hold several keys, acquired in sorted order to avoid lock cycles."""
        ordered = sorted(set(keys))
        async with _nested(self, ordered):
            yield


@asynccontextmanager
async def _nested(locks: KeyedLocks, keys: list[str]) -> AsyncIterator[None]:
    if not keys:
        yield
        return
    async with locks.hold(keys[0]):
        async with _nested(locks, keys[1:]):
            yield
