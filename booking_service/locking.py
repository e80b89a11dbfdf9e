import asyncio
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class ScopeLocks:
    """
    One asyncio.Lock per calendar scope key (e.g. "provider:42").

    Serializes confirmations and reschedules for the same calendar inside this
    process; lock_scope_in_transaction covers other worker processes. A key's
    lock is dropped once nobody holds or waits on it.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def _acquire_entry(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_entry(self, key: str):
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
            return
        del self._users[key]
        del self._locks[key]

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._acquire_entry(key)
        try:
            async with lock:
                yield
        finally:
            self._release_entry(key)

    def __len__(self) -> int:
        return len(self._locks)


async def lock_scope_in_transaction(db: AsyncSession, key: str):
    """Transaction-scoped database lock on the calendar, released at commit/rollback."""
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})
