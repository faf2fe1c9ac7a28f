"""Per-user mutation locks.

Subscription mutations are read-modify-write on a single row. Holding the
user's lock for the whole mutation serializes concurrent requests for the same
user inside this process; the row is additionally read FOR UPDATE so separate
processes serialize at the database.
"""

import asyncio
import uuid as uuid_pkg
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from weakref import WeakValueDictionary

# Entries disappear once no coroutine holds or waits on the lock
_locks: WeakValueDictionary[uuid_pkg.UUID, asyncio.Lock] = WeakValueDictionary()


def _lock_for(user_id: uuid_pkg.UUID) -> asyncio.Lock:
    lock = _locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[user_id] = lock
    return lock


@asynccontextmanager
async def user_lock(user_id: uuid_pkg.UUID) -> AsyncIterator[None]:
    """Serialize subscription mutations for one user."""
    lock = _lock_for(user_id)
    async with lock:
        yield
