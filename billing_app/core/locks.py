import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

logger = logging.getLogger(__name__)


class AgreementLockRegistry:
    """One ``asyncio.Lock`` per agreement id.

    Locks are held in a weak-value map, so an entry disappears once no
    coroutine is holding or waiting on it. This only serialises writers inside
    one process; the ``SELECT ... FOR UPDATE`` taken by the repository covers
    separate workers.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: Hashable) -> asyncio.Lock:
        name = str(key)
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[asyncio.Lock]:
        lock = self.get(key)
        async with lock:
            yield lock

    def __len__(self):
        return len(self._locks)


agreement_locks = AgreementLockRegistry()
