import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager


class OrderLocks:
    """Per-order mutual exclusion within one process.

    Different orders never share a lock. An entry is dropped as soon as no
    coroutine holds or waits on it, so the registry does not grow with the
    number of orders ever seen.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, order_id: str):
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._users[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[order_id] -= 1
            if not self._users[order_id]:
                del self._users[order_id]
                del self._locks[order_id]

    def __len__(self):
        return len(self._locks)
