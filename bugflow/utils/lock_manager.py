import asyncio
from typing import Dict
from contextlib import asynccontextmanager


class LockManager:
    """Keyed async locks; serializes mutations of one execution inside a process."""

    def __init__(self):
        self.locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, resource_id: str):
        if resource_id not in self.locks:
            self.locks[resource_id] = asyncio.Lock()
            self._waiters[resource_id] = 0

        lock = self.locks[resource_id]
        self._waiters[resource_id] += 1
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._waiters[resource_id] -= 1
            # idle locks are dropped
            if self._waiters[resource_id] == 0:
                self.locks.pop(resource_id, None)
                self._waiters.pop(resource_id, None)

    def is_locked(self, resource_id: str) -> bool:
        lock = self.locks.get(resource_id)
        return bool(lock and lock.locked())


lock_manager = LockManager()
