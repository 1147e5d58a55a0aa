import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional


class ClientLockRegistry:
    """
    One asyncio.Lock per client id.

    Mutating ledger operations read and rewrite a client's whole payment
    set, so they are serialized per client rather than per invoice.
    Read-only queries never take these locks. A lock is dropped once its
    last holder or waiter is done with it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def lock_for(self, client_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            # asyncio locks belong to the loop that first waits on them
            self._locks = {}
            self._users = {}
            self._loop = loop
        lock = self._locks.get(client_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[client_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *client_ids: str):
        """Hold the locks of every given client, acquired in sorted order."""
        acquired = []
        try:
            for cid in sorted(set(client_ids)):
                lock = self.lock_for(cid)
                self._users[cid] = self._users.get(cid, 0) + 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._forget(cid, lock)
                    raise
                acquired.append((cid, lock))
            yield
        finally:
            for cid, lock in reversed(acquired):
                lock.release()
                self._forget(cid, lock)

    def _forget(self, client_id: str, lock: asyncio.Lock):
        """Drop one user of a lock, and the lock itself when it was the last."""
        remaining = self._users.get(client_id, 1) - 1
        if remaining > 0:
            self._users[client_id] = remaining
        elif self._locks.get(client_id) is lock:
            del self._locks[client_id]
            self._users.pop(client_id, None)


client_locks = ClientLockRegistry()
