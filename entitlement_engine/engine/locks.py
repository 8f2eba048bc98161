"""
Per-account serialization of policy list updates.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple


class AccountLockRegistry:
    """
    Hands out one ``asyncio.Lock`` per (project, account).

    Holding the lock across the read-modify-write of an account's policy
    list keeps concurrent approvals and removals in this process from
    losing each other's updates. It gives no protection across processes.

    A lock only lives while some task holds or waits for it, so the
    registry does not grow with the number of accounts ever touched.
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._waiters: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def lock(self, project_id: str, account_id: str) -> AsyncIterator[None]:
        key = (project_id, account_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
            self._waiters[key] = 0
        account_lock = self._locks[key]
        self._waiters[key] += 1
        try:
            async with account_lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._locks[key]
                del self._waiters[key]

    def __len__(self) -> int:
        return len(self._locks)
