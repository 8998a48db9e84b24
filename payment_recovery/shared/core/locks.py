"""
Per-subscription serialization point.

Every mutating recovery operation on a subscription runs while holding that
subscription's lock, so a redelivered webhook or a duplicate timer cannot
interleave with an in-flight retry. Different subscriptions never contend.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict
from uuid import UUID
import structlog

logger = structlog.get_logger()


class SubscriptionLockRegistry:
    """Keyed asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[UUID, asyncio.Lock] = {}
        self._waiters: Dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, subscription_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.get(subscription_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscription_id] = lock
        self._waiters[subscription_id] = self._waiters.get(subscription_id, 0) + 1

        if lock.locked():
            logger.debug("subscription_lock_contended", subscription_id=str(subscription_id))

        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[subscription_id] - 1
            if remaining:
                self._waiters[subscription_id] = remaining
            else:
                del self._waiters[subscription_id]
                del self._locks[subscription_id]

    def is_held(self, subscription_id: UUID) -> bool:
        lock = self._locks.get(subscription_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
