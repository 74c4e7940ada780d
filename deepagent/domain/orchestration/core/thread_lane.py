from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional
import asyncio

import structlog

from deepagent.domain.models.errors import LoopCancelled

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked at the loop's safe points"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str):
        if self.cancelled:
            raise LoopCancelled(f"Loop cancelled before {where}: {self.reason}", safe_point=where)


class ThreadLane:
    """Serializes work per thread_id; distinct threads run concurrently"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._usage: Dict[str, int] = {}
        self._lock_registry = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        async with self._lock_registry:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = self._locks[thread_id] = asyncio.Lock()
                self._usage[thread_id] = 0
            self._usage[thread_id] += 1

        if self.is_busy(thread_id):
            logger.debug("Waiting for thread lane", thread_id=thread_id)

        try:
            async with lock:
                yield
        finally:
            async with self._lock_registry:
                self._usage[thread_id] -= 1
                # Drop the lock once nobody holds or waits on it
                if self._usage[thread_id] <= 0:
                    self._locks.pop(thread_id, None)
                    self._usage.pop(thread_id, None)

    def is_busy(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()

    @property
    def active_threads(self) -> int:
        return len(self._locks)
