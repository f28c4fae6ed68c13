"""Counting permit pool that bounds concurrent encode pipelines."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Fixed-capacity permit pool.

    Waiters are woken in arrival order and a permit is never handed to a task
    that arrives while others are already queued.
    """

    def __init__(self, capacity: int = 2):
        if capacity < 1:
            raise ValueError(f"Limiter capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_use = 0
        self._waiting = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def waiting(self) -> int:
        return self._waiting

    async def acquire(self) -> None:
        """Wait until a permit is free and take it."""
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._in_use += 1

    def release(self) -> None:
        """Return one permit, waking the longest-waiting acquirer."""
        if self._in_use == 0:
            raise RuntimeError("ConcurrencyLimiter released more times than acquired")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def __repr__(self) -> str:
        return (
            f"<ConcurrencyLimiter in_use={self._in_use}/{self._capacity} "
            f"waiting={self._waiting}>"
        )
