"""
FIFO asynchronous mutex for ledger critical sections.

Waiters are granted the lock strictly in arrival order. Ownership is handed
directly to the next waiter on release, so a newcomer can never jump the
queue between release and wake-up.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, TypeVar

T = TypeVar("T")


class AsyncMutex:
    """Single-owner cooperative lock with FIFO fairness."""

    def __init__(self):
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def queue_length(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if not self._locked:
            self._locked = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Cancelled after ownership was already handed over: pass it on.
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError("release() called on an unlocked AsyncMutex")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(True)
                return
        self._locked = False

    async def run_exclusive(self, fn: Callable[..., Awaitable[T]],
                            *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` while holding the lock; its result or error propagates."""
        await self.acquire()
        try:
            return await fn(*args, **kwargs)
        finally:
            self.release()

    async def __aenter__(self) -> "AsyncMutex":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
