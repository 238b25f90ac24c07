"""Adjustable concurrency gate for filesystem work."""
from __future__ import annotations
import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


def _check_limit(limit: int) -> int:
    if limit < 1:
        raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
    return limit


class ConcurrencyLimiter:
    """Admits at most ``limit`` holders at once.

    Unlike ``asyncio.Semaphore`` the bound can be changed while work is in
    flight. Raising it wakes queued waiters right away; lowering it lets
    current holders finish and only admits new ones once the active count
    drops below the new bound.
    """

    def __init__(self, limit: int = 100):
        self._limit = _check_limit(limit)
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @limit.setter
    def limit(self, value: int) -> None:
        self._limit = _check_limit(value)
        self._wake()

    @property
    def active(self) -> int:
        return self._active

    async def acquire(self) -> None:
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was granted just before cancellation
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        self._active -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._active < self._limit:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._active += 1
            fut.set_result(None)

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        async with self:
            return await fn(*args)

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()
