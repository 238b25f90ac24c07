"""Single-slot debounce timer on the running event loop."""
from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger("nicc.debounce")


class Debouncer:
    """Runs ``callback`` once ``delay`` seconds after the most recent trigger().

    Each trigger() cancels the previously armed timer. Callback runs never
    overlap; a timer that fires while a run is in progress waits for it.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[object]]):
        self._delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def trigger(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.get_running_loop().create_task(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        async with self._lock:
            try:
                await self._callback()
            except Exception:
                logger.exception("Debounced callback failed")

    async def wait_idle(self) -> None:
        """Wait for callback runs that have already started."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
