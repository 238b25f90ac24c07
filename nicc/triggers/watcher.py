"""Watch-driven capacity check: new files -> debounced size check -> eviction."""
from __future__ import annotations
import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

import aiofiles.os
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..cache.units import bytes_to_kb
from .debounce import Debouncer

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver
    from ..cache.evictor import CacheEvictor

logger = logging.getLogger("nicc.watcher")

DEFAULT_DEPTH = 2
DEFAULT_DEBOUNCE_SECONDS = 0.5
DEFAULT_WRITE_SETTLE_SECONDS = 2.0
DEFAULT_WRITE_POLL_SECONDS = 0.1
DEFAULT_RETRY_SECONDS = 30.0


class _CreationHandler(FileSystemEventHandler):
    """Hands new files from the observer thread to the event loop.

    A file renamed into the tree counts as new at its destination.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, on_created: Callable[[str], None]):
        self._loop = loop
        self._on_created = on_created

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._loop.call_soon_threadsafe(self._on_created, os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._loop.call_soon_threadsafe(self._on_created, os.fsdecode(event.dest_path))


class LimitWatcher:
    def __init__(
        self,
        evictor: CacheEvictor,
        limit_bytes: int,
        *,
        depth: int = DEFAULT_DEPTH,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        write_settle_seconds: float = DEFAULT_WRITE_SETTLE_SECONDS,
        write_poll_seconds: float = DEFAULT_WRITE_POLL_SECONDS,
        retry_seconds: float = DEFAULT_RETRY_SECONDS,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ):
        self._evictor = evictor
        self._root = evictor.scanner.root
        self._limit_bytes = limit_bytes
        self._depth = depth
        self._write_settle_seconds = write_settle_seconds
        self._write_poll_seconds = write_poll_seconds
        self._retry_seconds = retry_seconds
        self._observer_factory = observer_factory
        self._observer: Optional[BaseObserver] = None
        self._retry_task: Optional[asyncio.Task[None]] = None
        self._debouncer = Debouncer(debounce_seconds, self.check)
        self._settling: set[asyncio.Task[None]] = set()

    @property
    def limit_bytes(self) -> int:
        return self._limit_bytes

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    @property
    def watching(self) -> bool:
        return self._observer is not None

    async def start(self) -> bool:
        """Start watching. If the root cannot be watched yet, keep retrying in the background."""
        if self._observer is not None or self._retry_task is not None:
            return self._observer is not None
        logger.debug(
            "Cleaning directory by size limit: %d bytes (depth=%d, debounce=%.2fs)",
            self._limit_bytes, self._depth, self._debouncer.delay,
        )
        if self._start_observer():
            return True
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_start())
        return False

    def _start_observer(self) -> bool:
        loop = asyncio.get_running_loop()
        observer = self._observer_factory()
        try:
            observer.schedule(_CreationHandler(loop, self.on_file_created), self._root, recursive=True)
            observer.start()
        except OSError as e:
            logger.error('Cannot watch "%s": %s', self._root, e)
            return False
        self._observer = observer
        logger.debug('File watcher started on "%s"', self._root)
        return True

    async def _retry_start(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._retry_seconds)
                if self._start_observer():
                    logger.info('File watcher started on "%s" after retrying', self._root)
                    return
        finally:
            self._retry_task = None

    async def stop(self) -> None:
        retry, self._retry_task = self._retry_task, None
        if retry is not None:
            retry.cancel()
            await asyncio.gather(retry, return_exceptions=True)
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join)
        for task in list(self._settling):
            task.cancel()
        await asyncio.gather(*list(self._settling), return_exceptions=True)
        await self._debouncer.close()

    def _within_depth(self, path: str) -> bool:
        rel = Path(os.path.relpath(path, self._root))
        if rel.parts[:1] == ("..",):
            return False
        return len(rel.parts) - 1 <= self._depth

    def on_file_created(self, path: str) -> None:
        """Event-loop side of a creation event."""
        if not self._within_depth(path):
            return
        logger.debug('File "%s" has been created', path)
        task = asyncio.get_running_loop().create_task(self._settle_then_trigger(path))
        self._settling.add(task)
        task.add_done_callback(self._settling.discard)

    async def _settle_then_trigger(self, path: str) -> None:
        if await self._wait_for_write_finish(path):
            self._debouncer.trigger()

    async def _wait_for_write_finish(self, path: str) -> bool:
        """Poll the file size until it stops changing. False if the file went away."""
        if self._write_settle_seconds <= 0:
            return True
        loop = asyncio.get_running_loop()
        last_size = -1
        stable_since = loop.time()
        while True:
            try:
                st = await aiofiles.os.stat(path)
            except FileNotFoundError:
                logger.debug('File "%s" removed before its write finished', path)
                return False
            now = loop.time()
            if st.st_size != last_size:
                last_size = st.st_size
                stable_since = now
            elif now - stable_since >= self._write_settle_seconds:
                return True
            await asyncio.sleep(self._write_poll_seconds)

    async def check(self) -> Optional[int]:
        released = await self._evictor.run_capacity_pass(self._limit_bytes)
        if released:
            logger.info("[LIMIT WATCHER] %d Kb has been released.", bytes_to_kb(released))
        return released
