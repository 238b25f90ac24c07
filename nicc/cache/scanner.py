"""Streaming directory walk + bounded-concurrency stat pass."""
from __future__ import annotations
import asyncio
import errno
import logging
import os
import stat
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import aiofiles.os

from .limiter import ConcurrencyLimiter

logger = logging.getLogger("nicc.scanner")

DEFAULT_CONCURRENCY = 100


class CacheDirectoryError(OSError):
    """Cache root is missing, not a directory, or cannot be listed."""


@dataclass(frozen=True)
class FileRecord:
    path: str
    parent: str
    size: int
    created_at: float
    name: str


@dataclass
class CacheSnapshot:
    """Result of one full scan. Replaced wholesale on every scan."""

    files: list[FileRecord] = field(default_factory=list)
    total_size: int = 0

    def discard(self, target: str) -> None:
        """Drop records for ``target`` and anything beneath it."""
        prefix = target.rstrip(os.sep) + os.sep
        self.files = [
            f for f in self.files
            if f.path != target and not f.path.startswith(prefix)
        ]


def _list_directory(path: str) -> list[tuple[str, str, bool, bool]]:
    with os.scandir(path) as entries:
        return [
            (
                entry.path,
                entry.name,
                entry.is_dir(follow_symlinks=False),
                entry.is_file(follow_symlinks=False),
            )
            for entry in entries
        ]


def _created_at(st: os.stat_result) -> float:
    # Birth time is only reported on some platforms
    return getattr(st, "st_birthtime", st.st_ctime)


class DirectoryScanner:
    def __init__(self, root: str, concurrency_limit: int = DEFAULT_CONCURRENCY,
                 limiter: ConcurrencyLimiter | None = None):
        self._root = os.path.normpath(root)
        self._limiter = limiter or ConcurrencyLimiter(concurrency_limit)

    @property
    def root(self) -> str:
        return self._root

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def concurrency_limit(self) -> int:
        return self._limiter.limit

    @concurrency_limit.setter
    def concurrency_limit(self, value: int) -> None:
        self._limiter.limit = value

    async def ensure_root(self) -> None:
        if not await aiofiles.os.path.isdir(self._root):
            raise CacheDirectoryError(
                errno.ENOENT, "Cache directory does not exist or is not a directory", self._root
            )

    async def iter_files(self) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(path, name)`` for every regular file under the root.

        Directories are listed one at a time as the walk reaches them, so
        callers can start stat work before the walk is finished. Symlinks
        are never followed or yielded.
        """
        loop = asyncio.get_running_loop()
        pending = [self._root]
        while pending:
            directory = pending.pop()
            try:
                entries = await loop.run_in_executor(None, _list_directory, directory)
            except OSError as e:
                if directory == self._root:
                    raise CacheDirectoryError(e.errno, e.strerror, self._root) from e
                if isinstance(e, FileNotFoundError):
                    logger.debug('Directory "%s" vanished during scan', directory)
                else:
                    logger.warning('Cannot list directory "%s": %s', directory, e)
                continue
            for path, name, is_dir, is_file in entries:
                if is_dir:
                    pending.append(path)
                elif is_file:
                    yield path, name

    async def _stat_file(self, path: str, name: str) -> FileRecord | None:
        async with self._limiter:
            try:
                st = await aiofiles.os.stat(path)
            except FileNotFoundError:
                logger.debug('File "%s" disappeared before stat', path)
                return None
            except OSError as e:
                logger.warning('Cannot stat "%s": %s', path, e)
                return None
        if not stat.S_ISREG(st.st_mode):
            return None
        return FileRecord(
            path=path,
            parent=os.path.dirname(path),
            size=st.st_size,
            created_at=_created_at(st),
            name=name,
        )

    async def scan(self) -> CacheSnapshot:
        """Walk the root and stat every file; raises CacheDirectoryError."""
        await self.ensure_root()
        tasks: list[asyncio.Task[FileRecord | None]] = []
        try:
            async for path, name in self.iter_files():
                tasks.append(asyncio.create_task(self._stat_file(path, name)))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        snapshot = CacheSnapshot()
        for record in await asyncio.gather(*tasks):
            if record is None:
                continue
            snapshot.files.append(record)
            snapshot.total_size += record.size
        logger.debug(
            "Scanned %s: %d files, %d bytes", self._root, len(snapshot.files), snapshot.total_size
        )
        return snapshot

    async def total_size(self) -> int:
        snapshot = await self.scan()
        return snapshot.total_size
