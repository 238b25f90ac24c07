"""Cache eviction: embedded-TTL expiry and oldest-first capacity trimming."""
from __future__ import annotations
import asyncio
import logging
import os
import re
import shutil
import time

from .scanner import CacheDirectoryError, CacheSnapshot, DirectoryScanner, FileRecord

logger = logging.getLogger("nicc.evictor")

# <id>.<expiresAtMs>.<ext>, as written by the Next.js image optimizer
_EXPIRY_RE = re.compile(r"[0-9]+")


def parse_expiry(file_name: str) -> int | None:
    """Return the expiry (epoch ms) encoded in a cache file name, or None."""
    parts = file_name.split(".")
    if len(parts) >= 2 and _EXPIRY_RE.fullmatch(parts[1]):
        return int(parts[1])
    logger.warning("Could not parse expiration from fileName: %s", file_name)
    return None


def _remove_path(target: str) -> None:
    try:
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target)
        else:
            os.remove(target)
    except FileNotFoundError:
        pass


class CacheEvictor:
    def __init__(self, scanner: DirectoryScanner):
        self._scanner = scanner

    @property
    def scanner(self) -> DirectoryScanner:
        return self._scanner

    def _deletion_target(self, record: FileRecord) -> str:
        # Never remove the cache root itself
        if os.path.normpath(record.parent) == self._scanner.root:
            return record.path
        return record.parent

    async def _delete(self, target: str) -> bool:
        loop = asyncio.get_running_loop()
        async with self._scanner.limiter:
            try:
                await loop.run_in_executor(None, _remove_path, target)
            except OSError as e:
                logger.error('Failed to delete "%s": %s', target, e)
                return False
        logger.debug('Directory "%s" has been deleted.', target)
        return True

    async def _delete_all(self, targets: list[str]) -> int:
        results = await asyncio.gather(
            *(self._delete(t) for t in targets), return_exceptions=True
        )
        deleted = 0
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error('Failed to delete "%s": %r', target, result)
            elif result:
                deleted += 1
        return deleted

    async def delete_outdated(self, snapshot: CacheSnapshot, now_ms: int | None = None) -> int:
        """Delete the cache entry of every file whose embedded expiry has passed.

        Returns the number of entries scheduled for deletion. Per-entry
        failures are logged and do not change the count.
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)

        targets: dict[str, None] = {}
        for record in list(snapshot.files):
            expires_at = parse_expiry(record.name)
            if expires_at is None or expires_at >= now_ms:
                continue
            target = self._deletion_target(record)
            if target in targets:
                continue
            targets[target] = None
            snapshot.discard(target)

        deleted = await self._delete_all(list(targets))
        if deleted != len(targets):
            logger.warning("%d of %d expired entries could not be deleted",
                           len(targets) - deleted, len(targets))
        return len(targets)

    async def delete_over_limit(self, snapshot: CacheSnapshot, limit: int) -> int:
        """Delete oldest entries until at least ``total_size - limit`` bytes are freed.

        Returns the number of bytes scheduled for deletion.
        """
        excess = snapshot.total_size - limit
        if excess <= 0:
            logger.debug("No excess, returning 0 bytes")
            return 0

        oldest_first = sorted(snapshot.files, key=lambda f: f.created_at)
        targets: dict[str, None] = {}
        freed = 0
        for record in oldest_first:
            targets.setdefault(self._deletion_target(record))
            freed += record.size
            if freed >= excess:
                break

        for target in targets:
            snapshot.discard(target)
        snapshot.total_size = sum(f.size for f in snapshot.files)
        await self._delete_all(list(targets))
        return freed

    async def run_ttl_pass(self) -> int | None:
        try:
            snapshot = await self._scanner.scan()
        except CacheDirectoryError as e:
            logger.error("TTL pass aborted, scan failed: %s", e)
            return None
        return await self.delete_outdated(snapshot)

    async def run_capacity_pass(self, limit: int) -> int | None:
        try:
            snapshot = await self._scanner.scan()
        except CacheDirectoryError as e:
            logger.error("Capacity pass aborted, scan failed: %s", e)
            return None
        if snapshot.total_size < limit:
            logger.debug("Cache size %d below limit %d", snapshot.total_size, limit)
            return 0
        return await self.delete_over_limit(snapshot, limit)
