"""CacheCleaner: wires settings to the cron and size-limit triggers."""
from __future__ import annotations
import asyncio
import logging

from .config import Settings
from .cache.evictor import CacheEvictor
from .cache.scanner import DirectoryScanner
from .triggers.schedule import ScheduledEviction
from .triggers.watcher import LimitWatcher

logger = logging.getLogger("nicc.cleaner")


class CacheCleaner:
    def __init__(self, settings: Settings):
        self._settings = settings
        self._scheduled: ScheduledEviction | None = None
        self._watcher: LimitWatcher | None = None

        # Each trigger gets its own scanner so their snapshots never mix
        if settings.by_cron and settings.cron_string:
            self._scheduled = ScheduledEviction(
                self._make_evictor(), settings.cron_string
            )
        if settings.by_fullness and settings.limit_bytes is not None:
            self._watcher = LimitWatcher(
                self._make_evictor(),
                settings.limit_bytes,
                depth=settings.watch_depth,
                debounce_seconds=settings.debounce_seconds,
                write_settle_seconds=settings.write_settle_seconds,
                write_poll_seconds=settings.write_poll_seconds,
                retry_seconds=settings.watch_retry_seconds,
            )

    def _make_evictor(self) -> CacheEvictor:
        scanner = DirectoryScanner(
            self._settings.directory_path,
            concurrency_limit=self._settings.concurrency_limit,
        )
        return CacheEvictor(scanner)

    @property
    def scheduled(self) -> ScheduledEviction | None:
        return self._scheduled

    @property
    def watcher(self) -> LimitWatcher | None:
        return self._watcher

    @property
    def modes(self) -> list[str]:
        mods = []
        if self._scheduled is not None:
            mods.append("byCron")
        if self._watcher is not None:
            mods.append("byFullnessPercent")
        return mods

    async def start(self) -> None:
        """Run the configured triggers until cancelled."""
        logger.info("Starting image cache cleaner")
        if not self.modes:
            logger.warning("No cleaning mode configured: set a cron string and/or size + fullness percent")
            return
        logger.info("Activated mods: %s.", " & ".join(self.modes))
        logger.info('Watching directory: "%s"', self._settings.directory_path)
        if self._watcher is not None:
            logger.debug(
                "Directory limit: %d bytes (%s of %d bytes)",
                self._watcher.limit_bytes,
                self._settings.fullness_percent,
                self._settings.capacity_bytes,
            )

        try:
            if self._scheduled is not None:
                self._scheduled.start()
            if self._watcher is not None:
                await self._watcher.start()
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._scheduled is not None:
            self._scheduled.shutdown()
        if self._watcher is not None:
            await self._watcher.stop()
        logger.info("Image cache cleaner stopped")
