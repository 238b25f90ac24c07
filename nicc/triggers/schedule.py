"""Cron-driven TTL eviction."""
from __future__ import annotations
import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..cache.units import bytes_to_kb

if TYPE_CHECKING:
    from ..cache.evictor import CacheEvictor

logger = logging.getLogger("nicc.schedule")

_CRON_FIELDS = ("minute", "hour", "day", "month", "day_of_week")

# crontab numbering: 0 and 7 are both Sunday
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_NUMERIC_WEEKDAY_RE = re.compile(r"(\*|\d+)(?:-(\d+))?(?:/(\d+))?")


def _weekday_part_to_names(part: str) -> list[str]:
    m = _NUMERIC_WEEKDAY_RE.fullmatch(part)
    if m is None:
        # names such as mon-fri are understood by APScheduler as-is
        return [part]
    first, last, step = m.groups()
    if first == "*":
        start, end = 0, 6
    else:
        start = int(first)
        end = int(last) if last is not None else (6 if step is not None else start)
    step_value = int(step) if step is not None else 1
    if not (0 <= start <= 7 and 0 <= end <= 7) or start > end or step_value < 1:
        raise ValueError(f"Invalid day of week {part!r}")
    days = sorted({d % 7 for d in range(start, end + 1, step_value)})
    return [_WEEKDAY_NAMES[d] for d in days]


def _translate_day_of_week(value: str) -> str:
    """Rewrite numeric crontab weekdays into the names APScheduler expects."""
    if value == "*":
        return value
    names: list[str] = []
    for part in value.split(","):
        for name in _weekday_part_to_names(part):
            if name not in names:
                names.append(name)
    return ",".join(names)


def parse_cron(expression: str, timezone=None) -> CronTrigger:
    """Build a trigger from a 5-field crontab line or a 6-field one with leading seconds."""
    values = expression.split()
    if len(values) == 5:
        fields = _CRON_FIELDS
    elif len(values) == 6:
        fields = ("second",) + _CRON_FIELDS
    else:
        raise ValueError(
            f"Wrong number of fields in cron expression {expression!r}; "
            f"got {len(values)}, expected 5 or 6"
        )
    kwargs = dict(zip(fields, values))
    kwargs["day_of_week"] = _translate_day_of_week(kwargs["day_of_week"])
    return CronTrigger(timezone=timezone, **kwargs)


def validate_cron_string(expression: str) -> bool:
    try:
        parse_cron(expression)
    except ValueError:
        return False
    return True


class ScheduledEviction:
    JOB_ID = "nicc_ttl_eviction"

    def __init__(self, evictor: CacheEvictor, cron_string: str,
                 scheduler: AsyncIOScheduler | None = None):
        self._evictor = evictor
        self._cron_string = cron_string
        self._trigger = parse_cron(cron_string)
        self._scheduler = scheduler or AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
            }
        )
        self._started = False

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(self.JOB_ID)
        return job.next_run_time if job else None

    def start(self) -> None:
        """Register the TTL job. Must be called from inside the running loop."""
        if self._started:
            return
        logger.debug('Cron cleaning with "%s" configuration string', self._cron_string)
        self._scheduler.add_job(
            self.tick, self._trigger, id=self.JOB_ID, replace_existing=True
        )
        self._scheduler.start()
        self._started = True

    def shutdown(self) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._started = False

    async def tick(self) -> Optional[int]:
        # Skip the extra full scan when nobody will see it
        if logger.isEnabledFor(logging.DEBUG):
            try:
                total = await self._evictor.scanner.total_size()
                logger.debug("Current folder size: %d Kb.", bytes_to_kb(total))
            except OSError as e:
                logger.debug("Could not measure folder size: %s", e)

        try:
            deleted = await self._evictor.run_ttl_pass()
        except Exception:
            logger.exception("[CRON] TTL eviction failed")
            return None
        if deleted is not None:
            logger.info("[CRON] Has been deleted %d directories.", deleted)
        return deleted
