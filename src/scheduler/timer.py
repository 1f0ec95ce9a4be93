"""JobTimer — one-shot timers on the event loop, backed by APScheduler."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from src.config import settings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Disarm the timer. A no-op once it has fired or been cancelled."""
        ...


class JobTimer(Protocol):
    """Arms coroutine callbacks for absolute instants."""

    def start(self) -> None: ...

    def shutdown(self) -> None: ...

    def arm(
        self,
        key: str,
        run_at: datetime,
        callback: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> TimerHandle: ...


class _JobHandle:
    def __init__(self, scheduler: AsyncIOScheduler, job_id: str) -> None:
        self._scheduler = scheduler
        self._job_id = job_id

    @property
    def job_id(self) -> str:
        return self._job_id

    def cancel(self) -> None:
        try:
            self._scheduler.remove_job(self._job_id)
        except JobLookupError:
            logger.debug("Job %s already fired or removed", self._job_id)


class APSchedulerTimer:
    """JobTimer on top of an ``AsyncIOScheduler`` with ``DateTrigger`` jobs.

    Every arm gets its own job id (``<key>:<n>``) so a stale handle can never
    remove a newer job for the same key.  ``misfire_grace_time=None`` means a
    job that comes due while the loop was busy still runs, late.
    """

    def __init__(self, timezone: str | None = None) -> None:
        self._timezone = timezone or settings.scheduler_timezone
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._started = False
        self._counter = itertools.count(1)

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Timer started (tz=%s)", self._timezone)

    def shutdown(self) -> None:
        """Stop the current scheduler and replace it so ``start()`` works again.

        ``AsyncIOScheduler.shutdown()`` may only queue the stop on the loop,
        so the old instance is never restarted.
        """
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._started = False
        logger.info("Timer stopped")

    def arm(
        self,
        key: str,
        run_at: datetime,
        callback: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> _JobHandle:
        job_id = f"{key}:{next(self._counter)}"
        self._scheduler.add_job(
            callback,
            trigger=DateTrigger(run_date=run_at, timezone=self._timezone),
            id=job_id,
            name=key,
            args=list(args),
            misfire_grace_time=None,
        )
        logger.debug("Armed job %s for %s", job_id, run_at.isoformat())
        return _JobHandle(self._scheduler, job_id)

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]
