"""
services/periodic.py
Periodic-task abstraction over APScheduler's AsyncIOScheduler.

A PeriodicTask is one job with start / stop / reconfigure. Jobs never
overlap (max_instances=1) and missed firings are coalesced into at most
one, so nothing is ever queued up behind a slow run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

from utils.logger import get_logger

log = get_logger("lanwatch.periodic")

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


def create_scheduler() -> AsyncIOScheduler:
    """AsyncIOScheduler bound to the loop that later calls ``start()``."""
    return AsyncIOScheduler(timezone="UTC", job_defaults=dict(JOB_DEFAULTS))


def next_fire_time(trigger: BaseTrigger) -> Optional[datetime]:
    """When ``trigger`` would fire next if it were scheduled right now."""
    return trigger.get_next_fire_time(None, datetime.now(timezone.utc))


class PeriodicTask:
    """One named job on a shared AsyncIOScheduler."""

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        job_id: str,
        func: Callable[[], Awaitable[Any]],
        name: Optional[str] = None,
    ):
        self._scheduler = scheduler
        self.job_id = job_id
        self._func = func
        self._name = name or job_id

    def start(self, trigger: BaseTrigger) -> None:
        self._scheduler.add_job(
            self._func,
            trigger=trigger,
            id=self.job_id,
            name=self._name,
            replace_existing=True,
        )
        log.debug(f"{self._name}: scheduled ({trigger})")

    def stop(self) -> None:
        if self._scheduler.get_job(self.job_id) is not None:
            self._scheduler.remove_job(self.job_id)
            log.debug(f"{self._name}: unscheduled")

    def reconfigure(self, trigger: BaseTrigger) -> None:
        """Replace the trigger; the old timer never fires again."""
        self.stop()
        self.start(trigger)

    @property
    def active(self) -> bool:
        return self._scheduler.get_job(self.job_id) is not None

    @property
    def next_run_time(self):
        job = self._scheduler.get_job(self.job_id)
        # pending jobs (scheduler not started yet) have no next run time
        return getattr(job, "next_run_time", None) if job is not None else None


__all__ = ["PeriodicTask", "create_scheduler", "next_fire_time", "JOB_DEFAULTS"]
