"""Cron scheduling for the daily streak jobs."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

log = logging.getLogger(f"lockinbot.{__name__}")

Handler = Callable[[], Awaitable[Any]]


class CronScheduler:
    """Register coroutine handlers against five-field cron expressions.

    All expressions are interpreted in one timezone, the same one the
    calendar uses for day boundaries.
    """

    def __init__(self, tz_name: str) -> None:
        self.tz = pytz.timezone(tz_name)
        self.scheduler = AsyncIOScheduler(timezone=self.tz)

    def on_schedule(self, cron_expression: str, handler: Handler, *, name: str | None = None) -> str:
        """Run *handler* whenever *cron_expression* fires. Returns the job id."""
        trigger = CronTrigger.from_crontab(cron_expression, timezone=self.tz)
        job = self.scheduler.add_job(
            handler,
            trigger,
            id=name,
            name=name or handler.__name__,
            coalesce=True,
            max_instances=1,
            replace_existing=name is not None,
        )
        log.info("Scheduled %s with cron '%s' (%s)", job.name, cron_expression, self.tz.zone)
        return job.id

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
