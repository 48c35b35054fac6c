import asyncio
from datetime import datetime, timezone

import pytest

from lockinbot.scheduler import CronScheduler


async def _handler() -> None:
    return None


def test_on_schedule_uses_calendar_timezone():
    scheduler = CronScheduler("Asia/Manila")
    job_id = scheduler.on_schedule("59 23 * * *", _handler, name="streak_evaluation")
    job = scheduler.scheduler.get_job(job_id)
    assert job.name == "streak_evaluation"

    now = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
    next_run = job.trigger.get_next_fire_time(None, now)
    # 23:59 Manila is 15:59 UTC
    assert next_run.astimezone(timezone.utc) == datetime(2026, 3, 10, 15, 59, tzinfo=timezone.utc)


def test_on_schedule_rejects_bad_expression():
    scheduler = CronScheduler("Asia/Manila")
    with pytest.raises(ValueError):
        scheduler.on_schedule("every day", _handler)


def test_start_and_shutdown():
    async def run():
        scheduler = CronScheduler("UTC")
        scheduler.on_schedule("0 20 * * *", _handler)
        scheduler.start()
        running = scheduler.scheduler.running
        scheduler.shutdown()
        # Newer APScheduler releases finish shutting down on the next loop pass
        await asyncio.sleep(0.05)
        return running, scheduler.scheduler.running

    assert asyncio.run(run()) == (True, False)
