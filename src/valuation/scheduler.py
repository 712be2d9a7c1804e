from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger


REFRESH_JOB_ID = "scheduled_refresh"


def build_refresh_scheduler(cron_expr: str, job_fn, timezone: str = "UTC") -> AsyncIOScheduler:
    fields = cron_expr.split()
    if len(fields) != 5:
        raise ValueError("Cron must have 5 fields: min hour day month day_of_week")
    minute, hour, day, month, day_of_week = fields
    scheduler = AsyncIOScheduler(timezone=timezone)
    scheduler.add_job(
        job_fn,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        ),
        id=REFRESH_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
