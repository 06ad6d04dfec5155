"""Celery beat scheduler backed by the cronjobs table."""

from __future__ import annotations

import asyncio
import os
import time
from typing import Any

from celery.beat import ScheduleEntry, Scheduler
from celery.schedules import crontab

from portfolio_risk.core.logging import get_logger
from portfolio_risk.jobs.job_defaults import DEFAULT_SCHEDULES, get_job_priority, validate_cron


logger = get_logger("jobs.celery_scheduler")

# Dedicated event loop for Celery Beat async operations
_beat_loop: asyncio.AbstractEventLoop | None = None


def _get_beat_loop() -> asyncio.AbstractEventLoop:
    """Get or create a dedicated event loop for beat scheduler."""
    global _beat_loop
    if _beat_loop is None or _beat_loop.is_closed():
        _beat_loop = asyncio.new_event_loop()
    return _beat_loop


def _run_async(coro: Any) -> Any:
    """Run async coroutine in the dedicated beat loop."""
    loop = _get_beat_loop()
    return loop.run_until_complete(coro)


def cron_to_crontab(expr: str) -> crontab:
    minute, hour, day_of_month, month_of_year, day_of_week = validate_cron(expr).split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
    )


def _load_cronjobs() -> list[Any]:
    from portfolio_risk.repositories import jobs_orm as jobs_repo

    return _run_async(jobs_repo.list_cronjobs(include_inactive=False))


def _seed_cronjobs() -> int:
    from portfolio_risk.repositories import jobs_orm as jobs_repo

    return _run_async(jobs_repo.seed_cronjobs(DEFAULT_SCHEDULES))


class DatabaseScheduler(Scheduler):
    """Celery beat scheduler that reloads cronjobs from the database.

    Schedules edited through the admin API take effect on the next reload.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._last_reload = 0.0
        self._reload_interval = int(os.getenv("CELERY_CRON_SYNC_SECONDS", "60"))
        super().__init__(*args, **kwargs)

    def setup_schedule(self) -> None:
        import portfolio_risk.jobs.definitions  # noqa: F401 - register jobs

        try:
            seeded = _seed_cronjobs()
            if seeded:
                logger.info(f"Seeded {seeded} cronjobs")
        except Exception as exc:
            logger.warning(f"Failed to seed cronjobs: {exc}")

        self._reload_schedule()

    def _reload_schedule(self) -> None:
        try:
            jobs = _load_cronjobs()
        except Exception as exc:
            logger.warning(f"Failed to load cronjobs: {exc}")
            return

        schedule: dict[str, ScheduleEntry] = {}
        for job in jobs:
            try:
                schedule[job.name] = ScheduleEntry(
                    name=job.name,
                    task=f"jobs.{job.name}",
                    schedule=cron_to_crontab(job.cron),
                    args=(),
                    kwargs={},
                    options=get_job_priority(job.name),
                    last_run_at=self.app.now(),
                    total_run_count=0,
                    app=self.app,
                )
            except Exception as exc:
                logger.warning(f"Skipping cronjob {job.name}: {exc}")

        self.schedule = schedule
        self._last_reload = time.monotonic()
        logger.info(f"Loaded {len(schedule)} cronjobs from database")

    def tick(self, *args: Any, **kwargs: Any) -> float:
        if time.monotonic() - self._last_reload > self._reload_interval:
            self._reload_schedule()
        return super().tick(*args, **kwargs)
