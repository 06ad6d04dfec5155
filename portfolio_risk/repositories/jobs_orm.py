"""Scheduled job configuration and run history repository.

Usage:
    from portfolio_risk.repositories import jobs_orm as jobs_repo

    run_id = await jobs_repo.start_run("recompute_stale")
    await jobs_repo.finish_run(run_id, "success", items_processed=12)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert

from portfolio_risk.core.logging import get_logger
from portfolio_risk.database.connection import get_session
from portfolio_risk.database.orm import CronJob as CronJobORM
from portfolio_risk.database.orm import JobRun

logger = get_logger("repositories.jobs_orm")

ERROR_MESSAGE_LIMIT = 1000


class CronJobConfig:
    """Cron job configuration with aggregate status."""

    def __init__(
        self,
        name: str,
        cron: str,
        description: str | None = None,
        is_active: bool = True,
        max_duration_minutes: int = 30,
        last_run: datetime | None = None,
        last_status: str | None = None,
        last_duration_ms: int | None = None,
        run_count: int = 0,
        error_count: int = 0,
        last_error: str | None = None,
    ):
        self.name = name
        self.cron = cron
        self.description = description
        self.is_active = is_active
        self.max_duration_minutes = max_duration_minutes
        self.last_run = last_run
        self.last_status = last_status
        self.last_duration_ms = last_duration_ms
        self.run_count = run_count
        self.error_count = error_count
        self.last_error = last_error

    @classmethod
    def from_orm(cls, job: CronJobORM) -> "CronJobConfig":
        return cls(
            name=job.name,
            cron=job.cron,
            description=job.description,
            is_active=job.is_active,
            max_duration_minutes=job.max_duration_minutes or 30,
            last_run=job.last_run,
            last_status=job.last_status,
            last_duration_ms=job.last_duration_ms,
            run_count=job.run_count or 0,
            error_count=job.error_count or 0,
            last_error=job.last_error,
        )


def _run_to_dict(run: JobRun) -> dict[str, Any]:
    """Convert ORM model to dictionary."""
    return {
        "id": run.id,
        "job_name": run.job_name,
        "status": run.status,
        "trigger": run.trigger,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "duration_ms": run.duration_ms,
        "items_processed": run.items_processed,
        "items_failed": run.items_failed,
        "message": run.message,
        "error_message": run.error_message,
    }


# =============================================================================
# Cron jobs
# =============================================================================


async def list_cronjobs(include_inactive: bool = True) -> List[CronJobConfig]:
    async with get_session() as session:
        stmt = select(CronJobORM).order_by(CronJobORM.name)
        if not include_inactive:
            stmt = stmt.where(CronJobORM.is_active == True)  # noqa: E712
        result = await session.execute(stmt)
        return [CronJobConfig.from_orm(job) for job in result.scalars().all()]


async def get_cronjob(name: str) -> Optional[CronJobConfig]:
    async with get_session() as session:
        result = await session.execute(select(CronJobORM).where(CronJobORM.name == name))
        job = result.scalar_one_or_none()
        return CronJobConfig.from_orm(job) if job else None


async def seed_cronjobs(schedules: dict[str, tuple[str, str]]) -> int:
    """Insert missing job rows; existing schedules edited by operators are kept."""
    if not schedules:
        return 0
    async with get_session() as session:
        stmt = insert(CronJobORM).values(
            [
                {"name": name, "cron": cron, "description": description, "is_active": True}
                for name, (cron, description) in schedules.items()
            ]
        ).on_conflict_do_nothing(index_elements=["name"])
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount or 0


async def update_cronjob(
    name: str, cron: str | None = None, is_active: bool | None = None
) -> Optional[CronJobConfig]:
    """Change the schedule or active flag of a job; None when it does not exist."""
    values: dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
    if cron is not None:
        values["cron"] = cron
    if is_active is not None:
        values["is_active"] = is_active

    async with get_session() as session:
        result = await session.execute(
            update(CronJobORM).where(CronJobORM.name == name).values(**values).returning(CronJobORM)
        )
        job = result.scalar_one_or_none()
        await session.commit()
        return CronJobConfig.from_orm(job) if job else None


async def update_job_stats(
    name: str, status: str, duration_ms: int, error: str | None = None
) -> None:
    """Update aggregate statistics after a run."""
    now = datetime.now(timezone.utc)

    async with get_session() as session:
        result = await session.execute(select(CronJobORM).where(CronJobORM.name == name))
        job = result.scalar_one_or_none()

        if job:
            job.last_run = now
            job.last_status = status
            job.last_duration_ms = duration_ms
            job.run_count = (job.run_count or 0) + 1
            job.updated_at = now

            if status == "success":
                job.last_error = None
            elif status == "failed":
                job.error_count = (job.error_count or 0) + 1
                job.last_error = error[:ERROR_MESSAGE_LIMIT] if error else None

            await session.commit()


# =============================================================================
# Job runs
# =============================================================================


async def start_run(job_name: str, trigger: str = "schedule") -> int:
    async with get_session() as session:
        run = JobRun(job_name=job_name, status="running", trigger=trigger)
        session.add(run)
        await session.commit()
        return run.id


async def finish_run(
    run_id: int,
    status: str,
    *,
    duration_ms: int,
    items_processed: int = 0,
    items_failed: int = 0,
    message: str | None = None,
    error: str | None = None,
) -> None:
    async with get_session() as session:
        run = await session.get(JobRun, run_id)
        if run is None:
            logger.warning(f"Job run {run_id} vanished before completion")
            return
        run.status = status
        run.finished_at = datetime.now(timezone.utc)
        run.duration_ms = duration_ms
        run.items_processed = items_processed
        run.items_failed = items_failed
        run.message = message[:ERROR_MESSAGE_LIMIT] if message else None
        run.error_message = error[:ERROR_MESSAGE_LIMIT] if error else None
        await session.commit()


async def list_runs(job_name: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    async with get_session() as session:
        stmt = select(JobRun).order_by(JobRun.started_at.desc()).limit(limit)
        if job_name:
            stmt = stmt.where(JobRun.job_name == job_name)
        result = await session.execute(stmt)
        return [_run_to_dict(r) for r in result.scalars().all()]


async def get_job_stats(job_name: str) -> dict[str, Any]:
    async with get_session() as session:
        result = await session.execute(
            select(
                func.count(JobRun.id),
                func.sum(case((JobRun.status == "success", 1), else_=0)),
                func.sum(case((JobRun.status == "failed", 1), else_=0)),
                func.avg(JobRun.duration_ms),
                func.avg(JobRun.items_processed),
                func.max(JobRun.started_at),
            ).where(JobRun.job_name == job_name)
        )
        total, ok, failed, avg_ms, avg_items, last_run = result.one()

        last_status = await session.scalar(
            select(JobRun.status)
            .where(JobRun.job_name == job_name)
            .order_by(JobRun.started_at.desc())
            .limit(1)
        )

    return {
        "job_name": job_name,
        "total_runs": int(total or 0),
        "successful_runs": int(ok or 0),
        "failed_runs": int(failed or 0),
        "avg_duration_ms": float(avg_ms) if avg_ms is not None else None,
        "avg_items_processed": float(avg_items) if avg_items is not None else None,
        "last_run": last_run,
        "last_status": last_status,
    }
