"""Admin endpoints for scheduled jobs and the risk cache."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, Path, Query

from portfolio_risk.core.exceptions import NotFoundError
from portfolio_risk.jobs.dispatch import enqueue_job, get_task_status
from portfolio_risk.jobs.job_defaults import next_runs
from portfolio_risk.repositories import jobs_orm as jobs_repo
from portfolio_risk.repositories.jobs_orm import CronJobConfig
from portfolio_risk.schemas.common import MessageResponse
from portfolio_risk.schemas.jobs import (
    JobEnqueuedResponse,
    JobResponse,
    JobRunResponse,
    JobStatsResponse,
    JobUpdate,
    TaskStatusResponse,
)
from portfolio_risk.schemas.risk import CacheHealthResponse
from portfolio_risk.services.analytics import RiskAnalyticsService

from ..dependencies import get_service


router = APIRouter(prefix="/admin")


def _validate_job_name(name: str = Path(..., min_length=1, max_length=50)) -> str:
    """Validate and normalize job name from path parameter."""
    return name.strip().lower()


def _job_response(job: CronJobConfig) -> JobResponse:
    next_run = None
    if job.is_active:
        next_run = next_runs(job.cron, datetime.now(timezone.utc))[0]
    return JobResponse(
        name=job.name,
        cron=job.cron,
        description=job.description,
        enabled=job.is_active,
        last_run=job.last_run,
        last_status=job.last_status,
        last_duration_ms=job.last_duration_ms,
        run_count=job.run_count,
        error_count=job.error_count,
        last_error=job.last_error,
        next_run=next_run,
    )


# =============================================================================
# Jobs
# =============================================================================


@router.get("/jobs", response_model=List[JobResponse], summary="List scheduled jobs")
async def list_jobs() -> List[JobResponse]:
    return [_job_response(job) for job in await jobs_repo.list_cronjobs()]


@router.get("/jobs/runs", response_model=List[JobRunResponse], summary="Recent job runs")
async def list_recent_runs(limit: int = Query(50, ge=1, le=500)) -> List[JobRunResponse]:
    return [JobRunResponse(**run) for run in await jobs_repo.list_runs(limit=limit)]


@router.get("/jobs/tasks/{task_id}", response_model=TaskStatusResponse, summary="Celery task status")
async def task_status(task_id: str = Path(..., min_length=1, max_length=64)) -> TaskStatusResponse:
    return TaskStatusResponse(**get_task_status(task_id))


@router.put("/jobs/{name}", response_model=JobResponse, summary="Change a job's schedule")
async def update_job(
    update: JobUpdate,
    name: str = Depends(_validate_job_name),
) -> JobResponse:
    job = await jobs_repo.update_cronjob(name, cron=update.cron, is_active=update.enabled)
    if job is None:
        raise NotFoundError(f"Job '{name}' not found")
    return _job_response(job)


@router.post("/jobs/{name}/run", response_model=JobEnqueuedResponse, summary="Run a job now")
async def run_job(name: str = Depends(_validate_job_name)) -> JobEnqueuedResponse:
    if await jobs_repo.get_cronjob(name) is None:
        raise NotFoundError(f"Job '{name}' not found")
    task_id = enqueue_job(name, trigger="manual")
    return JobEnqueuedResponse(name=name, task_id=task_id, message=f"Job '{name}' enqueued")


@router.get("/jobs/{name}/runs", response_model=List[JobRunResponse], summary="Run history of a job")
async def list_job_runs(
    name: str = Depends(_validate_job_name),
    limit: int = Query(50, ge=1, le=500),
) -> List[JobRunResponse]:
    return [JobRunResponse(**run) for run in await jobs_repo.list_runs(name, limit=limit)]


@router.get("/jobs/{name}/stats", response_model=JobStatsResponse, summary="Aggregate job statistics")
async def job_stats(name: str = Depends(_validate_job_name)) -> JobStatsResponse:
    if await jobs_repo.get_cronjob(name) is None:
        raise NotFoundError(f"Job '{name}' not found")
    return JobStatsResponse(**await jobs_repo.get_job_stats(name))


# =============================================================================
# Risk cache
# =============================================================================


@router.get("/cache/health", response_model=CacheHealthResponse, summary="Cache entries by status")
async def cache_health(service: RiskAnalyticsService = Depends(get_service)) -> CacheHealthResponse:
    return CacheHealthResponse(**await service.cache.health())


@router.delete("/cache/{key:path}", response_model=MessageResponse, summary="Delete a cache entry")
async def reset_cache_entry(
    key: str,
    service: RiskAnalyticsService = Depends(get_service),
) -> MessageResponse:
    if not await service.cache.reset(key):
        raise NotFoundError(f"Cache entry '{key}' not found")
    return MessageResponse(message=f"Cache entry '{key}' deleted")
