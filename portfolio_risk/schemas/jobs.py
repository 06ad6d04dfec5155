"""Scheduled job schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from portfolio_risk.jobs.job_defaults import validate_cron


class JobResponse(BaseModel):
    name: str
    cron: str
    description: Optional[str] = None
    enabled: bool = True
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_duration_ms: Optional[int] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    next_run: Optional[datetime] = Field(None, description="Next scheduled run time")


class JobUpdate(BaseModel):
    cron: Optional[str] = Field(
        None,
        min_length=9,
        max_length=50,
        description="Cron expression (e.g., '*/15 * * * *')",
        examples=["*/15 * * * *"],
    )
    enabled: Optional[bool] = None

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, v: Optional[str]) -> Optional[str]:
        return validate_cron(v) if v is not None else v


class JobRunResponse(BaseModel):
    id: int
    job_name: str
    status: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    items_processed: int = 0
    items_failed: int = 0
    message: Optional[str] = None
    error_message: Optional[str] = None


class JobStatsResponse(BaseModel):
    job_name: str
    total_runs: int
    successful_runs: int
    failed_runs: int
    avg_duration_ms: Optional[float] = None
    avg_items_processed: Optional[float] = None
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None


class JobEnqueuedResponse(BaseModel):
    name: str
    task_id: str
    message: str


class TaskStatusResponse(BaseModel):
    task_id: str
    status: str
    result: Optional[object] = None
    error: Optional[str] = None
    traceback: Optional[str] = None
