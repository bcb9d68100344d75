from __future__ import annotations

from datetime import datetime, timezone
import math
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from vaultops.domain.jobs import JobStatus, RUNNING_STATUSES, is_terminal, parse_result
from vaultops.domain.models import Job


T = TypeVar("T")

BASE_ESTIMATE_MINUTES = 10
DEFAULT_ESTIMATE_MINUTES = 30
MAX_RUNNING_PROGRESS = 95


def estimate_restore_minutes(data_size_mb: int | None, base_minutes: int = BASE_ESTIMATE_MINUTES) -> int:
    # One minute per started GB on top of the base; empty backups still count one minute.
    size = int(data_size_mb or 0)
    per_gb = math.ceil(size / 1024) if size > 0 else 1
    return base_minutes + per_gb


def compute_progress(
    status: JobStatus | str,
    started_at: datetime | None,
    estimated_minutes: int,
    *,
    now: datetime | None = None,
) -> int:
    status = JobStatus(status)
    if is_terminal(status):
        return 100
    if status not in RUNNING_STATUSES or started_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    elapsed_minutes = max(0.0, (now - started_at).total_seconds() / 60.0)
    ratio = elapsed_minutes / max(estimated_minutes, 1)
    return min(MAX_RUNNING_PROGRESS, int(math.floor(ratio * 100 + 0.5)))


def duration_minutes(job: Job) -> int | None:
    if job.started_at is None or job.completed_at is None:
        return None
    return int(math.floor((job.completed_at - job.started_at).total_seconds() / 60.0 + 0.5))


class JobHandle(BaseModel):
    # Returned immediately by every start operation.
    job_id: str
    client_id: str
    job_type: str
    status: str
    source_backup_id: str | None = None
    estimated_minutes: int | None = None
    target_environment: str | None = None
    message: str = ""


class JobSnapshot(BaseModel):
    id: str
    client_id: str
    job_type: str
    status: str
    progress: int
    provider: str | None = None
    source_backup_id: str | None = None
    is_automated: bool = False
    is_manual: bool = False
    data_size_mb: int = 0
    description: str = ""
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None

    @classmethod
    def from_job(cls, job: Job, *, progress: int) -> "JobSnapshot":
        result = parse_result(job.result_json)
        return cls(
            id=job.id,
            client_id=job.client_id,
            job_type=job.job_type,
            status=job.status,
            progress=progress,
            provider=job.provider,
            source_backup_id=job.source_backup_id,
            is_automated=job.is_automated,
            is_manual=job.is_manual,
            data_size_mb=job.data_size_mb or 0,
            description=job.description or "",
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            updated_at=job.updated_at,
            metadata=dict(job.metadata_json or {}),
            result=result.model_dump(mode="json") if result is not None else None,
            error_message=job.error_message,
        )


class RestoreStatus(BaseModel):
    id: str
    client_id: str
    status: str
    progress: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    source_backup_id: str | None = None
    provider: str | None = None
    target_environment: str = "production"
    is_isolated: bool = False
    resources: list[str] | str = "all"
    error_message: str | None = None
    restored_resources: list[dict[str, Any]] = Field(default_factory=list)


class RestoreHistoryEntry(BaseModel):
    id: str
    date: datetime
    completed_at: datetime | None = None
    status: str
    target_environment: str = "production"
    is_isolated: bool = False
    duration_minutes: int | None = None
    provider: str | None = None
    source_backup_id: str | None = None


class DRTestHistoryEntry(BaseModel):
    id: str
    date: datetime
    completed_at: datetime | None = None
    status: str
    is_automated: bool = False
    recovery_time_minutes: int | None = None
    provider: str | None = None
    source_backup_id: str | None = None


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    pages: int
    limit: int
