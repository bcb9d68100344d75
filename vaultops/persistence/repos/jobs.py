from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import math
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vaultops.domain.jobs import JobStatus, JobType
from vaultops.domain.models import Job


_SORTABLE_COLUMNS = {
    "created_at": Job.created_at,
    "started_at": Job.started_at,
    "completed_at": Job.completed_at,
    "updated_at": Job.updated_at,
    "status": Job.status,
}


@dataclass(frozen=True)
class JobPage:
    items: list[Job]
    total: int
    page: int
    pages: int
    limit: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _values(items: Iterable[JobStatus | JobType | str]) -> list[str]:
    return [item.value if hasattr(item, "value") else str(item) for item in items]


async def create_job(
    session: AsyncSession,
    *,
    client_id: str,
    job_type: JobType,
    provider: str | None = None,
    source_backup_id: str | None = None,
    is_automated: bool = False,
    is_manual: bool = False,
    description: str = "",
    metadata_json: dict[str, Any] | None = None,
) -> Job:
    # New jobs always start pending; only background work moves them on.
    now = _utc_now()
    job = Job(
        client_id=client_id,
        job_type=job_type.value,
        status=JobStatus.PENDING.value,
        provider=provider,
        source_backup_id=source_backup_id,
        is_automated=is_automated,
        is_manual=is_manual,
        description=description,
        metadata_json=metadata_json or {},
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: str) -> Job | None:
    result = await session.execute(select(Job).where(Job.id == job_id))
    return result.scalar_one_or_none()


def _filtered(
    *,
    client_id: str | None,
    job_type: JobType | str | None,
    statuses: Iterable[JobStatus | str] | None,
    source_backup_id: str | None,
    is_automated: bool | None,
):
    stmt = select(Job)
    if client_id is not None:
        stmt = stmt.where(Job.client_id == client_id)
    if job_type is not None:
        stmt = stmt.where(Job.job_type == _values([job_type])[0])
    if statuses is not None:
        stmt = stmt.where(Job.status.in_(_values(statuses)))
    if source_backup_id is not None:
        stmt = stmt.where(Job.source_backup_id == source_backup_id)
    if is_automated is not None:
        stmt = stmt.where(Job.is_automated == is_automated)
    return stmt


async def find_jobs(
    session: AsyncSession,
    *,
    client_id: str | None = None,
    job_type: JobType | str | None = None,
    statuses: Iterable[JobStatus | str] | None = None,
    source_backup_id: str | None = None,
    is_automated: bool | None = None,
    order_by: str = "created_at",
    descending: bool = True,
    limit: int | None = None,
) -> list[Job]:
    column = _SORTABLE_COLUMNS.get(order_by, Job.created_at)
    stmt = _filtered(
        client_id=client_id,
        job_type=job_type,
        statuses=statuses,
        source_backup_id=source_backup_id,
        is_automated=is_automated,
    ).order_by(column.desc() if descending else column.asc(), Job.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_one(session: AsyncSession, **filters: Any) -> Job | None:
    rows = await find_jobs(session, limit=1, **filters)
    return rows[0] if rows else None


async def update_job(session: AsyncSession, job_id: str, **fields: Any) -> None:
    # Non-status fields only; status changes go through transition_job.
    if "status" in fields:
        raise ValueError("use transition_job to change job status")
    fields["updated_at"] = _utc_now()
    await session.execute(update(Job).where(Job.id == job_id).values(**fields))


async def transition_job(
    session: AsyncSession,
    job_id: str,
    *,
    from_statuses: Iterable[JobStatus],
    to_status: JobStatus,
    **fields: Any,
) -> bool:
    # Compare-and-set on status so a concurrent cancel can never be overwritten.
    fields["status"] = to_status.value
    fields["updated_at"] = _utc_now()
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_(_values(from_statuses)))
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def paginate_jobs(
    session: AsyncSession,
    *,
    client_id: str | None = None,
    job_type: JobType | str | None = None,
    status: JobStatus | str | None = None,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "created_at",
    descending: bool = True,
) -> JobPage:
    page = max(1, int(page))
    limit = max(1, int(limit))
    base = _filtered(
        client_id=client_id,
        job_type=job_type,
        statuses=[status] if status is not None else None,
        source_backup_id=None,
        is_automated=None,
    )
    total = int(
        (await session.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    )
    column = _SORTABLE_COLUMNS.get(sort_by, Job.created_at)
    result = await session.execute(
        base.order_by(column.desc() if descending else column.asc(), Job.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return JobPage(
        items=list(result.scalars().all()),
        total=total,
        page=page,
        pages=math.ceil(total / limit) if total else 0,
        limit=limit,
    )


async def count_by_status(session: AsyncSession, client_id: str | None = None) -> dict[str, int]:
    stmt = select(Job.status, func.count()).group_by(Job.status)
    if client_id is not None:
        stmt = stmt.where(Job.client_id == client_id)
    result = await session.execute(stmt)
    return {status: int(count) for status, count in result.all()}
