from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from vaultops.domain.jobs import JobStatus, JobType
from vaultops.persistence.db import SessionLocal
from vaultops.persistence.repos import jobs as jobs_repo
from vaultops.tests.utils.seed import create_test_client, create_test_job


async def test_transition_is_compare_and_set() -> None:
    client = await create_test_client()
    job = await create_test_job(client_id=client.id, job_type=JobType.BACKUP, status=JobStatus.PENDING)

    async with SessionLocal() as session:
        moved = await jobs_repo.transition_job(
            session, job.id, from_statuses=[JobStatus.PENDING], to_status=JobStatus.RUNNING
        )
        again = await jobs_repo.transition_job(
            session, job.id, from_statuses=[JobStatus.PENDING], to_status=JobStatus.CANCELLED
        )
        await session.commit()
        stored = await jobs_repo.get_job(session, job.id)

    assert moved is True
    assert again is False
    assert stored is not None and stored.status == JobStatus.RUNNING.value


async def test_update_job_refuses_status_writes() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await jobs_repo.update_job(session, "any", status="success")


async def test_in_flight_restores_are_unique_per_client() -> None:
    client = await create_test_client()
    await create_test_job(client_id=client.id, job_type=JobType.RESTORE, status=JobStatus.RUNNING)
    # Terminal restores and other job types never collide.
    await create_test_job(client_id=client.id, job_type=JobType.RESTORE, status=JobStatus.FAILED)
    await create_test_job(client_id=client.id, job_type=JobType.DR_TEST, status=JobStatus.PENDING)

    with pytest.raises(IntegrityError):
        await create_test_job(client_id=client.id, job_type=JobType.RESTORE, status=JobStatus.PENDING)


async def test_paginate_and_count_by_status() -> None:
    client = await create_test_client()
    for status in (JobStatus.SUCCESS, JobStatus.SUCCESS, JobStatus.FAILED):
        await create_test_job(client_id=client.id, job_type=JobType.BACKUP, status=status)

    async with SessionLocal() as session:
        page = await jobs_repo.paginate_jobs(session, client_id=client.id, page=2, limit=2)
        filtered = await jobs_repo.paginate_jobs(session, status=JobStatus.FAILED)
        counts = await jobs_repo.count_by_status(session, client.id)

    assert page.total == 3
    assert page.pages == 2
    assert len(page.items) == 1
    assert filtered.total == 1
    assert counts == {"success": 2, "failed": 1}
