from __future__ import annotations

from datetime import datetime, timezone
import math
import re
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from vaultops.core.errors import NotFoundError
from vaultops.domain.clients import BackupConfig, frequency_threshold
from vaultops.domain.jobs import DRTestResult, JobStatus, JobType, RUNNING_STATUSES, parse_result
from vaultops.domain.models import Job
from vaultops.persistence.repos import clients as clients_repo
from vaultops.persistence.repos import jobs as jobs_repo
from vaultops.services.job_views import duration_minutes


REPORT_WINDOW = 50
RECENT_TESTS = 5

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([mhd]?)\s*$", re.IGNORECASE)
_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1440, "": 60}


def parse_target_minutes(value: str | None) -> float | None:
    """Parse an RPO/RTO target such as "4h", "90m" or "2d" into minutes.

    Bare numbers are hours. Unparseable targets ("N/A") return None.
    """
    if not value:
        return None
    match = _DURATION.match(str(value))
    if match is None:
        return None
    return float(match.group(1)) * _UNIT_MINUTES[match.group(2).lower()]


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


class DRTestMetrics(BaseModel):
    recovery_time_minutes: int
    recovery_point_hours: int | None
    rto_target: str
    rpo_target: str
    rto_compliance: bool | None
    rpo_compliance: bool | None


class DRTestReport(BaseModel):
    id: str
    client_id: str
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    source_backup_id: str | None
    is_automated: bool
    provider: str | None
    error_message: str | None
    test_type: str
    verification_steps: list[str] = Field(default_factory=list)
    metrics: DRTestMetrics | None = None
    test_details: list[dict[str, Any]] = Field(default_factory=list)


class RecentDRTest(BaseModel):
    id: str
    date: datetime
    status: str
    is_automated: bool
    recovery_time_minutes: int | None


class LastSuccessfulDRTest(BaseModel):
    id: str
    date: datetime | None
    recovery_time_minutes: int | None


class DRComplianceReport(BaseModel):
    client_id: str
    client_name: str
    total_tests: int
    successful_tests: int
    failed_tests: int
    pending_tests: int
    success_rate: float
    frequency: str
    frequency_compliance: bool
    last_successful_test: LastSuccessfulDRTest | None
    avg_recovery_time_minutes: int
    rto_target: str
    rpo_target: str
    recent_test_status: str
    rto_compliance: bool
    recent_tests: list[RecentDRTest] = Field(default_factory=list)


async def _metrics(session: AsyncSession, job: Job) -> DRTestMetrics | None:
    # Metrics only exist for tests that completed successfully.
    if job.status != JobStatus.SUCCESS.value or job.started_at is None or job.completed_at is None:
        return None
    recovery_minutes = duration_minutes(job) or 0
    recovery_point_hours: int | None = None
    if job.source_backup_id:
        backup = await jobs_repo.get_job(session, job.source_backup_id)
        if backup is not None and backup.completed_at is not None:
            recovery_point_hours = _round(
                (job.started_at - backup.completed_at).total_seconds() / 3600.0
            )
    metadata = job.metadata_json or {}
    rto_target = str(metadata.get("recovery_time_objective") or "N/A")
    rpo_target = str(metadata.get("recovery_point_objective") or "N/A")
    rto_minutes = parse_target_minutes(rto_target)
    rpo_minutes = parse_target_minutes(rpo_target)
    return DRTestMetrics(
        recovery_time_minutes=recovery_minutes,
        recovery_point_hours=recovery_point_hours,
        rto_target=rto_target,
        rpo_target=rpo_target,
        rto_compliance=None if rto_minutes is None else recovery_minutes <= rto_minutes,
        rpo_compliance=(
            None
            if rpo_minutes is None or recovery_point_hours is None
            else recovery_point_hours * 60 <= rpo_minutes
        ),
    )


async def dr_test_result(session: AsyncSession, job_id: str) -> DRTestReport:
    job = await jobs_repo.get_job(session, job_id)
    if job is None or job.job_type != JobType.DR_TEST.value:
        raise NotFoundError(f"DR test {job_id} not found")
    metadata = job.metadata_json or {}
    result = parse_result(job.result_json)
    details = (
        [step.model_dump(mode="json") for step in result.steps]
        if isinstance(result, DRTestResult)
        else []
    )
    return DRTestReport(
        id=job.id,
        client_id=job.client_id,
        status=job.status,
        started_at=job.started_at,
        completed_at=job.completed_at,
        source_backup_id=job.source_backup_id,
        is_automated=job.is_automated,
        provider=job.provider,
        error_message=job.error_message,
        test_type=str(metadata.get("test_type") or "standard"),
        verification_steps=list(metadata.get("verification_steps") or []),
        metrics=await _metrics(session, job),
        test_details=details,
    )


async def dr_compliance_report(
    session: AsyncSession, client_id: str, *, now: datetime | None = None
) -> DRComplianceReport:
    client = await clients_repo.get_client(session, client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")
    now = now or datetime.now(timezone.utc)
    config = BackupConfig.model_validate(client.backup_config or {})
    tests = await jobs_repo.find_jobs(
        session,
        client_id=client_id,
        job_type=JobType.DR_TEST,
        order_by="created_at",
        limit=REPORT_WINDOW,
    )
    total = len(tests)
    successful = [test for test in tests if test.status == JobStatus.SUCCESS.value]
    failed = [test for test in tests if test.status == JobStatus.FAILED.value]
    in_flight = {JobStatus.PENDING.value} | {status.value for status in RUNNING_STATUSES}
    pending = [test for test in tests if test.status in in_flight]

    frequency = config.dr_test_frequency or "monthly"
    last_success = successful[0] if successful else None
    frequency_compliance = False
    if last_success is not None and last_success.completed_at is not None:
        days_since = _round((now - last_success.completed_at).total_seconds() / 86400.0)
        frequency_compliance = days_since <= frequency_threshold(frequency).days

    timed = [duration_minutes(test) for test in successful]
    timed = [value for value in timed if value is not None]
    avg_recovery = _round(sum(timed) / len(timed)) if timed else 0
    rto_minutes = parse_target_minutes(config.recovery_time_objective)

    return DRComplianceReport(
        client_id=client.id,
        client_name=client.name,
        total_tests=total,
        successful_tests=len(successful),
        failed_tests=len(failed),
        pending_tests=len(pending),
        success_rate=(len(successful) / total) * 100 if total else 0.0,
        frequency=frequency,
        frequency_compliance=frequency_compliance,
        last_successful_test=(
            LastSuccessfulDRTest(
                id=last_success.id,
                date=last_success.completed_at,
                recovery_time_minutes=duration_minutes(last_success),
            )
            if last_success is not None
            else None
        ),
        avg_recovery_time_minutes=avg_recovery,
        rto_target=config.recovery_time_objective or "N/A",
        rpo_target=config.recovery_point_objective or "N/A",
        recent_test_status=tests[0].status if tests else "N/A",
        rto_compliance=bool(timed) and rto_minutes is not None and avg_recovery <= rto_minutes,
        recent_tests=[
            RecentDRTest(
                id=test.id,
                date=test.started_at or test.created_at,
                status=test.status,
                is_automated=test.is_automated,
                recovery_time_minutes=duration_minutes(test),
            )
            for test in tests[:RECENT_TESTS]
        ],
    )
