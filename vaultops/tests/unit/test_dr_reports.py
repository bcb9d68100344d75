from __future__ import annotations

from datetime import timedelta

import pytest

from vaultops.core.errors import NotFoundError
from vaultops.domain.jobs import DRTestResult, DRTestStepOutcome, JobStatus, JobType, dump_result
from vaultops.persistence.db import SessionLocal
from vaultops.services.dr_reports import dr_compliance_report, dr_test_result, parse_target_minutes
from vaultops.tests.utils.seed import create_test_backup, create_test_client, create_test_job, utc_now


@pytest.mark.parametrize(
    ("value", "expected"),
    [("4h", 240.0), ("90m", 90.0), ("2d", 2880.0), ("6", 360.0), ("N/A", None), ("", None), (None, None)],
)
def test_parse_target_minutes(value: str | None, expected: float | None) -> None:
    assert parse_target_minutes(value) == expected


async def _dr_test(client_id: str, backup_id: str, *, status: JobStatus, minutes: int, days_ago: int):
    started = utc_now() - timedelta(days=days_ago)
    return await create_test_job(
        client_id=client_id,
        job_type=JobType.DR_TEST,
        status=status,
        provider="aws",
        source_backup_id=backup_id,
        created_at=started,
        started_at=started,
        completed_at=started + timedelta(minutes=minutes),
        metadata_json={
            "test_type": "manual",
            "verification_steps": ["integrity"],
            "recovery_point_objective": "24h",
            "recovery_time_objective": "1h",
        },
        result_json=dump_result(
            DRTestResult(
                steps=[
                    DRTestStepOutcome(
                        provider="aws",
                        step="integrity",
                        passed=status == JobStatus.SUCCESS,
                    )
                ]
            )
        ),
    )


async def test_dr_test_result_reports_rto_and_rpo() -> None:
    client = await create_test_client()
    backup = await create_test_backup(client_id=client.id, age=timedelta(hours=6))
    job = await _dr_test(client.id, backup.id, status=JobStatus.SUCCESS, minutes=45, days_ago=0)

    async with SessionLocal() as session:
        report = await dr_test_result(session, job.id)

    assert report.test_type == "manual"
    assert report.test_details[0]["step"] == "integrity"
    assert report.metrics is not None
    assert report.metrics.recovery_time_minutes == 45
    assert report.metrics.recovery_point_hours == 6
    assert report.metrics.rto_compliance is True
    assert report.metrics.rpo_compliance is True


async def test_failed_dr_test_has_no_metrics() -> None:
    client = await create_test_client()
    backup = await create_test_backup(client_id=client.id)
    job = await _dr_test(client.id, backup.id, status=JobStatus.FAILED, minutes=5, days_ago=0)
    async with SessionLocal() as session:
        report = await dr_test_result(session, job.id)
        with pytest.raises(NotFoundError):
            await dr_test_result(session, backup.id)
    assert report.metrics is None


async def test_compliance_report_aggregates_recent_tests() -> None:
    client = await create_test_client(
        name="Globex",
        backup_config={"dr_test_frequency": "weekly", "recovery_time_objective": "1h"},
    )
    backup = await create_test_backup(client_id=client.id)
    await _dr_test(client.id, backup.id, status=JobStatus.SUCCESS, minutes=30, days_ago=20)
    await _dr_test(client.id, backup.id, status=JobStatus.FAILED, minutes=10, days_ago=10)
    latest = await _dr_test(client.id, backup.id, status=JobStatus.SUCCESS, minutes=50, days_ago=3)
    await create_test_job(client_id=client.id, job_type=JobType.DR_TEST, status=JobStatus.PENDING)

    async with SessionLocal() as session:
        report = await dr_compliance_report(session, client.id)

    assert report.client_name == "Globex"
    assert report.total_tests == 4
    assert report.successful_tests == 2
    assert report.failed_tests == 1
    assert report.pending_tests == 1
    assert report.success_rate == 50.0
    assert report.frequency == "weekly"
    assert report.frequency_compliance is True
    assert report.last_successful_test is not None
    assert report.last_successful_test.id == latest.id
    assert report.avg_recovery_time_minutes == 40
    assert report.rto_compliance is True
    assert report.recent_test_status == JobStatus.PENDING.value
    assert len(report.recent_tests) == 4


async def test_compliance_report_without_tests() -> None:
    client = await create_test_client()
    async with SessionLocal() as session:
        report = await dr_compliance_report(session, client.id)
        with pytest.raises(NotFoundError):
            await dr_compliance_report(session, "missing")
    assert report.total_tests == 0
    assert report.success_rate == 0.0
    assert report.frequency_compliance is False
    assert report.last_successful_test is None
    assert report.recent_test_status == "N/A"
    assert report.rto_compliance is False
