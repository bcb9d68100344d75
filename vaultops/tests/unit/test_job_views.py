from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vaultops.domain.jobs import JobStatus
from vaultops.domain.models import Job
from vaultops.services.job_views import compute_progress, duration_minutes, estimate_restore_minutes


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("size_mb", "expected"),
    [(0, 11), (None, 11), (1, 11), (1024, 11), (1025, 12), (5 * 1024, 15)],
)
def test_estimate_adds_one_minute_per_started_gb(size_mb: int | None, expected: int) -> None:
    assert estimate_restore_minutes(size_mb) == expected


def test_pending_jobs_report_zero_progress() -> None:
    assert compute_progress(JobStatus.PENDING, None, 30, now=NOW) == 0


def test_running_progress_tracks_elapsed_share_of_estimate() -> None:
    started = NOW - timedelta(minutes=15)
    assert compute_progress(JobStatus.RUNNING, started, 30, now=NOW) == 50
    assert compute_progress("planning_completed", started, 30, now=NOW) == 50


def test_running_progress_is_capped_below_complete() -> None:
    started = NOW - timedelta(hours=5)
    assert compute_progress(JobStatus.RUNNING, started, 30, now=NOW) == 95


@pytest.mark.parametrize(
    "status",
    [JobStatus.SUCCESS, JobStatus.PARTIAL_SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED],
)
def test_terminal_jobs_report_full_progress(status: JobStatus) -> None:
    assert compute_progress(status, None, 30, now=NOW) == 100


def test_duration_rounds_to_nearest_minute() -> None:
    job = Job(started_at=NOW, completed_at=NOW + timedelta(minutes=4, seconds=31))
    assert duration_minutes(job) == 5
    assert duration_minutes(Job(started_at=NOW)) is None
