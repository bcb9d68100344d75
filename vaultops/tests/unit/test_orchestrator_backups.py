from __future__ import annotations

import pytest

from vaultops.core.errors import NotFoundError, ValidationError
from vaultops.domain.clients import ClientStatus
from vaultops.domain.jobs import JobStatus, JobType
from vaultops.tests.utils.seed import create_test_client, wait_for_job


async def test_backup_fans_out_to_every_enabled_provider(orchestrator, providers) -> None:
    client = await create_test_client(providers=["gcp", "aws", "azure"])

    handle = await orchestrator.start_backup(client.id, initiated_by="ops")
    assert handle.status == JobStatus.PENDING.value
    assert handle.job_type == JobType.BACKUP.value

    snapshot = await wait_for_job(orchestrator, handle.job_id)
    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.provider is None
    assert snapshot.data_size_mb == 3 * 10 * 1024
    assert [item["provider"] for item in snapshot.result["providers"]] == ["aws", "azure", "gcp"]
    assert snapshot.metadata["initiated_by"] == "ops"
    for name in ("aws", "azure", "gcp"):
        assert providers[name].calls == ["start_backup"]


async def test_backup_fails_when_any_provider_fails(orchestrator, providers) -> None:
    providers["azure"].fail = True
    client = await create_test_client(providers=["aws", "azure"])

    handle = await orchestrator.start_backup(client.id)
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.FAILED.value
    assert snapshot.error_message == "azure: start_backup rejected"
    assert snapshot.completed_at is not None


async def test_single_provider_backup_records_provider(orchestrator) -> None:
    client = await create_test_client(providers=["aws"])
    handle = await orchestrator.start_backup(client.id)
    snapshot = await wait_for_job(orchestrator, handle.job_id)
    assert snapshot.provider == "aws"
    assert snapshot.result["providers"][0]["recovery_point_id"].startswith("arn:aws:backup:")


async def test_backup_without_providers_fails(orchestrator) -> None:
    client = await create_test_client(providers=[])
    handle = await orchestrator.start_backup(client.id)
    snapshot = await wait_for_job(orchestrator, handle.job_id)
    assert snapshot.status == JobStatus.FAILED.value
    assert "no enabled cloud providers" in snapshot.error_message


async def test_backup_requires_active_client(orchestrator) -> None:
    client = await create_test_client(status=ClientStatus.SUSPENDED)
    with pytest.raises(ValidationError):
        await orchestrator.start_backup(client.id)
    with pytest.raises(NotFoundError):
        await orchestrator.start_backup("missing-client")
