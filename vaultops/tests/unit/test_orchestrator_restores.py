from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from vaultops.core.errors import ConflictError, NotFoundError, ProvisioningError, ValidationError
from vaultops.domain.jobs import JobStatus, JobType
from vaultops.services.orchestrator import RestoreOptions
from vaultops.services.provisioning import ProvisioningCommand
from vaultops.tests.utils.seed import (
    create_test_backup,
    create_test_client,
    create_test_job,
    verify_backup_with_dr_test,
    wait_for_job,
    wait_for_status,
)


async def _verified_client(providers: list[str] | None = None, *, age: timedelta = timedelta(hours=1)):
    client = await create_test_client(providers=providers or ["aws", "azure", "gcp"])
    backup = await create_test_backup(client_id=client.id, provider=None, age=age)
    await verify_backup_with_dr_test(client.id, backup)
    return client, backup


async def test_production_restore_succeeds_on_every_provider(orchestrator) -> None:
    client, backup = await _verified_client()

    handle = await orchestrator.start_restore(client.id)
    assert handle.source_backup_id == backup.id
    assert handle.estimated_minutes == 12
    assert handle.target_environment == "production"

    snapshot = await wait_for_job(orchestrator, handle.job_id)
    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.result["isolated"] is False
    assert len(snapshot.result["successes"]) == 3
    assert {item["provider"] for item in snapshot.result["restored_resources"]} == {
        "aws",
        "azure",
        "gcp",
    }


async def test_restore_with_one_failed_provider_is_partial(orchestrator, providers) -> None:
    providers["gcp"].fail = True
    client, _backup = await _verified_client()

    handle = await orchestrator.start_restore(client.id)
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.PARTIAL_SUCCESS.value
    assert snapshot.error_message == "Partial restore: 1 providers failed"
    assert len(snapshot.result["successes"]) == 2
    assert snapshot.result["failures"] == ["gcp: start_restore rejected"]


async def test_restore_with_every_provider_failing_fails(orchestrator, providers) -> None:
    for provider in providers.values():
        provider.fail = True
    client, _backup = await _verified_client()

    handle = await orchestrator.start_restore(client.id)
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.FAILED.value
    assert snapshot.error_message.count("start_restore rejected") == 3


async def test_unverified_backup_fails_the_job(orchestrator, providers) -> None:
    client = await create_test_client(providers=["aws"])
    await create_test_backup(client_id=client.id)

    handle = await orchestrator.start_restore(client.id)
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.FAILED.value
    assert "not been validated by a successful DR test" in snapshot.error_message
    assert providers["aws"].calls == []


async def test_skip_validation_allows_unverified_backup(orchestrator) -> None:
    client = await create_test_client(providers=["aws"])
    await create_test_backup(client_id=client.id)

    handle = await orchestrator.start_restore(
        client.id, options=RestoreOptions(skip_validation_check=True)
    )
    snapshot = await wait_for_job(orchestrator, handle.job_id)
    assert snapshot.status == JobStatus.SUCCESS.value


async def test_old_backup_requires_force_flag(orchestrator) -> None:
    client, backup = await _verified_client(["aws"], age=timedelta(days=8))

    rejected = await orchestrator.start_restore(client.id, backup.id)
    snapshot = await wait_for_job(orchestrator, rejected.job_id)
    assert snapshot.status == JobStatus.FAILED.value
    assert "8 days old" in snapshot.error_message

    forced = await orchestrator.start_restore(
        client.id, backup.id, RestoreOptions(force_trust_old_backup=True)
    )
    snapshot = await wait_for_job(orchestrator, forced.job_id)
    assert snapshot.status == JobStatus.SUCCESS.value


async def test_second_restore_conflicts_while_first_in_flight(orchestrator) -> None:
    client, backup = await _verified_client(["aws"])
    await create_test_job(
        client_id=client.id,
        job_type=JobType.RESTORE,
        status=JobStatus.RUNNING,
        source_backup_id=backup.id,
    )
    with pytest.raises(ConflictError):
        await orchestrator.start_restore(client.id)


async def test_restore_rejects_unknown_backup(orchestrator) -> None:
    client = await create_test_client()
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.start_restore(client.id)
    assert "No successful backups" in excinfo.value.message

    with pytest.raises(ValidationError):
        await orchestrator.start_restore(client.id, "not-a-backup")

    other = await create_test_client(name="Other")
    foreign = await create_test_backup(client_id=other.id)
    with pytest.raises(ValidationError):
        await orchestrator.start_restore(client.id, foreign.id)


async def test_isolated_restore_runs_provisioning_in_ephemeral_workspace(orchestrator, driver, monkeypatch) -> None:
    client = await create_test_client(providers=["aws"])
    await create_test_backup(client_id=client.id)
    seen_workspaces: list[bool] = []
    run_command = driver.run_command

    async def recording_run_command(client_id, command, **kwargs):
        seen_workspaces.append((kwargs["workspace"] / "main.tf").exists())
        return await run_command(client_id, command, **kwargs)

    monkeypatch.setattr(driver, "run_command", recording_run_command)

    handle = await orchestrator.start_restore(
        client.id, options=RestoreOptions(target_environment="isolated")
    )
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.result["isolated"] is True
    assert "Apply complete!" in snapshot.result["terraform_output"]
    assert len(snapshot.result["restored_resources"]) == 3
    assert seen_workspaces == [True, True]
    assert not driver.restore_workspace_for(client.id, handle.job_id).exists()
    assert not driver.workspace_for(client.id).exists()

    status = await orchestrator.get_restore_status(handle.job_id)
    assert status.is_isolated
    assert status.progress == 100


async def test_isolated_restore_apply_failure_fails_the_job(orchestrator, driver, monkeypatch) -> None:
    client = await create_test_client(providers=["aws"])
    await create_test_backup(client_id=client.id)
    run_command = driver.run_command

    async def failing_apply(client_id, command, **kwargs):
        if ProvisioningCommand(command) == ProvisioningCommand.APPLY:
            raise ProvisioningError(
                "apply failed with exit code 1", command="apply", exit_code=1, output="Error: quota"
            )
        return await run_command(client_id, command, **kwargs)

    monkeypatch.setattr(driver, "run_command", failing_apply)

    handle = await orchestrator.start_restore(
        client.id, options=RestoreOptions(target_environment="isolated")
    )
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.FAILED.value
    assert snapshot.error_message == "apply failed with exit code 1"
    assert snapshot.completed_at is not None
    assert snapshot.result is None
    assert not driver.restore_workspace_for(client.id, handle.job_id).exists()


@pytest.mark.parametrize("resources", ["database", [], ["vm-1", ""]])
async def test_restore_rejects_malformed_resource_selector(orchestrator, resources) -> None:
    client = await create_test_client(providers=["aws"])
    await create_test_backup(client_id=client.id)

    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.start_restore(
            client.id, options=RestoreOptions(target_environment="isolated", resources=resources)
        )
    assert "resources must be 'all' or a list of resource names" in excinfo.value.message
    # Rejected before any restore job was written.
    assert await orchestrator.count_by_status(client.id) == {"success": 1}


async def test_restore_accepts_explicit_resource_list(orchestrator) -> None:
    client = await create_test_client(providers=["aws"])
    await create_test_backup(client_id=client.id)

    handle = await orchestrator.start_restore(
        client.id, options=RestoreOptions(target_environment="isolated", resources=["vm-1", "db-1"])
    )
    await wait_for_job(orchestrator, handle.job_id)
    status = await orchestrator.get_restore_status(handle.job_id)
    assert status.resources == ["vm-1", "db-1"]


async def test_cancel_pending_restore(orchestrator, providers) -> None:
    client, backup = await _verified_client(["aws"])
    job = await create_test_job(
        client_id=client.id,
        job_type=JobType.RESTORE,
        status=JobStatus.PENDING,
        provider="aws",
        source_backup_id=backup.id,
    )

    snapshot = await orchestrator.cancel_restore(job.id)

    assert snapshot.status == JobStatus.CANCELLED.value
    assert snapshot.completed_at is not None
    assert snapshot.error_message == "Cancelled by operator"
    assert providers["aws"].calls == ["cancel_restore"]


async def test_cancel_finished_restore_is_rejected(orchestrator) -> None:
    client, backup = await _verified_client(["aws"])
    job = await create_test_job(
        client_id=client.id,
        job_type=JobType.RESTORE,
        status=JobStatus.SUCCESS,
        source_backup_id=backup.id,
    )
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.cancel_restore(job.id)
    assert excinfo.value.message == "Cannot cancel a job with status Success"

    with pytest.raises(NotFoundError):
        await orchestrator.cancel_restore(backup.id)


async def test_cancel_wins_over_running_restore(orchestrator, providers) -> None:
    # The background task must not overwrite a cancel that landed mid-flight.
    gate = asyncio.Event()
    providers["aws"].gate = gate
    client, _backup = await _verified_client(["aws"])

    handle = await orchestrator.start_restore(client.id)
    await wait_for_status(orchestrator, handle.job_id, JobStatus.RUNNING)
    cancelled = await orchestrator.cancel_restore(handle.job_id)
    assert cancelled.status == JobStatus.CANCELLED.value

    gate.set()
    snapshot = await wait_for_job(orchestrator, handle.job_id)
    assert snapshot.status == JobStatus.CANCELLED.value
    assert snapshot.result is None


async def test_restore_history_lists_newest_first(orchestrator) -> None:
    client, _backup = await _verified_client(["aws"])
    first = await orchestrator.start_restore(client.id)
    await wait_for_job(orchestrator, first.job_id)
    second = await orchestrator.start_restore(
        client.id, options=RestoreOptions(target_environment="staging")
    )
    await wait_for_job(orchestrator, second.job_id)

    page = await orchestrator.restore_history(client.id, limit=1)
    assert page.total == 2
    assert page.pages == 2
    assert page.items[0].id == second.job_id
    assert page.items[0].is_isolated
