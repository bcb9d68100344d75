from __future__ import annotations

import asyncio
from pathlib import Path
import stat
import sys

import pytest

from vaultops.core.config import get_settings
from vaultops.core.errors import ConflictError, ValidationError
from vaultops.domain.clients import TerraformState
from vaultops.domain.jobs import JobStatus, JobType
from vaultops.persistence.db import SessionLocal
from vaultops.persistence.repos import clients as clients_repo
from vaultops.services.dispatch import JobDispatcher
from vaultops.services.orchestrator import JobOrchestrator
from vaultops.services.provisioning import ProvisioningCommand, ProvisioningDriver
from vaultops.tests.utils.seed import (
    create_test_backup,
    create_test_client,
    create_test_job,
    wait_for_job,
    wait_for_status,
)


class GatedDriver(ProvisioningDriver):
    # Holds apply until the test releases it, exposing the planning_completed state.
    def __init__(self, *args, gate: asyncio.Event, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.gate = gate
        self.commands: list[str] = []

    async def run_command(self, client_id, command, **kwargs):
        self.commands.append(ProvisioningCommand(command).value)
        if ProvisioningCommand(command) == ProvisioningCommand.APPLY:
            await self.gate.wait()
        return await super().run_command(client_id, command, **kwargs)


async def _terraform_state(client_id: str) -> str:
    async with SessionLocal() as session:
        client = await clients_repo.get_client(session, client_id)
    assert client is not None
    return client.terraform_state


async def test_init_plans_then_applies(orchestrator, providers, tmp_path: Path) -> None:
    gate = asyncio.Event()
    orchestrator.driver = GatedDriver(root_dir=tmp_path / "gated", simulate=True, gate=gate)
    client = await create_test_client(providers=["aws", "gcp"])

    handle = await orchestrator.start_provisioning(client.id, "init", initiated_by="ops")
    assert handle.job_type == JobType.PROVISION_INIT.value
    assert await _terraform_state(client.id) == TerraformState.INITIALIZING.value

    await wait_for_status(orchestrator, handle.job_id, JobStatus.PLANNING_COMPLETED)
    gate.set()
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.result["command"] == "apply"
    assert snapshot.result["has_changes"] is True
    assert snapshot.result["changes"] == {"added": 3, "changed": 0, "destroyed": 0}
    assert "backup_vault_id" in snapshot.result["outputs"]
    assert orchestrator.driver.commands == ["init", "validate", "plan", "apply", "output"]
    assert await _terraform_state(client.id) == TerraformState.INITIALIZED.value


async def test_destroy_resets_terraform_state(orchestrator) -> None:
    client = await create_test_client()
    init = await orchestrator.start_provisioning(client.id, "init")
    await wait_for_job(orchestrator, init.job_id)

    destroy = await orchestrator.start_provisioning(client.id, "destroy")
    snapshot = await wait_for_job(orchestrator, destroy.job_id)

    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.result["changes"]["destroyed"] == 3
    assert await _terraform_state(client.id) == TerraformState.NOT_INITIALIZED.value


async def test_destroy_without_workspace_fails(orchestrator) -> None:
    client = await create_test_client()
    handle = await orchestrator.start_provisioning(client.id, "destroy")
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.FAILED.value
    assert "workspace not found" in snapshot.error_message
    assert await _terraform_state(client.id) == TerraformState.FAILED.value


async def test_restore_action_passes_backup_variables(orchestrator) -> None:
    client = await create_test_client()
    backup = await create_test_backup(client_id=client.id)

    handle = await orchestrator.start_provisioning(client.id, "restore", backup.id)
    assert handle.source_backup_id == backup.id
    snapshot = await wait_for_job(orchestrator, handle.job_id)

    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.metadata["variables"] == {
        "restore_mode": "true",
        "backup_id": backup.id,
        "recovery_point_arn": "rp-aws-test",
    }


async def test_unknown_action_is_rejected(orchestrator) -> None:
    client = await create_test_client()
    with pytest.raises(ValidationError):
        await orchestrator.start_provisioning(client.id, "rebuild")


async def test_one_provisioning_job_per_client(orchestrator) -> None:
    client = await create_test_client()
    await create_test_job(
        client_id=client.id, job_type=JobType.PROVISION_UPDATE, status=JobStatus.PLANNING_COMPLETED
    )
    with pytest.raises(ConflictError):
        await orchestrator.start_provisioning(client.id, "init")


async def test_cancel_provisioning_marks_workspace_failed(orchestrator) -> None:
    client = await create_test_client()
    job = await create_test_job(
        client_id=client.id, job_type=JobType.PROVISION_INIT, status=JobStatus.PENDING
    )
    snapshot = await orchestrator.cancel_job(job.id)
    assert snapshot.status == JobStatus.CANCELLED.value
    assert await _terraform_state(client.id) == TerraformState.FAILED.value


_NO_CHANGES_CLI = """#!/bin/sh
case "$1" in
  plan) echo "No changes. Your infrastructure matches the configuration."; exit 0 ;;
  output) echo '{}'; exit 0 ;;
esac
exit 0
"""


@pytest.mark.skipif(sys.platform == "win32", reason="fake CLI is a POSIX shell script")
async def test_plan_without_changes_skips_apply(tmp_path: Path, providers) -> None:
    binary = tmp_path / "fake-terraform"
    binary.write_text(_NO_CHANGES_CLI, encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    orchestrator = JobOrchestrator(
        session_factory=SessionLocal,
        dispatcher=JobDispatcher(2),
        driver=ProvisioningDriver(root_dir=tmp_path / "root", binary=str(binary)),
        providers=providers,
        settings=get_settings(),
    )
    client = await create_test_client()
    try:
        handle = await orchestrator.start_provisioning(client.id, "update")
        snapshot = await wait_for_job(orchestrator, handle.job_id)
    finally:
        await orchestrator.dispatcher.shutdown()

    assert snapshot.status == JobStatus.SUCCESS.value
    assert snapshot.result["command"] == "plan"
    assert snapshot.result["has_changes"] is False
    assert await _terraform_state(client.id) == TerraformState.INITIALIZED.value
