from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
import logging
import os
from pathlib import Path
import shutil
from typing import Any, Callable

from vaultops.core.config import Settings, get_settings
from vaultops.core.errors import ProvisioningError
from vaultops.domain.jobs import ChangeSummary
from vaultops.domain.models import Client, Job
from vaultops.providers.cloud.factory import enabled_providers
from vaultops.services.provisioning.config_render import render_main_tf, render_variables_tf
from vaultops.services.provisioning.output_parsing import (
    parse_change_summary,
    parse_output_json,
)


logger = logging.getLogger(__name__)


# Plan with -detailed-exitcode: 0 = no changes, 2 = changes present, anything else = error.
PLAN_CHANGES_EXIT_CODE = 2
_SIMULATED_RESOURCE_COUNT = 3
_SIMULATED_ACCOUNT_ID = "123456789012"
DEFAULT_RECOVERY_POINT = "simulated-recovery-point"
_READ_CHUNK_BYTES = 64 * 1024
_LOGGED_LINE_CHARS = 2000


class ProvisioningCommand(str, Enum):
    INIT = "init"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    VALIDATE = "validate"
    OUTPUT = "output"


@dataclass(frozen=True)
class GeneratedConfig:
    workspace: Path
    providers: list[str]


@dataclass(frozen=True)
class CommandResult:
    command: ProvisioningCommand
    exit_code: int
    output: str
    changes: ChangeSummary | None = None
    # Only meaningful for plan; None for every other command.
    has_changes: bool | None = None
    simulated: bool = False
    stderr: str = ""


@dataclass
class _Capture:
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.lines)


def build_args(
    command: ProvisioningCommand,
    *,
    variables: dict[str, str] | None = None,
    plan_out: str | None = None,
    plan_file: str | None = None,
    auto_approve: bool = False,
) -> list[str]:
    if command == ProvisioningCommand.PLAN:
        args = ["plan", "-detailed-exitcode"]
        if plan_out:
            args += ["-out", plan_out]
    elif command == ProvisioningCommand.APPLY:
        args = ["apply"]
        if auto_approve:
            args.append("-auto-approve")
        if plan_file:
            args.append(plan_file)
    elif command == ProvisioningCommand.DESTROY:
        args = ["destroy"]
        if auto_approve:
            args.append("-auto-approve")
    elif command == ProvisioningCommand.OUTPUT:
        args = ["output", "-json"]
    else:
        args = [command.value]
    for key, value in (variables or {}).items():
        args += ["-var", f"{key}={value}"]
    return args


def restore_variables(backup: Job, recovery_point: str | None = None) -> dict[str, str]:
    # Restore-mode inputs handed to the client's modules.
    return {
        "restore_mode": "true",
        "backup_id": backup.id,
        "recovery_point_arn": recovery_point or DEFAULT_RECOVERY_POINT,
    }


async def _reap(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class ProvisioningDriver:
    """Generates per-client configuration and drives the provisioning CLI.

    Every client owns ``<root>/clients/<client_id>``; isolated restores get an
    ephemeral ``<root>/restores/<client_id>/<job_id>`` workspace that is removed
    when the restore finishes. Commands run as child processes inside the
    workspace. In simulate mode no process is spawned and a deterministic
    synthetic result is returned after a delay.
    """

    def __init__(
        self,
        *,
        root_dir: str | Path,
        binary: str = "terraform",
        module_source: str = "../../modules",
        simulate: bool = False,
        simulate_delay_s: float = 0.0,
        development: bool = False,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.binary = binary
        self.module_source = module_source
        self.simulate = simulate
        self.simulate_delay_s = max(0.0, simulate_delay_s)
        self.development = development

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProvisioningDriver":
        settings = settings or get_settings()
        production = settings.environment.lower() == "production"
        if settings.provisioning_simulate and production:
            logger.warning("provisioning_simulate_ignored environment=production")
        return cls(
            root_dir=settings.provisioning_root_dir,
            binary=settings.provisioning_binary,
            module_source=settings.provisioning_module_source,
            simulate=settings.provisioning_simulate and not production,
            simulate_delay_s=settings.provisioning_simulate_delay_ms / 1000.0,
            development=settings.environment.lower() == "development",
        )

    def workspace_for(self, client_id: str) -> Path:
        return self.root_dir / "clients" / client_id

    def restore_workspace_for(self, client_id: str, job_id: str) -> Path:
        return self.root_dir / "restores" / client_id / job_id

    def _write_config(self, client: Client, workspace: Path) -> GeneratedConfig:
        providers = enabled_providers(client)
        try:
            workspace.mkdir(parents=True, exist_ok=True)
            (workspace / "main.tf").write_text(
                render_main_tf(
                    client,
                    providers,
                    module_source=self.module_source,
                    generated_at=datetime.now(timezone.utc),
                    development=self.development,
                ),
                encoding="utf-8",
            )
            (workspace / "variables.tf").write_text(render_variables_tf(client), encoding="utf-8")
        except OSError as exc:
            raise ProvisioningError(
                f"failed to write provisioning configuration: {exc}"
            ) from exc
        logger.info(
            "provisioning_config_generated client_id=%s workspace=%s providers=%s",
            client.id,
            workspace,
            ",".join(providers),
        )
        return GeneratedConfig(workspace=workspace, providers=providers)

    async def generate_config(self, client: Client) -> GeneratedConfig:
        return await asyncio.to_thread(self._write_config, client, self.workspace_for(client.id))

    async def prepare_restore_workspace(self, client: Client, job_id: str) -> GeneratedConfig:
        # Ephemeral restores never touch the client's long-lived workspace.
        return await asyncio.to_thread(
            self._write_config, client, self.restore_workspace_for(client.id, job_id)
        )

    def _remove_tree(self, workspace: Path) -> None:
        try:
            shutil.rmtree(workspace)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("provisioning_workspace_cleanup_failed workspace=%s error=%s", workspace, exc)
            return
        logger.info("provisioning_workspace_removed workspace=%s", workspace)

    async def discard_restore_workspace(self, client_id: str, job_id: str) -> None:
        await asyncio.to_thread(self._remove_tree, self.restore_workspace_for(client_id, job_id))

    async def run_command(
        self,
        client_id: str,
        command: ProvisioningCommand | str,
        *,
        workspace: Path | None = None,
        variables: dict[str, str] | None = None,
        plan_out: str | None = None,
        plan_file: str | None = None,
        auto_approve: bool = False,
        on_output: Callable[[str], None] | None = None,
    ) -> CommandResult:
        try:
            command = ProvisioningCommand(command)
        except ValueError as exc:
            raise ProvisioningError(f"unknown provisioning command: {command}") from exc
        cwd = workspace or self.workspace_for(client_id)
        if not cwd.is_dir():
            raise ProvisioningError(
                f"provisioning workspace not found for client {client_id}",
                command=command.value,
            )
        if self.simulate:
            return await self._simulate(client_id, command, cwd)

        args = build_args(
            command,
            variables=variables,
            plan_out=plan_out,
            plan_file=plan_file,
            auto_approve=auto_approve,
        )
        logger.info(
            "provisioning_command_started client_id=%s command=%s cwd=%s",
            client_id,
            command.value,
            cwd,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                cwd=str(cwd),
                env={**os.environ, "TF_IN_AUTOMATION": "true"},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProvisioningError(
                f"failed to start {self.binary}: {exc}", command=command.value
            ) from exc

        stdout = _Capture()
        stderr = _Capture()
        try:
            await asyncio.gather(
                self._pump(process.stdout, stdout, logging.DEBUG, on_output),
                self._pump(process.stderr, stderr, logging.WARNING, None),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            # Task shutdown: do not leave an orphaned child behind.
            await _reap(process)
            raise
        except Exception as exc:
            await _reap(process)
            logger.exception(
                "provisioning_output_failed client_id=%s command=%s", client_id, command.value
            )
            raise ProvisioningError(
                f"{command.value} output could not be read: {exc}",
                command=command.value,
                exit_code=process.returncode,
                output=stderr.text or stdout.text,
            ) from exc

        logger.info(
            "provisioning_command_exited client_id=%s command=%s exit_code=%s",
            client_id,
            command.value,
            exit_code,
        )
        if command == ProvisioningCommand.PLAN and exit_code == PLAN_CHANGES_EXIT_CODE:
            return CommandResult(
                command=command,
                exit_code=exit_code,
                output=stdout.text,
                changes=parse_change_summary(stdout.text),
                has_changes=True,
                stderr=stderr.text,
            )
        if exit_code != 0:
            logger.warning(
                "provisioning_command_failed client_id=%s command=%s exit_code=%s",
                client_id,
                command.value,
                exit_code,
            )
            raise ProvisioningError(
                f"{command.value} failed with exit code {exit_code}",
                command=command.value,
                exit_code=exit_code,
                output=stderr.text or stdout.text,
            )
        changes = None
        if command in (ProvisioningCommand.APPLY, ProvisioningCommand.PLAN):
            changes = parse_change_summary(stdout.text)
        return CommandResult(
            command=command,
            exit_code=exit_code,
            output=stdout.text,
            changes=changes,
            has_changes=False if command == ProvisioningCommand.PLAN else None,
            stderr=stderr.text,
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        capture: _Capture,
        level: int,
        on_output: Callable[[str], None] | None,
    ) -> None:
        if stream is None:
            return
        # Fixed-size reads: a single line may exceed the StreamReader line limit.
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            pending += chunk
            *complete, pending = pending.split(b"\n")
            for raw in complete:
                self._emit(raw + b"\n", capture, level, on_output)
        if pending:
            self._emit(pending, capture, level, on_output)

    def _emit(
        self,
        raw: bytes,
        capture: _Capture,
        level: int,
        on_output: Callable[[str], None] | None,
    ) -> None:
        line = raw.decode("utf-8", errors="replace")
        capture.lines.append(line)
        logger.log(level, "provisioning_output line=%s", line.rstrip()[:_LOGGED_LINE_CHARS])
        if on_output is not None:
            on_output(line)

    async def _simulate(
        self, client_id: str, command: ProvisioningCommand, cwd: Path
    ) -> CommandResult:
        logger.info(
            "provisioning_command_simulated client_id=%s command=%s", client_id, command.value
        )
        if self.simulate_delay_s:
            await asyncio.sleep(self.simulate_delay_s)
        summary = ChangeSummary(added=_SIMULATED_RESOURCE_COUNT, changed=0, destroyed=0)
        if command == ProvisioningCommand.PLAN:
            return CommandResult(
                command=command,
                exit_code=PLAN_CHANGES_EXIT_CODE,
                output=(
                    f"[simulated] plan generated for client {client_id}\n"
                    f"Plan: {summary.added} to add, {summary.changed} to change, "
                    f"{summary.destroyed} to destroy.\n"
                ),
                changes=summary,
                has_changes=True,
                simulated=True,
            )
        if command == ProvisioningCommand.APPLY:
            created = "".join(
                f"null_resource.{cwd.name}[{index}]: Creation complete after 1s "
                f"[id=null_resource.{cwd.name}-{index}]\n"
                for index in range(_SIMULATED_RESOURCE_COUNT)
            )
            return CommandResult(
                command=command,
                exit_code=0,
                output=(
                    f"[simulated] apply completed for client {client_id}\n{created}"
                    f"Apply complete! Resources: {summary.added} added, 0 changed, 0 destroyed.\n"
                ),
                changes=summary,
                simulated=True,
            )
        if command == ProvisioningCommand.DESTROY:
            return CommandResult(
                command=command,
                exit_code=0,
                output=f"[simulated] destroy completed for client {client_id}\n",
                changes=ChangeSummary(destroyed=_SIMULATED_RESOURCE_COUNT),
                simulated=True,
            )
        if command == ProvisioningCommand.OUTPUT:
            return CommandResult(
                command=command,
                exit_code=0,
                output=json.dumps(self._simulated_outputs(client_id)),
                simulated=True,
            )
        return CommandResult(
            command=command,
            exit_code=0,
            output=f"[simulated] {command.value} succeeded\n",
            simulated=True,
        )

    def _simulated_outputs(self, client_id: str) -> dict[str, Any]:
        prefix = f"arn:aws:backup:us-east-1:{_SIMULATED_ACCOUNT_ID}"
        return {
            "backup_vault_id": {
                "value": f"{prefix}:backup-vault:{client_id}-vault",
                "type": "string",
            },
            "backup_plan_id": {"value": f"{prefix}:backup-plan:{client_id}-plan", "type": "string"},
            "recovery_point_arn": {
                "value": f"{prefix}:recovery-point:{client_id}-recovery-point",
                "type": "string",
            },
        }

    async def parse_outputs(self, client_id: str, *, workspace: Path | None = None) -> dict[str, Any]:
        # Outputs are best-effort: any failure yields an empty map.
        try:
            result = await self.run_command(client_id, ProvisioningCommand.OUTPUT, workspace=workspace)
        except ProvisioningError as exc:
            logger.warning(
                "provisioning_outputs_unavailable client_id=%s error=%s", client_id, exc.message
            )
            return {}
        return parse_output_json(result.output)
