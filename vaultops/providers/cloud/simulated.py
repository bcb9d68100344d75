from __future__ import annotations

import asyncio
import hashlib
from typing import Any

from vaultops.domain.clients import BackupConfig
from vaultops.domain.models import Client, Job


_ACCOUNT_ID = "123456789012"
_DEFAULT_RESOURCE_SIZE_MB = 10 * 1024


def _short_hash(*parts: str) -> str:
    # Stable ids keep simulated payloads reproducible across runs.
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()[:12]


class SimulatedCloudProvider:
    """Deterministic stand-in for the AWS/Azure/GCP SDK calls."""

    def __init__(self, name: str, *, latency_s: float = 0.0) -> None:
        self.name = name
        self._latency_s = latency_s

    async def _pause(self) -> None:
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)

    def _location(self, config: BackupConfig) -> str:
        if self.name == "aws":
            return config.aws.region
        if self.name == "azure":
            return config.azure.location
        return config.gcp.region

    def _resources(self, client: Client, config: BackupConfig) -> list[str]:
        if self.name == "aws":
            configured = list(config.aws.resources)
        elif self.name == "azure":
            configured = list(config.azure.vm_ids) + list(config.azure.storage_account_ids)
        else:
            configured = list(config.gcp.compute_instances) + list(config.gcp.storage_buckets)
        return configured or [f"{self.name}-{client.id}-default"]

    def _recovery_point(
        self, client: Client, config: BackupConfig, backup_id: str, location: str
    ) -> str:
        if self.name == "aws":
            return f"arn:aws:backup:{location}:{_ACCOUNT_ID}:recovery-point:{backup_id}"
        if self.name == "azure":
            return f"/subscriptions/sim/resourceGroups/{client.id}-rg/recoveryPoints/{backup_id}"
        return f"projects/{config.gcp.project_id}/backups/{backup_id}"

    async def start_backup(self, client: Client) -> dict[str, Any]:
        await self._pause()
        config = BackupConfig.model_validate(client.backup_config or {})
        location = self._location(config)
        resources = self._resources(client, config)
        backup_id = f"{self.name}-backup-{_short_hash(self.name, client.id, str(len(resources)))}"
        return {
            "provider": self.name,
            "backup_id": backup_id,
            "recovery_point_id": self._recovery_point(client, config, backup_id, location),
            "data_size_mb": _DEFAULT_RESOURCE_SIZE_MB * len(resources),
            "status": "completed",
            "location": location,
            "resources": resources,
        }

    async def start_restore(
        self, client: Client, backup: Job, options: dict[str, Any]
    ) -> dict[str, Any]:
        await self._pause()
        config = BackupConfig.model_validate(client.backup_config or {})
        resources = self._resources(client, config)
        restore_id = f"{self.name}-restore-{_short_hash(self.name, client.id, backup.id)}"
        return {
            "provider": self.name,
            "restore_id": restore_id,
            "status": "started",
            "target": {key: value for key, value in options.items() if value is not None},
            "restored_resources": [
                {"id": resource, "provider": self.name, "status": "restored"}
                for resource in resources
            ],
        }

    async def cancel_restore(self, job: Job) -> None:
        await self._pause()

    async def verify_backup(
        self, client: Client, backup: Job, steps: list[str]
    ) -> list[dict[str, Any]]:
        await self._pause()
        return [
            {"provider": self.name, "step": step, "passed": True, "detail": f"{step} verified"}
            for step in steps
        ]
