from __future__ import annotations

from typing import Any, Protocol

from vaultops.domain.models import Client, Job


class CloudProvider(Protocol):
    """Per-provider gateway; each call is independent and never aggregates."""

    name: str

    async def start_backup(self, client: Client) -> dict[str, Any]:
        ...

    async def start_restore(
        self, client: Client, backup: Job, options: dict[str, Any]
    ) -> dict[str, Any]:
        ...

    async def cancel_restore(self, job: Job) -> None:
        ...

    async def verify_backup(
        self, client: Client, backup: Job, steps: list[str]
    ) -> list[dict[str, Any]]:
        ...
