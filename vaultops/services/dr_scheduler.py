from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vaultops.core.errors import VaultOpsError
from vaultops.domain.clients import BackupConfig, ClientStatus, frequency_threshold
from vaultops.domain.jobs import JobType
from vaultops.domain.models import Client
from vaultops.persistence.repos import clients as clients_repo
from vaultops.persistence.repos import jobs as jobs_repo
from vaultops.services.orchestrator import JobOrchestrator
from vaultops.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def is_due(
    last_automated_test_at: datetime | None,
    frequency: str | None,
    *,
    now: datetime | None = None,
) -> bool:
    # Never tested means due; otherwise strictly older than the cadence threshold.
    if last_automated_test_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return (now - last_automated_test_at) > frequency_threshold(frequency)


@dataclass
class SweepResult:
    job_ids: list[str] = field(default_factory=list)
    # client_id -> reason the client was due but no job was created.
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.job_ids)


class DRCadenceScheduler:
    """Creates automated DR tests for active clients whose cadence has elapsed.

    The sweep only creates pending jobs through the orchestrator; it never
    waits for them. A failure for one client is recorded in ``skipped`` and
    does not abort the sweep.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._orchestrator = orchestrator
        self._session_factory = session_factory

    async def _due_clients(self, now: datetime) -> list[Client]:
        due: list[Client] = []
        async with self._session_factory() as session:
            for client in await clients_repo.list_clients(session, status=ClientStatus.ACTIVE):
                frequency = BackupConfig.model_validate(client.backup_config or {}).dr_test_frequency
                if frequency is None:
                    continue
                last = await jobs_repo.find_one(
                    session,
                    client_id=client.id,
                    job_type=JobType.DR_TEST,
                    is_automated=True,
                    order_by="created_at",
                )
                if is_due(last.created_at if last is not None else None, frequency, now=now):
                    due.append(client)
        return due

    async def schedule_periodic_dr_tests(self, *, now: datetime | None = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        result = SweepResult()
        for client in await self._due_clients(now):
            try:
                handle = await self._orchestrator.start_dr_test(client.id, automated=True)
            except VaultOpsError as exc:
                # Typically no successful backup yet, or a DR test already in flight.
                logger.info(
                    "dr_sweep_client_skipped client_id=%s code=%s reason=%s",
                    client.id,
                    exc.code,
                    exc.message,
                )
                result.skipped[client.id] = exc.message
                continue
            except Exception as exc:  # noqa: BLE001 - one client must not abort the sweep
                logger.exception("dr_sweep_client_failed client_id=%s", client.id)
                result.skipped[client.id] = str(exc) or type(exc).__name__
                continue
            result.job_ids.append(handle.job_id)
        increment_counter("dr_sweeps_total")
        increment_counter("dr_tests_scheduled_total", result.count)
        logger.info(
            "dr_sweep_completed scheduled=%s skipped=%s", result.count, len(result.skipped)
        )
        return result
