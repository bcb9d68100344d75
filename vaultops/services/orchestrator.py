from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vaultops.core.config import Settings, get_settings
from vaultops.core.errors import ConflictError, NotFoundError, ValidationError, VaultOpsError
from vaultops.domain.clients import BackupConfig, ClientStatus, TerraformState
from vaultops.domain.jobs import (
    IN_FLIGHT_STATUSES,
    PROVISIONING_JOB_TYPES,
    BackupMetadata,
    BackupResult,
    ChangeSummary,
    DRTestMetadata,
    DRTestResult,
    DRTestStepOutcome,
    JobStatus,
    JobType,
    ProviderBackupOutcome,
    ProvisionMetadata,
    ProvisionResult,
    RestoreMetadata,
    RestoreResult,
    dump_result,
    parse_result,
    sources_for,
)
from vaultops.domain.models import Client, Job
from vaultops.persistence.repos import clients as clients_repo
from vaultops.persistence.repos import jobs as jobs_repo
from vaultops.providers.cloud.base import CloudProvider
from vaultops.providers.cloud.factory import default_cloud_providers, enabled_providers
from vaultops.services.dispatch import JobDispatcher
from vaultops.services.job_views import (
    DRTestHistoryEntry,
    JobHandle,
    JobSnapshot,
    Page,
    RestoreHistoryEntry,
    RestoreStatus,
    compute_progress,
    duration_minutes,
    estimate_restore_minutes,
)
from vaultops.services.provisioning import (
    ProvisioningCommand,
    ProvisioningDriver,
    parse_restored_resources,
    restore_variables,
)
from vaultops.services.restore_policy import RestoreOverrides, RestoreSafetyPolicy
from vaultops.services.telemetry import increment_counter, record_job


logger = logging.getLogger(__name__)


PRODUCTION_ENVIRONMENT = "production"
PLAN_FILE_NAME = "vaultops.tfplan"

_PROVISION_ACTIONS: dict[str, JobType] = {
    "init": JobType.PROVISION_INIT,
    "update": JobType.PROVISION_UPDATE,
    "destroy": JobType.PROVISION_DESTROY,
    "restore": JobType.PROVISION_RESTORE,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _status_label(status: JobStatus | str) -> str:
    # success -> Success, partial_success -> PartialSuccess
    value = status.value if isinstance(status, JobStatus) else status
    return "".join(part.capitalize() for part in value.split("_"))


@dataclass(frozen=True)
class RestoreOptions:
    target_environment: str = PRODUCTION_ENVIRONMENT
    resources: list[str] | Literal["all"] = "all"
    description: str = "Manually initiated restore"
    priority: str = "high"
    initiated_by: str = "admin"
    force_trust_old_backup: bool = False
    skip_validation_check: bool = False
    # Provider-specific targeting, forwarded untouched to the gateways.
    target_resource_group: str | None = None
    target_vpc: str | None = None
    target_subnet: str | None = None
    point_in_time_recovery: str | None = None

    @property
    def is_isolated(self) -> bool:
        return self.target_environment != PRODUCTION_ENVIRONMENT

    def overrides(self) -> RestoreOverrides:
        return RestoreOverrides(
            force_trust_old_backup=self.force_trust_old_backup,
            skip_validation_check=self.skip_validation_check,
        )

    def provider_options(self) -> dict[str, Any]:
        return {
            "target_resource_group": self.target_resource_group,
            "target_vpc": self.target_vpc,
            "target_subnet": self.target_subnet,
            "point_in_time_recovery": self.point_in_time_recovery,
        }


def _check_resource_selector(resources: Any) -> None:
    # "all" or an explicit list of resource names; anything else is rejected before a job exists.
    if resources == "all":
        return
    if (
        isinstance(resources, list)
        and resources
        and all(isinstance(item, str) and item for item in resources)
    ):
        return
    raise ValidationError(
        f"resources must be 'all' or a list of resource names, got {resources!r}"
    )


@dataclass(frozen=True)
class DRTestParameters:
    verification_steps: list[str] = field(
        default_factory=lambda: ["integrity", "access", "restore"]
    )
    target_environment: str = "isolated"


@dataclass
class _Outcome:
    # Terminal write produced by a job body.
    status: JobStatus
    result: Any = None
    error_message: str | None = None
    data_size_mb: int | None = None


@dataclass(frozen=True)
class _Settled:
    provider: str
    value: Any = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None


JobBody = Callable[[], Awaitable["_Outcome | None"]]


class JobOrchestrator:
    """Creates jobs, validates preconditions and runs the work in the background.

    Every start operation validates synchronously, persists a pending job and
    returns a handle before any provider or provisioning I/O happens. Status
    writes go through compare-and-set transitions so the background task and
    a concurrent cancel can never both reach a terminal state.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: JobDispatcher,
        driver: ProvisioningDriver,
        providers: Mapping[str, CloudProvider] | None = None,
        policy: RestoreSafetyPolicy | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self.dispatcher = dispatcher
        self.driver = driver
        self._providers = dict(providers) if providers is not None else default_cloud_providers()
        self.policy = policy or RestoreSafetyPolicy(self._settings.restore_max_backup_age_days)
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    # -- shared helpers -------------------------------------------------

    def _lock_for(self, client_id: str, kind: str) -> asyncio.Lock:
        # Serializes check-then-create per client within this process.
        key = (client_id, kind)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _provider(self, name: str) -> CloudProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ValidationError(f"Cloud provider {name} is not configured")
        return provider

    def _estimate(self, backup: Job | None) -> int:
        if backup is None:
            return self._settings.restore_default_estimate_minutes
        return estimate_restore_minutes(backup.data_size_mb, self._settings.restore_base_minutes)

    async def _load_client(
        self, session: AsyncSession, client_id: str, *, require_active: bool = True
    ) -> Client:
        client = await clients_repo.get_client(session, client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")
        if require_active and client.status != ClientStatus.ACTIVE.value:
            raise ValidationError(f"Client {client_id} is not active (status {client.status})")
        return client

    async def _resolve_backup(
        self, session: AsyncSession, client_id: str, backup_id: str | None
    ) -> Job:
        if backup_id:
            backup = await jobs_repo.get_job(session, backup_id)
            if (
                backup is None
                or backup.client_id != client_id
                or backup.job_type != JobType.BACKUP.value
                or backup.status != JobStatus.SUCCESS.value
            ):
                raise ValidationError(
                    f"Backup {backup_id} not found or not available for this client"
                )
            return backup
        backup = await jobs_repo.find_one(
            session,
            client_id=client_id,
            job_type=JobType.BACKUP,
            statuses=[JobStatus.SUCCESS],
            order_by="completed_at",
        )
        if backup is None:
            raise ValidationError(f"No successful backups available for client {client_id}")
        return backup

    async def _ensure_none_in_flight(
        self, session: AsyncSession, client_id: str, job_types: Iterable[JobType], label: str
    ) -> None:
        for job_type in job_types:
            existing = await jobs_repo.find_one(
                session, client_id=client_id, job_type=job_type, statuses=IN_FLIGHT_STATUSES
            )
            if existing is not None:
                raise ConflictError(
                    f"A {label} is already in progress for client {client_id} (job {existing.id})"
                )

    async def _commit_new_job(self, session: AsyncSession, label: str, client_id: str) -> None:
        # The partial unique indexes back up the in-process lock across workers.
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise ConflictError(
                f"A {label} is already in progress for client {client_id}"
            ) from exc

    async def _transition(
        self,
        job_id: str,
        to_status: JobStatus,
        *,
        from_statuses: Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> bool:
        allowed = frozenset(from_statuses) if from_statuses is not None else sources_for(to_status)
        async with self._session_factory() as session:
            changed = await jobs_repo.transition_job(
                session, job_id, from_statuses=allowed, to_status=to_status, **fields
            )
            await session.commit()
        if changed:
            logger.info("job_transition job_id=%s to=%s", job_id, to_status.value)
        else:
            logger.info("job_transition_skipped job_id=%s to=%s", job_id, to_status.value)
        return changed

    def _dispatch(
        self,
        job: Job,
        body: JobBody,
        *,
        on_finish: Callable[[JobStatus], Awaitable[None]] | None = None,
    ) -> None:
        job_id = job.id
        job_type = job.job_type

        async def work() -> None:
            await self._run_job(job_id, job_type, body, on_finish)

        self.dispatcher.submit(job_id, work)

    async def _run_job(
        self,
        job_id: str,
        job_type: str,
        body: JobBody,
        on_finish: Callable[[JobStatus], Awaitable[None]] | None,
    ) -> None:
        started_at = _utc_now()
        # Pending -> Running happens exactly once; a cancelled job never starts.
        if not await self._transition(job_id, JobStatus.RUNNING, started_at=started_at):
            return
        try:
            outcome = await body()
        except VaultOpsError as exc:
            logger.warning(
                "job_failed job_id=%s job_type=%s code=%s error=%s",
                job_id,
                job_type,
                exc.code,
                exc.message,
            )
            outcome = _Outcome(status=JobStatus.FAILED, error_message=exc.message)
        except Exception as exc:  # noqa: BLE001 - background failures are recorded on the job
            logger.exception("job_failed job_id=%s job_type=%s", job_id, job_type)
            outcome = _Outcome(status=JobStatus.FAILED, error_message=str(exc) or type(exc).__name__)
        if outcome is None:
            # Body observed a concurrent cancel and stopped early.
            return
        completed_at = _utc_now()
        fields: dict[str, Any] = {"completed_at": completed_at}
        if outcome.result is not None:
            fields["result_json"] = dump_result(outcome.result)
        if outcome.error_message is not None:
            fields["error_message"] = outcome.error_message
        if outcome.data_size_mb is not None:
            fields["data_size_mb"] = outcome.data_size_mb
        finished = await self._transition(job_id, outcome.status, **fields)
        if not finished:
            return
        record_job(
            job_type=job_type,
            status=outcome.status.value,
            duration_ms=(completed_at - started_at).total_seconds() * 1000.0,
        )
        if on_finish is not None:
            await on_finish(outcome.status)

    async def _settle(
        self, calls: Mapping[str, Callable[[], Awaitable[Any]]]
    ) -> list[_Settled]:
        # Wait for every provider call regardless of individual failure.
        names = list(calls)
        results = await asyncio.gather(*(calls[name]() for name in names), return_exceptions=True)
        settled: list[_Settled] = []
        for name, value in zip(names, results):
            if isinstance(value, Exception):
                logger.warning("provider_call_failed provider=%s error=%s", name, value)
                increment_counter(f"provider_failures_total.{name}")
                reason = str(value) or type(value).__name__
                if not reason.startswith(f"{name}:"):
                    reason = f"{name}: {reason}"
                settled.append(_Settled(provider=name, reason=reason))
            elif isinstance(value, BaseException):
                raise value
            else:
                settled.append(_Settled(provider=name, value=value))
        return settled

    # -- backups ----------------------------------------------------------

    async def start_backup(self, client_id: str, *, initiated_by: str | None = None) -> JobHandle:
        async with self._session_factory() as session:
            client = await self._load_client(session, client_id)
            providers = enabled_providers(client)
            config = BackupConfig.model_validate(client.backup_config or {})
            metadata = BackupMetadata(
                backup_type=config.backup_type,
                trigger="manual",
                providers=providers,
                initiated_by=initiated_by,
            )
            job = await jobs_repo.create_job(
                session,
                client_id=client.id,
                job_type=JobType.BACKUP,
                provider=providers[0] if len(providers) == 1 else None,
                is_manual=True,
                description=f"{config.backup_type} backup",
                metadata_json=metadata.model_dump(mode="json"),
            )
            await session.commit()
        logger.info("backup_job_created job_id=%s client_id=%s", job.id, client.id)
        self._dispatch(job, lambda: self._execute_backup(client, providers))
        return JobHandle(
            job_id=job.id,
            client_id=client.id,
            job_type=job.job_type,
            status=job.status,
            message="Backup started",
        )

    async def _execute_backup(self, client: Client, providers: list[str]) -> _Outcome:
        if not providers:
            return _Outcome(JobStatus.FAILED, error_message="Client has no enabled cloud providers")
        settled = await self._settle(
            {
                name: (lambda provider=self._provider(name): provider.start_backup(client))
                for name in providers
            }
        )
        failures = [item.reason for item in settled if not item.ok]
        if failures:
            return _Outcome(JobStatus.FAILED, error_message="; ".join(failures))
        outcomes = [
            ProviderBackupOutcome(
                provider=item.provider,
                backup_id=str(item.value.get("backup_id", "")),
                recovery_point_id=str(item.value.get("recovery_point_id", "")),
                data_size_mb=int(item.value.get("data_size_mb") or 0),
                status=str(item.value.get("status", "completed")),
            )
            for item in settled
        ]
        total = sum(outcome.data_size_mb for outcome in outcomes)
        return _Outcome(
            JobStatus.SUCCESS,
            result=BackupResult(providers=outcomes, total_data_size_mb=total),
            data_size_mb=total,
        )

    # -- restores -----------------------------------------------------------

    async def start_restore(
        self,
        client_id: str,
        backup_id: str | None = None,
        options: RestoreOptions | None = None,
    ) -> JobHandle:
        options = options or RestoreOptions()
        _check_resource_selector(options.resources)
        async with self._lock_for(client_id, "restore"):
            async with self._session_factory() as session:
                client = await self._load_client(session, client_id, require_active=False)
                await self._ensure_none_in_flight(session, client_id, [JobType.RESTORE], "restore")
                backup = await self._resolve_backup(session, client_id, backup_id)
                estimated = self._estimate(backup)
                metadata = RestoreMetadata(
                    target_environment=options.target_environment,
                    is_isolated=options.is_isolated,
                    resources=options.resources,
                    recovery_point=backup.completed_at,
                    estimated_minutes=estimated,
                    description=options.description,
                    priority=options.priority,
                    initiated_by=options.initiated_by,
                    provider_options={
                        key: value
                        for key, value in options.provider_options().items()
                        if value is not None
                    },
                )
                job = await jobs_repo.create_job(
                    session,
                    client_id=client_id,
                    job_type=JobType.RESTORE,
                    provider=backup.provider,
                    source_backup_id=backup.id,
                    is_manual=True,
                    description=options.description,
                    metadata_json=metadata.model_dump(mode="json"),
                )
                await self._commit_new_job(session, "restore", client_id)
        logger.info(
            "restore_job_created job_id=%s client_id=%s backup_id=%s isolated=%s",
            job.id,
            client_id,
            backup.id,
            options.is_isolated,
        )
        if options.is_isolated:
            self._dispatch(job, lambda: self._execute_isolated_restore(client, backup, job.id))
        else:
            self._dispatch(job, lambda: self._execute_production_restore(client, backup, options))
        return JobHandle(
            job_id=job.id,
            client_id=client_id,
            job_type=job.job_type,
            status=job.status,
            source_backup_id=backup.id,
            estimated_minutes=estimated,
            target_environment=options.target_environment,
            message=f"Restore to {options.target_environment} environment started",
        )

    async def _execute_isolated_restore(self, client: Client, backup: Job, job_id: str) -> _Outcome:
        try:
            return await self._apply_isolated_restore(client, backup, job_id)
        finally:
            # Removed before the terminal status is written, whether apply succeeded or not.
            await self.driver.discard_restore_workspace(client.id, job_id)

    async def _apply_isolated_restore(self, client: Client, backup: Job, job_id: str) -> _Outcome:
        generated = await self.driver.prepare_restore_workspace(client, job_id)
        await self.driver.run_command(
            client.id, ProvisioningCommand.INIT, workspace=generated.workspace
        )
        backup_result = parse_result(backup.result_json)
        recovery_point = (
            backup_result.recovery_point_id(backup.provider)
            if isinstance(backup_result, BackupResult)
            else None
        )
        applied = await self.driver.run_command(
            client.id,
            ProvisioningCommand.APPLY,
            workspace=generated.workspace,
            variables=restore_variables(backup, recovery_point),
            auto_approve=True,
        )
        restored = parse_restored_resources(applied.output)
        logger.info(
            "isolated_restore_applied job_id=%s restored=%s", job_id, len(restored)
        )
        return _Outcome(
            JobStatus.SUCCESS,
            result=RestoreResult(
                isolated=True,
                terraform_output=applied.output,
                restored_resources=restored,
            ),
        )

    async def _execute_production_restore(
        self, client: Client, backup: Job, options: RestoreOptions
    ) -> _Outcome:
        async with self._session_factory() as session:
            verification = await jobs_repo.find_one(
                session,
                job_type=JobType.DR_TEST,
                source_backup_id=backup.id,
                statuses=[JobStatus.SUCCESS],
            )
        # Policy rejection is this job's failure; the caller already holds the job id.
        self.policy.validate(backup, options.overrides(), verified_by_dr_test=verification is not None)

        providers = enabled_providers(client)
        if not providers:
            return _Outcome(JobStatus.FAILED, error_message="Client has no enabled cloud providers")
        provider_options = options.provider_options()
        settled = await self._settle(
            {
                name: (
                    lambda provider=self._provider(name): provider.start_restore(
                        client, backup, provider_options
                    )
                )
                for name in providers
            }
        )
        successes = [item.value for item in settled if item.ok]
        failures = [item.reason for item in settled if not item.ok]
        if not failures:
            restored: list[dict[str, Any]] = []
            for payload in successes:
                restored.extend(payload.get("restored_resources") or [])
            return _Outcome(
                JobStatus.SUCCESS,
                result=RestoreResult(isolated=False, restored_resources=restored, successes=successes),
            )
        if not successes:
            return _Outcome(
                JobStatus.FAILED,
                result=RestoreResult(isolated=False, failures=failures),
                error_message="; ".join(failures),
            )
        return _Outcome(
            JobStatus.PARTIAL_SUCCESS,
            result=RestoreResult(isolated=False, successes=successes, failures=failures),
            error_message=f"Partial restore: {len(failures)} providers failed",
        )

    async def cancel_restore(self, job_id: str) -> JobSnapshot:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None or job.job_type != JobType.RESTORE.value:
                raise NotFoundError(f"Restore job {job_id} not found")
            self._ensure_cancellable(job)
            client = await clients_repo.get_client(session, job.client_id)
        provider_name = job.provider
        if provider_name is None and client is not None:
            candidates = enabled_providers(client)
            provider_name = candidates[0] if candidates else None
        if provider_name is not None and provider_name in self._providers:
            try:
                await self._providers[provider_name].cancel_restore(job)
            except Exception as exc:  # noqa: BLE001 - downstream cancel is best-effort
                logger.warning(
                    "restore_cancel_signal_failed job_id=%s provider=%s error=%s",
                    job_id,
                    provider_name,
                    exc,
                )
        return await self._mark_cancelled(job)

    async def cancel_job(self, job_id: str) -> JobSnapshot:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            self._ensure_cancellable(job)
        return await self._mark_cancelled(job)

    def _ensure_cancellable(self, job: Job) -> None:
        if job.status not in {status.value for status in IN_FLIGHT_STATUSES}:
            raise ValidationError(f"Cannot cancel a job with status {_status_label(job.status)}")

    async def _mark_cancelled(self, job: Job) -> JobSnapshot:
        changed = await self._transition(
            job.id,
            JobStatus.CANCELLED,
            from_statuses=IN_FLIGHT_STATUSES,
            completed_at=_utc_now(),
            error_message="Cancelled by operator",
        )
        if not changed:
            # The background task won the race to a terminal state.
            current = await self.get_status(job.id)
            raise ValidationError(f"Cannot cancel a job with status {_status_label(current.status)}")
        increment_counter("jobs_cancelled_total")
        if JobType(job.job_type) in PROVISIONING_JOB_TYPES:
            # The workspace may be half-applied; flag it for a fresh init.
            await self._set_terraform_state(job.client_id, TerraformState.FAILED)
        return await self.get_status(job.id)

    # -- DR tests -------------------------------------------------------------

    async def start_dr_test(
        self,
        client_id: str,
        backup_id: str | None = None,
        parameters: DRTestParameters | None = None,
        *,
        automated: bool = False,
    ) -> JobHandle:
        parameters = parameters or DRTestParameters()
        async with self._lock_for(client_id, "dr_test"):
            async with self._session_factory() as session:
                client = await self._load_client(session, client_id)
                backup = await self._resolve_backup(session, client_id, backup_id)
                await self._ensure_none_in_flight(session, client_id, [JobType.DR_TEST], "DR test")
                config = BackupConfig.model_validate(client.backup_config or {})
                metadata = DRTestMetadata(
                    test_type="automated" if automated else "manual",
                    verification_steps=list(parameters.verification_steps),
                    target_environment=parameters.target_environment,
                    recovery_point_objective=config.recovery_point_objective or "N/A",
                    recovery_time_objective=config.recovery_time_objective or "N/A",
                )
                job = await jobs_repo.create_job(
                    session,
                    client_id=client_id,
                    job_type=JobType.DR_TEST,
                    provider=backup.provider,
                    source_backup_id=backup.id,
                    is_automated=automated,
                    is_manual=not automated,
                    description="DR test",
                    metadata_json=metadata.model_dump(mode="json"),
                )
                await self._commit_new_job(session, "DR test", client_id)
        logger.info(
            "dr_test_job_created job_id=%s client_id=%s backup_id=%s automated=%s",
            job.id,
            client_id,
            backup.id,
            automated,
        )
        steps = list(metadata.verification_steps)
        self._dispatch(job, lambda: self._execute_dr_test(client, backup, steps))
        return JobHandle(
            job_id=job.id,
            client_id=client_id,
            job_type=job.job_type,
            status=job.status,
            source_backup_id=backup.id,
            target_environment=parameters.target_environment,
            message="DR test scheduled" if automated else "DR test started",
        )

    async def _execute_dr_test(self, client: Client, backup: Job, steps: list[str]) -> _Outcome:
        if backup.provider:
            providers = [backup.provider]
        else:
            backup_result = parse_result(backup.result_json)
            providers = (
                [outcome.provider for outcome in backup_result.providers]
                if isinstance(backup_result, BackupResult) and backup_result.providers
                else enabled_providers(client)
            )
        if not providers:
            return _Outcome(JobStatus.FAILED, error_message="Client has no enabled cloud providers")
        settled = await self._settle(
            {
                name: (
                    lambda provider=self._provider(name): provider.verify_backup(
                        client, backup, steps
                    )
                )
                for name in providers
            }
        )
        outcomes = [
            DRTestStepOutcome(
                provider=str(step.get("provider", item.provider)),
                step=str(step.get("step", "")),
                passed=bool(step.get("passed")),
                detail=str(step.get("detail", "")),
            )
            for item in settled
            if item.ok
            for step in (item.value or [])
        ]
        failures = [item.reason for item in settled if not item.ok]
        failures += [
            f"{outcome.provider}: {outcome.step} failed"
            for outcome in outcomes
            if not outcome.passed
        ]
        result = DRTestResult(steps=outcomes, failures=failures)
        if result.passed:
            return _Outcome(JobStatus.SUCCESS, result=result)
        return _Outcome(JobStatus.FAILED, result=result, error_message="; ".join(failures))

    # -- provisioning -----------------------------------------------------------

    async def start_provisioning(
        self,
        client_id: str,
        action: str,
        backup_id: str | None = None,
        *,
        initiated_by: str | None = None,
    ) -> JobHandle:
        job_type = _PROVISION_ACTIONS.get((action or "").lower())
        if job_type is None:
            raise ValidationError(
                f"Unknown provisioning action {action}; expected one of {', '.join(_PROVISION_ACTIONS)}"
            )
        async with self._lock_for(client_id, "provision"):
            async with self._session_factory() as session:
                client = await self._load_client(session, client_id, require_active=False)
                await self._ensure_none_in_flight(
                    session, client_id, sorted(PROVISIONING_JOB_TYPES), "provisioning job"
                )
                backup: Job | None = None
                variables: dict[str, str] = {}
                if job_type == JobType.PROVISION_RESTORE:
                    backup = await self._resolve_backup(session, client_id, backup_id)
                    backup_result = parse_result(backup.result_json)
                    recovery_point = (
                        backup_result.recovery_point_id(backup.provider)
                        if isinstance(backup_result, BackupResult)
                        else None
                    )
                    variables = restore_variables(backup, recovery_point)
                metadata = ProvisionMetadata(
                    action=action.lower(), variables=variables, initiated_by=initiated_by
                )
                job = await jobs_repo.create_job(
                    session,
                    client_id=client_id,
                    job_type=job_type,
                    source_backup_id=backup.id if backup is not None else None,
                    is_manual=True,
                    description=f"provisioning {action.lower()}",
                    metadata_json=metadata.model_dump(mode="json"),
                )
                await clients_repo.set_terraform_state(
                    session, client_id, TerraformState.INITIALIZING
                )
                await self._commit_new_job(session, "provisioning job", client_id)
        logger.info(
            "provisioning_job_created job_id=%s client_id=%s action=%s", job.id, client_id, action
        )

        async def on_finish(status: JobStatus) -> None:
            if status == JobStatus.SUCCESS:
                state = (
                    TerraformState.NOT_INITIALIZED
                    if job_type == JobType.PROVISION_DESTROY
                    else TerraformState.INITIALIZED
                )
            else:
                state = TerraformState.FAILED
            await self._set_terraform_state(client_id, state)

        self._dispatch(
            job,
            lambda: self._execute_provisioning(client, job.id, job_type, variables),
            on_finish=on_finish,
        )
        return JobHandle(
            job_id=job.id,
            client_id=client_id,
            job_type=job.job_type,
            status=job.status,
            source_backup_id=job.source_backup_id,
            message=f"Provisioning {action.lower()} started",
        )

    async def _set_terraform_state(self, client_id: str, state: TerraformState) -> None:
        async with self._session_factory() as session:
            await clients_repo.set_terraform_state(session, client_id, state)
            await session.commit()
        logger.info("terraform_state_changed client_id=%s state=%s", client_id, state.value)

    async def _execute_provisioning(
        self, client: Client, job_id: str, job_type: JobType, variables: dict[str, str]
    ) -> _Outcome | None:
        workspace = self.driver.workspace_for(client.id)
        if job_type == JobType.PROVISION_DESTROY:
            destroyed = await self.driver.run_command(
                client.id, ProvisioningCommand.DESTROY, auto_approve=True
            )
            return _Outcome(
                JobStatus.SUCCESS,
                result=ProvisionResult(
                    command=ProvisioningCommand.DESTROY.value,
                    changes=destroyed.changes,
                    workspace=str(workspace),
                ),
            )

        if job_type in (JobType.PROVISION_INIT, JobType.PROVISION_UPDATE) or not workspace.is_dir():
            await self.driver.generate_config(client)
            await self.driver.run_command(client.id, ProvisioningCommand.INIT)
            await self.driver.run_command(client.id, ProvisioningCommand.VALIDATE)

        planned = await self.driver.run_command(
            client.id, ProvisioningCommand.PLAN, variables=variables, plan_out=PLAN_FILE_NAME
        )
        if not planned.has_changes:
            return _Outcome(
                JobStatus.SUCCESS,
                result=ProvisionResult(
                    command=ProvisioningCommand.PLAN.value,
                    changes=planned.changes or ChangeSummary(),
                    has_changes=False,
                    outputs=await self.driver.parse_outputs(client.id),
                    workspace=str(workspace),
                ),
            )
        if not await self._transition(
            job_id, JobStatus.PLANNING_COMPLETED, from_statuses=[JobStatus.RUNNING]
        ):
            return None
        # Saved plans already carry their variables.
        applied = await self.driver.run_command(
            client.id, ProvisioningCommand.APPLY, plan_file=PLAN_FILE_NAME, auto_approve=True
        )
        return _Outcome(
            JobStatus.SUCCESS,
            result=ProvisionResult(
                command=ProvisioningCommand.APPLY.value,
                changes=applied.changes or planned.changes,
                has_changes=True,
                outputs=await self.driver.parse_outputs(client.id),
                workspace=str(workspace),
            ),
        )

    # -- queries ----------------------------------------------------------------

    async def _progress(self, session: AsyncSession, job: Job) -> int:
        backup = None
        if job.source_backup_id and job.status in {
            JobStatus.RUNNING.value,
            JobStatus.PLANNING_COMPLETED.value,
        }:
            backup = await jobs_repo.get_job(session, job.source_backup_id)
        return compute_progress(job.status, job.started_at, self._estimate(backup))

    async def get_status(self, job_id: str) -> JobSnapshot:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return JobSnapshot.from_job(job, progress=await self._progress(session, job))

    async def get_restore_status(self, job_id: str) -> RestoreStatus:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None or job.job_type != JobType.RESTORE.value:
                raise NotFoundError(f"Restore job {job_id} not found")
            progress = await self._progress(session, job)
        metadata = job.metadata_json or {}
        result = parse_result(job.result_json)
        return RestoreStatus(
            id=job.id,
            client_id=job.client_id,
            status=job.status,
            progress=progress,
            started_at=job.started_at,
            completed_at=job.completed_at,
            source_backup_id=job.source_backup_id,
            provider=job.provider,
            target_environment=metadata.get("target_environment", PRODUCTION_ENVIRONMENT),
            is_isolated=bool(metadata.get("is_isolated", False)),
            resources=metadata.get("resources", "all"),
            error_message=job.error_message,
            restored_resources=(
                result.restored_resources if isinstance(result, RestoreResult) else []
            ),
        )

    def _page_size(self, limit: int | None) -> int:
        if limit is None:
            return self._settings.default_page_size
        return max(1, min(int(limit), self._settings.max_page_size))

    async def list_jobs(
        self,
        *,
        client_id: str | None = None,
        job_type: JobType | str | None = None,
        status: JobStatus | str | None = None,
        page: int = 1,
        limit: int | None = None,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Page[JobSnapshot]:
        async with self._session_factory() as session:
            result = await jobs_repo.paginate_jobs(
                session,
                client_id=client_id,
                job_type=job_type,
                status=status,
                page=page,
                limit=self._page_size(limit),
                sort_by=sort_by,
                descending=descending,
            )
            items = [
                JobSnapshot.from_job(job, progress=await self._progress(session, job))
                for job in result.items
            ]
        return Page[JobSnapshot](
            items=items, total=result.total, page=result.page, pages=result.pages, limit=result.limit
        )

    async def restore_history(
        self, client_id: str, *, page: int = 1, limit: int | None = None
    ) -> Page[RestoreHistoryEntry]:
        async with self._session_factory() as session:
            result = await jobs_repo.paginate_jobs(
                session,
                client_id=client_id,
                job_type=JobType.RESTORE,
                page=page,
                limit=self._page_size(limit),
            )
        items = [
            RestoreHistoryEntry(
                id=job.id,
                date=job.started_at or job.created_at,
                completed_at=job.completed_at,
                status=job.status,
                target_environment=(job.metadata_json or {}).get(
                    "target_environment", PRODUCTION_ENVIRONMENT
                ),
                is_isolated=bool((job.metadata_json or {}).get("is_isolated", False)),
                duration_minutes=duration_minutes(job),
                provider=job.provider,
                source_backup_id=job.source_backup_id,
            )
            for job in result.items
        ]
        return Page[RestoreHistoryEntry](
            items=items, total=result.total, page=result.page, pages=result.pages, limit=result.limit
        )

    async def dr_test_history(
        self, client_id: str, *, page: int = 1, limit: int | None = None
    ) -> Page[DRTestHistoryEntry]:
        async with self._session_factory() as session:
            result = await jobs_repo.paginate_jobs(
                session,
                client_id=client_id,
                job_type=JobType.DR_TEST,
                page=page,
                limit=self._page_size(limit),
            )
        items = [
            DRTestHistoryEntry(
                id=job.id,
                date=job.started_at or job.created_at,
                completed_at=job.completed_at,
                status=job.status,
                is_automated=job.is_automated,
                recovery_time_minutes=duration_minutes(job),
                provider=job.provider,
                source_backup_id=job.source_backup_id,
            )
            for job in result.items
        ]
        return Page[DRTestHistoryEntry](
            items=items, total=result.total, page=result.page, pages=result.pages, limit=result.limit
        )

    async def count_by_status(self, client_id: str | None = None) -> dict[str, int]:
        async with self._session_factory() as session:
            return await jobs_repo.count_by_status(session, client_id)


_orchestrator: JobOrchestrator | None = None


def get_orchestrator() -> JobOrchestrator:
    # Process-wide orchestrator shared by the API, worker and scripts.
    global _orchestrator
    if _orchestrator is None:
        from vaultops.persistence.db import SessionLocal

        settings = get_settings()
        _orchestrator = JobOrchestrator(
            session_factory=SessionLocal,
            dispatcher=JobDispatcher(settings.job_max_concurrency),
            driver=ProvisioningDriver.from_settings(settings),
            settings=settings,
        )
    return _orchestrator


async def reset_orchestrator() -> None:
    # Tests and shutdown hooks drop the singleton after cancelling its tasks.
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.dispatcher.shutdown()
    _orchestrator = None
