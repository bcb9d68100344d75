from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class JobType(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    DR_TEST = "dr_test"
    PROVISION_INIT = "provision_init"
    PROVISION_UPDATE = "provision_update"
    PROVISION_DESTROY = "provision_destroy"
    PROVISION_RESTORE = "provision_restore"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    # Provisioning-only sub-state of running: plan found changes, apply not yet done.
    PLANNING_COMPLETED = "planning_completed"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELLED = "cancelled"


PROVISIONING_JOB_TYPES = frozenset(
    {
        JobType.PROVISION_INIT,
        JobType.PROVISION_UPDATE,
        JobType.PROVISION_DESTROY,
        JobType.PROVISION_RESTORE,
    }
)

TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCESS, JobStatus.PARTIAL_SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED}
)
RUNNING_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.PLANNING_COMPLETED})
IN_FLIGHT_STATUSES = frozenset({JobStatus.PENDING}) | RUNNING_STATUSES

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.PLANNING_COMPLETED}) | TERMINAL_STATUSES,
    JobStatus.PLANNING_COMPLETED: TERMINAL_STATUSES,
}


def transition_allowed(current: JobStatus | str, target: JobStatus | str) -> bool:
    # Terminal states have no outgoing edges; planning_completed only hangs off running.
    return JobStatus(target) in _ALLOWED_TRANSITIONS.get(JobStatus(current), frozenset())


def sources_for(target: JobStatus) -> frozenset[JobStatus]:
    # Inverse of the transition table, used for conditional status writes.
    return frozenset(
        current for current, targets in _ALLOWED_TRANSITIONS.items() if target in targets
    )


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def is_in_flight(status: JobStatus | str) -> bool:
    return JobStatus(status) in IN_FLIGHT_STATUSES


# -- typed metadata ---------------------------------------------------------


class BackupMetadata(BaseModel):
    backup_type: str = "incremental"
    trigger: Literal["manual", "scheduled"] = "manual"
    providers: list[str] = Field(default_factory=list)
    initiated_by: str | None = None


class RestoreMetadata(BaseModel):
    target_environment: str
    is_isolated: bool
    resources: list[str] | Literal["all"] = "all"
    recovery_point: datetime | None = None
    estimated_minutes: int
    description: str = "Manually initiated restore"
    priority: str = "high"
    initiated_by: str = "admin"
    provider_options: dict[str, Any] = Field(default_factory=dict)


class DRTestMetadata(BaseModel):
    test_type: Literal["manual", "automated"]
    verification_steps: list[str] = Field(default_factory=lambda: ["integrity", "access", "restore"])
    target_environment: str = "isolated"
    recovery_point_objective: str = "N/A"
    recovery_time_objective: str = "N/A"


class ProvisionMetadata(BaseModel):
    action: Literal["init", "update", "destroy", "restore"]
    variables: dict[str, str] = Field(default_factory=dict)
    initiated_by: str | None = None


# -- tagged result union ----------------------------------------------------


class ProviderBackupOutcome(BaseModel):
    provider: str
    backup_id: str
    recovery_point_id: str
    data_size_mb: int = 0
    status: str = "completed"


class BackupResult(BaseModel):
    kind: Literal["backup"] = "backup"
    providers: list[ProviderBackupOutcome] = Field(default_factory=list)
    total_data_size_mb: int = 0

    def recovery_point_id(self, provider: str | None = None) -> str | None:
        for outcome in self.providers:
            if provider is None or outcome.provider == provider:
                return outcome.recovery_point_id
        return None


class RestoreResult(BaseModel):
    kind: Literal["restore"] = "restore"
    isolated: bool
    restored_resources: list[dict[str, Any]] = Field(default_factory=list)
    terraform_output: str | None = None
    successes: list[dict[str, Any]] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)


class DRTestStepOutcome(BaseModel):
    provider: str
    step: str
    passed: bool
    detail: str = ""


class DRTestResult(BaseModel):
    kind: Literal["dr_test"] = "dr_test"
    steps: list[DRTestStepOutcome] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures and all(step.passed for step in self.steps)


class ChangeSummary(BaseModel):
    added: int = 0
    changed: int = 0
    destroyed: int = 0


class ProvisionResult(BaseModel):
    kind: Literal["provision"] = "provision"
    command: str
    changes: ChangeSummary | None = None
    has_changes: bool | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)
    workspace: str | None = None


JobResult = Annotated[
    Union[BackupResult, RestoreResult, DRTestResult, ProvisionResult],
    Field(discriminator="kind"),
]

_result_adapter: TypeAdapter[JobResult] = TypeAdapter(JobResult)


def parse_result(payload: dict[str, Any] | None) -> JobResult | None:
    # Rehydrate stored result JSON into its typed variant.
    if not payload:
        return None
    return _result_adapter.validate_python(payload)


def dump_result(result: BaseModel) -> dict[str, Any]:
    return result.model_dump(mode="json")
