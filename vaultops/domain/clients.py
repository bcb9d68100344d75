from __future__ import annotations

from datetime import timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ClientStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class TerraformState(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    FAILED = "failed"


class DRTestFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


CLOUD_PROVIDERS: tuple[str, ...] = ("aws", "azure", "gcp")

_FREQUENCY_THRESHOLDS: dict[DRTestFrequency, timedelta] = {
    DRTestFrequency.WEEKLY: timedelta(days=7),
    DRTestFrequency.BIWEEKLY: timedelta(days=14),
    DRTestFrequency.MONTHLY: timedelta(days=30),
    DRTestFrequency.QUARTERLY: timedelta(days=90),
}


def frequency_threshold(frequency: str | DRTestFrequency | None) -> timedelta:
    # Unknown or missing frequencies fall back to the monthly cadence.
    try:
        key = DRTestFrequency(frequency) if frequency is not None else DRTestFrequency.MONTHLY
    except ValueError:
        key = DRTestFrequency.MONTHLY
    return _FREQUENCY_THRESHOLDS[key]


class AwsBackupConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    region: str = "us-east-1"
    resources: list[str] = Field(default_factory=list)
    backup_vault_name: str | None = None


class AzureBackupConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    location: str = "eastus"
    resource_group_name: str | None = None
    vm_ids: list[str] = Field(default_factory=list)
    storage_account_ids: list[str] = Field(default_factory=list)


class GcpBackupConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    project_id: str = "my-project"
    region: str = "us-central1"
    zone: str = "us-central1-a"
    compute_instances: list[str] = Field(default_factory=list)
    storage_buckets: list[str] = Field(default_factory=list)


class BackupConfig(BaseModel):
    """Typed view over a client's stored backup configuration."""

    model_config = ConfigDict(extra="allow")

    backup_type: str = "incremental"
    frequency: str = "daily"
    retention_days: int = 30
    start_time: str = "01:00"
    # None disables automated DR testing for the client.
    dr_test_frequency: str | None = DRTestFrequency.MONTHLY.value
    recovery_point_objective: str = "24h"
    recovery_time_objective: str = "4h"
    aws: AwsBackupConfig = Field(default_factory=AwsBackupConfig)
    azure: AzureBackupConfig = Field(default_factory=AzureBackupConfig)
    gcp: GcpBackupConfig = Field(default_factory=GcpBackupConfig)
