from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from vaultops.domain.clients import ClientStatus, TerraformState
from vaultops.domain.jobs import JobStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class UTCDateTime(TypeDecorator):
    # SQLite drops tzinfo on the way back; always hand out aware UTC datetimes.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")

_IN_FLIGHT_SQL = "status IN ('pending', 'running', 'planning_completed')"


def _inflight_unique_index(name: str, type_clause: str) -> Index:
    # Partial unique index; both Postgres and SQLite honour the WHERE clause.
    where = text(f"{type_clause} AND {_IN_FLIGHT_SQL}")
    return Index(name, "client_id", unique=True, postgresql_where=where, sqlite_where=where)


class Base(DeclarativeBase):
    pass


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (Index("ix_clients_status", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Deployment tier of the client's own workloads (dev/staging/prod).
    environment: Mapped[str] = mapped_column(String, default="prod")
    status: Mapped[str] = mapped_column(String, default=ClientStatus.ACTIVE.value)
    # Enabled cloud providers, a subset of aws/azure/gcp.
    providers: Mapped[list[str]] = mapped_column(JSONType, default=list)
    backup_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # The only client field the orchestrator writes, after provisioning jobs.
    terraform_state: Mapped[str] = mapped_column(
        String, default=TerraformState.NOT_INITIALIZED.value
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_client_type_status", "client_id", "job_type", "status"),
        Index("ix_jobs_source_backup_id", "source_backup_id"),
        Index("ix_jobs_created_at", "created_at"),
        # Single in-flight restore, DR test and provisioning job per client.
        _inflight_unique_index("uq_jobs_inflight_restore", "job_type = 'restore'"),
        _inflight_unique_index("uq_jobs_inflight_dr_test", "job_type = 'dr_test'"),
        _inflight_unique_index(
            "uq_jobs_inflight_provision",
            "job_type IN ('provision_init', 'provision_update', "
            "'provision_destroy', 'provision_restore')",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    job_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=JobStatus.PENDING.value)
    # Absent for jobs spanning several providers.
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    # Weak reference to a backup job; resolved by lookup, never an ORM relationship.
    source_backup_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False)
    data_size_mb: Mapped[int] = mapped_column(Integer, default=0)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
