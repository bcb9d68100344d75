from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from vaultops.apps.api.deps import PageParams, orchestrator_dep, page_params
from vaultops.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultops.apps.api.response import SuccessEnvelope
from vaultops.services.job_views import JobHandle, JobSnapshot, Page, RestoreHistoryEntry, RestoreStatus
from vaultops.services.orchestrator import JobOrchestrator, RestoreOptions

router = APIRouter(tags=["restores"], responses=DEFAULT_ERROR_RESPONSES)


class RestoreRequest(BaseModel):
    backup_id: str | None = None
    target_environment: str = "production"
    resources: list[str] | Literal["all"] = "all"
    description: str = "Manually initiated restore"
    priority: str = "high"
    initiated_by: str = "admin"
    force_trust_old_backup: bool = False
    skip_validation_check: bool = False
    target_resource_group: str | None = None
    target_vpc: str | None = None
    target_subnet: str | None = None
    point_in_time_recovery: str | None = None

    def to_options(self) -> RestoreOptions:
        return RestoreOptions(**self.model_dump(exclude={"backup_id"}))


@router.post(
    "/clients/{client_id}/restores",
    status_code=202,
    response_model=SuccessEnvelope[JobHandle] | JobHandle,
)
async def start_restore(
    client_id: str,
    payload: RestoreRequest,
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> JobHandle:
    return await orchestrator.start_restore(client_id, payload.backup_id, payload.to_options())


@router.get(
    "/clients/{client_id}/restores",
    response_model=SuccessEnvelope[Page[RestoreHistoryEntry]] | Page[RestoreHistoryEntry],
)
async def restore_history(
    client_id: str,
    paging: PageParams = Depends(page_params),
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> Page[RestoreHistoryEntry]:
    return await orchestrator.restore_history(client_id, page=paging.page, limit=paging.limit)


@router.get("/restores/{job_id}", response_model=SuccessEnvelope[RestoreStatus] | RestoreStatus)
async def restore_status(
    job_id: str, orchestrator: JobOrchestrator = Depends(orchestrator_dep)
) -> RestoreStatus:
    return await orchestrator.get_restore_status(job_id)


@router.post("/restores/{job_id}/cancel", response_model=SuccessEnvelope[JobSnapshot] | JobSnapshot)
async def cancel_restore(
    job_id: str, orchestrator: JobOrchestrator = Depends(orchestrator_dep)
) -> JobSnapshot:
    return await orchestrator.cancel_restore(job_id)
