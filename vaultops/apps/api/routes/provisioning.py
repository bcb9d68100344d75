from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from vaultops.apps.api.deps import orchestrator_dep
from vaultops.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultops.apps.api.response import SuccessEnvelope
from vaultops.services.job_views import JobHandle
from vaultops.services.orchestrator import JobOrchestrator

router = APIRouter(prefix="/clients", tags=["provisioning"], responses=DEFAULT_ERROR_RESPONSES)


class ProvisioningRequest(BaseModel):
    action: Literal["init", "update", "destroy", "restore"]
    backup_id: str | None = None
    initiated_by: str | None = None


@router.post(
    "/{client_id}/provisioning",
    status_code=202,
    response_model=SuccessEnvelope[JobHandle] | JobHandle,
)
async def start_provisioning(
    client_id: str,
    payload: ProvisioningRequest,
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> JobHandle:
    return await orchestrator.start_provisioning(
        client_id, payload.action, payload.backup_id, initiated_by=payload.initiated_by
    )
