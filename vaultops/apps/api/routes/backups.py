from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from vaultops.apps.api.deps import orchestrator_dep
from vaultops.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultops.apps.api.response import SuccessEnvelope
from vaultops.services.job_views import JobHandle
from vaultops.services.orchestrator import JobOrchestrator

router = APIRouter(prefix="/clients", tags=["backups"], responses=DEFAULT_ERROR_RESPONSES)


class BackupRequest(BaseModel):
    initiated_by: str | None = None


@router.post(
    "/{client_id}/backups",
    status_code=202,
    response_model=SuccessEnvelope[JobHandle] | JobHandle,
)
async def start_backup(
    client_id: str,
    payload: BackupRequest | None = None,
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> JobHandle:
    initiated_by = payload.initiated_by if payload is not None else None
    return await orchestrator.start_backup(client_id, initiated_by=initiated_by)
