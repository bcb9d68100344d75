from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query

from vaultops.apps.api.deps import PageParams, orchestrator_dep, page_params
from vaultops.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultops.apps.api.response import SuccessEnvelope
from vaultops.domain.jobs import JobStatus, JobType
from vaultops.services.job_views import JobSnapshot, Page
from vaultops.services.orchestrator import JobOrchestrator

router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("", response_model=SuccessEnvelope[Page[JobSnapshot]] | Page[JobSnapshot])
async def list_jobs(
    client_id: str | None = Query(default=None),
    job_type: JobType | None = Query(default=None),
    status: JobStatus | None = Query(default=None),
    sort_by: Literal["created_at", "started_at", "completed_at", "updated_at", "status"] = Query(
        default="created_at"
    ),
    order: Literal["asc", "desc"] = Query(default="desc"),
    paging: PageParams = Depends(page_params),
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> Page[JobSnapshot]:
    return await orchestrator.list_jobs(
        client_id=client_id,
        job_type=job_type,
        status=status,
        page=paging.page,
        limit=paging.limit,
        sort_by=sort_by,
        descending=order == "desc",
    )


@router.get("/counts", response_model=SuccessEnvelope[dict[str, int]] | dict[str, int])
async def job_counts(
    client_id: str | None = Query(default=None),
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> dict[str, int]:
    return await orchestrator.count_by_status(client_id)


@router.get("/{job_id}", response_model=SuccessEnvelope[JobSnapshot] | JobSnapshot)
async def get_job(
    job_id: str, orchestrator: JobOrchestrator = Depends(orchestrator_dep)
) -> JobSnapshot:
    return await orchestrator.get_status(job_id)


@router.post("/{job_id}/cancel", response_model=SuccessEnvelope[JobSnapshot] | JobSnapshot)
async def cancel_job(
    job_id: str, orchestrator: JobOrchestrator = Depends(orchestrator_dep)
) -> JobSnapshot:
    return await orchestrator.cancel_job(job_id)
