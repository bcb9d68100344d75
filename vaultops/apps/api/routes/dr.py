from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from vaultops.apps.api.deps import PageParams, get_db, orchestrator_dep, page_params
from vaultops.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultops.apps.api.response import SuccessEnvelope
from vaultops.persistence.db import SessionLocal
from vaultops.services.dr_reports import (
    DRComplianceReport,
    DRTestReport,
    dr_compliance_report,
    dr_test_result,
)
from vaultops.services.dr_scheduler import DRCadenceScheduler
from vaultops.services.job_views import DRTestHistoryEntry, JobHandle, Page
from vaultops.services.orchestrator import DRTestParameters, JobOrchestrator

router = APIRouter(tags=["dr"], responses=DEFAULT_ERROR_RESPONSES)


class DRTestRequest(BaseModel):
    backup_id: str | None = None
    verification_steps: list[str] = Field(default_factory=lambda: ["integrity", "access", "restore"])
    target_environment: str = "isolated"


class SweepResponse(BaseModel):
    job_ids: list[str]
    count: int
    skipped: dict[str, str]


@router.post(
    "/clients/{client_id}/dr-tests",
    status_code=202,
    response_model=SuccessEnvelope[JobHandle] | JobHandle,
)
async def start_dr_test(
    client_id: str,
    payload: DRTestRequest | None = None,
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> JobHandle:
    payload = payload or DRTestRequest()
    parameters = DRTestParameters(
        verification_steps=list(payload.verification_steps),
        target_environment=payload.target_environment,
    )
    return await orchestrator.start_dr_test(client_id, payload.backup_id, parameters)


@router.get(
    "/clients/{client_id}/dr-tests",
    response_model=SuccessEnvelope[Page[DRTestHistoryEntry]] | Page[DRTestHistoryEntry],
)
async def dr_test_history(
    client_id: str,
    paging: PageParams = Depends(page_params),
    orchestrator: JobOrchestrator = Depends(orchestrator_dep),
) -> Page[DRTestHistoryEntry]:
    return await orchestrator.dr_test_history(client_id, page=paging.page, limit=paging.limit)


@router.get(
    "/clients/{client_id}/dr-compliance",
    response_model=SuccessEnvelope[DRComplianceReport] | DRComplianceReport,
)
async def compliance_report(
    client_id: str, db: AsyncSession = Depends(get_db)
) -> DRComplianceReport:
    return await dr_compliance_report(db, client_id)


@router.get("/dr-tests/{job_id}", response_model=SuccessEnvelope[DRTestReport] | DRTestReport)
async def dr_test_detail(job_id: str, db: AsyncSession = Depends(get_db)) -> DRTestReport:
    return await dr_test_result(db, job_id)


@router.post("/dr-tests/sweep", status_code=202, response_model=SuccessEnvelope[SweepResponse] | SweepResponse)
async def run_sweep(orchestrator: JobOrchestrator = Depends(orchestrator_dep)) -> SweepResponse:
    # Manual trigger for the cadence sweep the worker runs daily.
    result = await DRCadenceScheduler(orchestrator, SessionLocal).schedule_periodic_dr_tests()
    return SweepResponse(job_ids=result.job_ids, count=result.count, skipped=result.skipped)
