from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from vaultops.apps.api.deps import orchestrator_dep
from vaultops.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from vaultops.apps.api.response import SuccessEnvelope
from vaultops.services.orchestrator import JobOrchestrator
from vaultops.services.telemetry import counters_snapshot, p95_job_duration, request_error_rate

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    active_jobs: int
    max_concurrency: int
    p95_job_duration_ms: float | None
    error_rate_5m: float | None


# Legacy unwrapped responses are allowed; v1 middleware wraps them into envelopes.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/ops/metrics", response_model=SuccessEnvelope[MetricsResponse] | MetricsResponse)
async def metrics(orchestrator: JobOrchestrator = Depends(orchestrator_dep)) -> MetricsResponse:
    return MetricsResponse(
        counters=counters_snapshot(),
        active_jobs=len(orchestrator.dispatcher.active_job_ids()),
        max_concurrency=orchestrator.dispatcher.limit,
        p95_job_duration_ms=p95_job_duration(3600),
        error_rate_5m=request_error_rate(300),
    )
