from __future__ import annotations

from contextlib import asynccontextmanager
import json
import time
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vaultops.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    vaultops_exception_handler,
)
from vaultops.apps.api.response import API_VERSION, envelope, get_request_id, wants_envelope
from vaultops.apps.api.routes.backups import router as backups_router
from vaultops.apps.api.routes.dr import router as dr_router
from vaultops.apps.api.routes.health import router as health_router
from vaultops.apps.api.routes.jobs import router as jobs_router
from vaultops.apps.api.routes.provisioning import router as provisioning_router
from vaultops.apps.api.routes.restores import router as restores_router
from vaultops.core.errors import VaultOpsError
from vaultops.core.logging import configure_logging
from vaultops.services.orchestrator import reset_orchestrator
from vaultops.services.telemetry import record_request


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Outstanding background jobs are cancelled; there is no durable replay.
    await reset_orchestrator()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="VaultOps API",
        version=API_VERSION,
        lifespan=lifespan,
        openapi_url="/v1/openapi.json",
        docs_url="/v1/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        if wants_envelope(
            request,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
        ):
            raw_body = b""
            async for chunk in response.body_iterator:  # type: ignore[attr-defined]
                raw_body += chunk
            try:
                payload = json.loads(raw_body) if raw_body else None
            except ValueError:
                payload = None
            wrapped = JSONResponse(content=envelope(payload, request_id), status_code=response.status_code)
            for key, value in response.headers.items():
                if key.lower() in {"content-length", "content-type"}:
                    continue
                wrapped.headers[key] = value
            response = wrapped
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(VaultOpsError)
    async def _vaultops_exception_handler(request: Request, exc: VaultOpsError):
        return await vaultops_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    for router in (
        health_router,
        jobs_router,
        backups_router,
        restores_router,
        dr_router,
        provisioning_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
