from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

# Schema and docs pages are served as-is under the versioned prefix.
ENVELOPE_EXEMPT_PREFIXES = (
    f"/{API_VERSION}/openapi.json",
    f"/{API_VERSION}/docs",
)

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # code is the stable VaultOpsError.code; details carry command/provider context.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def wants_envelope(request: Request, *, status_code: int, content_type: str) -> bool:
    """Only successful JSON answers on versioned job routes get the data/meta wrapper."""
    return (
        is_versioned_request(request)
        and not request.url.path.startswith(ENVELOPE_EXEMPT_PREFIXES)
        and status_code < 400
        and content_type.startswith("application/json")
    )


def is_enveloped(payload: Any) -> bool:
    if not isinstance(payload, dict) or "data" not in payload:
        return False
    meta = payload.get("meta")
    return isinstance(meta, dict) and meta.get("api_version") == API_VERSION


def envelope(payload: Any, request_id: str) -> Any:
    # Empty bodies and already wrapped payloads pass through untouched.
    if payload is None or is_enveloped(payload):
        return payload
    return {"data": payload, "meta": ResponseMeta(request_id=request_id).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
