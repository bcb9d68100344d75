from __future__ import annotations

from typing import Any

from vaultops.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Job abc123 not found")),
    409: _response(
        "Conflict",
        _error_example(code="CONFLICT", message="A restore is already in progress for client c1"),
    ),
    422: _response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Cannot cancel a job with status Success"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    502: _response(
        "Upstream failure",
        _error_example(
            code="PROVISIONING_FAILED",
            message="plan failed with exit code 1",
            details={"command": "plan", "exit_code": 1},
        ),
    ),
}
