from __future__ import annotations

from typing import Any

from siemrelay.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="TENANT_REQUIRED", message="X-Tenant-Id header is required"),
    404: _response("Not found", code="NOT_FOUND", message="Delivery job not found"),
    409: _response("Conflict", code="ENDPOINT_UNAVAILABLE", message="endpoint_disabled"),
    422: _response("Validation error", code="INVALID_INPUT", message="url must start with http:// or https://"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}
