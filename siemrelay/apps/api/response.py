"""Envelopes and payload models returned by the /v1 delivery API.

Every route answers ``{"data": ..., "meta": {...}}``; errors answer
``{"error": {...}, "meta": {...}}``. Payload models are read straight from
ORM rows, so secrets and credentials never have a field to land in.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class ItemList(BaseModel, Generic[T]):
    items: list[T]


class _RowModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class WebhookEndpointOut(_RowModel):
    id: str
    tenant_id: str
    name: str
    url: str
    format: str
    enabled: bool
    has_signing_secret: bool
    auth_type: str
    retry_config: dict[str, int] = Field(default_factory=dict)
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> "WebhookEndpointOut":
        # Only whether a secret is set is ever readable.
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            url=row.url,
            format=row.format,
            enabled=row.enabled,
            has_signing_secret=bool(row.signing_secret),
            auth_type=row.auth_type,
            retry_config=row.retry_config_json or {},
            last_success_at=row.last_success_at,
            last_failure_at=row.last_failure_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class DeliveryJobOut(_RowModel):
    id: str
    tenant_id: str
    event_id: str
    endpoint_id: str
    format: str
    status: str
    attempt_count: int
    next_attempt_at: datetime | None = None
    last_outcome: str | None = None
    last_error: str | None = None
    last_http_status: int | None = None
    resubmitted_from_job_id: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeliveryAttemptOut(_RowModel):
    attempt_number: int
    outcome: str
    reason: str | None = None
    http_status: int | None = None
    payload_sha256: str | None = None
    latency_ms: int | None = None
    scheduled_at: datetime | None = None
    # Empty for cancelled attempts: nothing was sent.
    executed_at: datetime | None = None
    finished_at: datetime | None = None


class DeadLetterOut(_RowModel):
    job_id: str
    endpoint_id: str
    event_id: str
    attempts_made: int
    last_outcome: str
    last_error: str | None = None
    last_http_status: int | None = None
    created_at: datetime | None = None


class FailureList(BaseModel):
    failures: list[DeadLetterOut]


class AuditEventOut(_RowModel):
    id: int
    occurred_at: datetime
    event_type: str
    outcome: str
    actor_type: str
    actor_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    request_id: str | None = None
    # Rows carry metadata_json; the serialized envelope carries metadata.
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )

    @field_validator("metadata", mode="before")
    @classmethod
    def _empty_metadata(cls, value: Any) -> Any:
        return value or {}


def get_request_id(request: Request) -> str:
    # The middleware stamps request.state; direct handler calls fall back to the header.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def success_response(*, request: Request, data: BaseModel | dict[str, Any]) -> dict[str, Any]:
    payload = data.model_dump(mode="json") if isinstance(data, BaseModel) else data
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": payload, "meta": meta.model_dump()}


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
