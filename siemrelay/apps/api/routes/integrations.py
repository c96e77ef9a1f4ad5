from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.apps.api.deps import get_db, get_tenant_id
from siemrelay.apps.api.errors import invalid_input, not_found
from siemrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from siemrelay.apps.api.response import (
    AuditEventOut,
    DeadLetterOut,
    DeliveryAttemptOut,
    DeliveryJobOut,
    FailureList,
    ItemList,
    SuccessEnvelope,
    WebhookEndpointOut,
    get_request_id,
    success_response,
)
from siemrelay.core.errors import ConfigurationMissingError, DeadLetterNotFoundError
from siemrelay.services.audit import list_audit_events
from siemrelay.services.delivery.dead_letters import get_dead_letter, list_failures, resubmit
from siemrelay.services.delivery.endpoints import (
    create_endpoint,
    delete_endpoint,
    get_endpoint,
    list_endpoints,
    patch_endpoint,
)
from siemrelay.services.delivery.jobs import (
    delivery_queue_summary,
    get_delivery_job,
    list_delivery_attempts,
    list_delivery_jobs,
)

router = APIRouter(prefix="/integrations/webhook", tags=["integrations"], responses=DEFAULT_ERROR_RESPONSES)

FormatName = Literal["cef", "leef", "json"]
AuthTypeName = Literal["none", "bearer", "basic", "api_key"]


class WebhookCreateRequest(BaseModel):
    name: str = Field(default="", max_length=255)
    url: str = Field(..., min_length=1, max_length=1024)
    format: FormatName
    signing_secret: str | None = Field(default=None, max_length=512)
    enabled: bool = True
    auth_type: AuthTypeName = "none"
    auth_credentials: dict[str, str] | None = None
    retry_config: dict[str, int] | None = None


class WebhookPatchRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    url: str | None = Field(default=None, min_length=1, max_length=1024)
    format: FormatName | None = None
    signing_secret: str | None = Field(default=None, max_length=512)
    enabled: bool | None = None
    auth_type: AuthTypeName | None = None
    auth_credentials: dict[str, str] | None = None
    retry_config: dict[str, int] | None = None



@router.post("", response_model=SuccessEnvelope[WebhookEndpointOut])
async def create_webhook(
    payload: WebhookCreateRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        row = await create_endpoint(
            session=db,
            tenant_id=tenant_id,
            name=payload.name,
            url=payload.url,
            format=payload.format,
            signing_secret=payload.signing_secret,
            enabled=payload.enabled,
            auth_type=payload.auth_type,
            auth_credentials=payload.auth_credentials,
            retry_config=payload.retry_config,
        )
    except ValueError as exc:
        raise invalid_input(str(exc)) from exc
    return success_response(request=request, data=WebhookEndpointOut.from_row(row))


@router.get("", response_model=SuccessEnvelope[ItemList[WebhookEndpointOut]])
async def list_webhooks(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_endpoints(session=db, tenant_id=tenant_id)
    items = [WebhookEndpointOut.from_row(row) for row in rows]
    return success_response(request=request, data=ItemList[WebhookEndpointOut](items=items))


@router.get("/failures", response_model=SuccessEnvelope[FailureList])
async def get_failures(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Dead-lettered deliveries, newest first.
    records = await list_failures(session=db, tenant_id=tenant_id, limit=limit)
    failures = [DeadLetterOut.model_validate(record) for record in records]
    return success_response(request=request, data=FailureList(failures=failures))


@router.get("/failures/{job_id}", response_model=SuccessEnvelope[DeadLetterOut])
async def get_failure(
    job_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    record = await get_dead_letter(session=db, tenant_id=tenant_id, job_id=job_id)
    if record is None:
        raise not_found("Dead letter not found")
    return success_response(request=request, data=DeadLetterOut.model_validate(record))


@router.post("/failures/{job_id}/resubmit", response_model=SuccessEnvelope[DeliveryJobOut])
async def resubmit_failure(
    job_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        job = await resubmit(
            session=db,
            tenant_id=tenant_id,
            job_id=job_id,
            actor_id=request.headers.get("X-Actor-Id"),
            request_id=get_request_id(request),
        )
    except DeadLetterNotFoundError as exc:
        raise not_found("Dead letter not found") from exc
    except ConfigurationMissingError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "ENDPOINT_UNAVAILABLE", "message": exc.reason},
        ) from exc
    return success_response(request=request, data=DeliveryJobOut.model_validate(job))


@router.get("/summary", response_model=SuccessEnvelope[dict[str, Any]])
async def get_summary(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    summary = await delivery_queue_summary(session=db, tenant_id=tenant_id)
    return success_response(request=request, data=summary)


@router.get("/audit", response_model=SuccessEnvelope[ItemList[AuditEventOut]])
async def get_audit_events(
    request: Request,
    event_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_audit_events(session=db, tenant_id=tenant_id, event_type=event_type, limit=limit)
    items = [AuditEventOut.model_validate(row) for row in rows]
    return success_response(request=request, data=ItemList[AuditEventOut](items=items))


@router.get("/jobs", response_model=SuccessEnvelope[ItemList[DeliveryJobOut]])
async def get_jobs(
    request: Request,
    status: str | None = Query(default=None),
    endpoint_id: str | None = Query(default=None),
    event_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_delivery_jobs(
        session=db,
        tenant_id=tenant_id,
        status_filter=status,
        endpoint_id=endpoint_id,
        event_id=event_id,
        limit=limit,
    )
    items = [DeliveryJobOut.model_validate(row) for row in rows]
    return success_response(request=request, data=ItemList[DeliveryJobOut](items=items))


@router.get("/jobs/{job_id}", response_model=SuccessEnvelope[DeliveryJobOut])
async def get_job(
    job_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await get_delivery_job(session=db, tenant_id=tenant_id, job_id=job_id)
    if row is None:
        raise not_found("Delivery job not found")
    return success_response(request=request, data=DeliveryJobOut.model_validate(row))


@router.get("/jobs/{job_id}/attempts", response_model=SuccessEnvelope[ItemList[DeliveryAttemptOut]])
async def get_job_attempts(
    job_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_delivery_attempts(session=db, tenant_id=tenant_id, job_id=job_id)
    if rows is None:
        raise not_found("Delivery job not found")
    items = [DeliveryAttemptOut.model_validate(row) for row in rows]
    return success_response(request=request, data=ItemList[DeliveryAttemptOut](items=items))


@router.get("/{endpoint_id}", response_model=SuccessEnvelope[WebhookEndpointOut])
async def get_webhook(
    endpoint_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    row = await get_endpoint(session=db, tenant_id=tenant_id, endpoint_id=endpoint_id)
    if row is None:
        raise not_found("Webhook endpoint not found")
    return success_response(request=request, data=WebhookEndpointOut.from_row(row))


@router.patch("/{endpoint_id}", response_model=SuccessEnvelope[WebhookEndpointOut])
async def patch_webhook(
    endpoint_id: str,
    payload: WebhookPatchRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Disabling here stops every later attempt for this endpoint's jobs.
    try:
        row = await patch_endpoint(
            session=db,
            tenant_id=tenant_id,
            endpoint_id=endpoint_id,
            updates=payload.model_dump(exclude_unset=True),
        )
    except ValueError as exc:
        raise invalid_input(str(exc)) from exc
    if row is None:
        raise not_found("Webhook endpoint not found")
    return success_response(request=request, data=WebhookEndpointOut.from_row(row))


@router.delete("/{endpoint_id}", response_model=SuccessEnvelope[dict[str, bool]])
async def delete_webhook(
    endpoint_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    deleted = await delete_endpoint(session=db, tenant_id=tenant_id, endpoint_id=endpoint_id)
    if not deleted:
        raise not_found("Webhook endpoint not found")
    return success_response(request=request, data={"deleted": True})
