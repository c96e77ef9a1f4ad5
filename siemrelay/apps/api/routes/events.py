from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.apps.api.deps import get_db, get_tenant_id
from siemrelay.apps.api.errors import invalid_input
from siemrelay.core.errors import EventConflictError, FormatError
from siemrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from siemrelay.apps.api.response import SuccessEnvelope, get_request_id, success_response
from siemrelay.domain.events import NotificationEvent
from siemrelay.services.delivery.jobs import submit_event

router = APIRouter(tags=["events"], responses=DEFAULT_ERROR_RESPONSES)


class EventSubmitRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=128)
    kind: Literal["verdict", "alert"]
    severity: int = Field(..., ge=0, le=10)
    subject: str = Field(..., min_length=1, max_length=1024)
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


@router.post("/events", status_code=202, response_model=SuccessEnvelope[dict[str, Any]])
async def post_event(
    payload: EventSubmitRequest,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Accept and fan out only; delivery happens in the worker pool.
    fields: dict[str, Any] = {
        "tenant_id": tenant_id,
        "kind": payload.kind,
        "severity": payload.severity,
        "subject": payload.subject,
        "attributes": payload.attributes,
    }
    if payload.id:
        fields["id"] = payload.id
    if payload.created_at:
        fields["created_at"] = payload.created_at
    try:
        event = NotificationEvent(**fields)
    except ValueError as exc:
        raise invalid_input(str(exc)) from exc
    try:
        job_ids = await submit_event(session=db, event=event, request_id=get_request_id(request))
    except EventConflictError as exc:
        raise HTTPException(status_code=409, detail={"code": "EVENT_CONFLICT", "message": str(exc)}) from exc
    except FormatError as exc:
        raise invalid_input(str(exc)) from exc
    return success_response(request=request, data={"event_id": event.id, "job_ids": job_ids})
