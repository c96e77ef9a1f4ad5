from __future__ import annotations

from datetime import datetime
import hashlib
import logging
import math
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.core.errors import UnsupportedValueError
from siemrelay.domain.events import NotificationEvent
from siemrelay.domain.models import DeadLetter, DeliveryJob, NotificationEventRow
from siemrelay.services.audit import record_event
from siemrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def delivery_key(*, event_id: str, endpoint_id: str) -> str:
    # Deterministic per (event, endpoint) so concurrent fan-outs collide on the unique key.
    return hashlib.sha256(f"{event_id}:{endpoint_id}".encode("utf-8")).hexdigest()


_DATETIME_TAG = "$datetime"
_FLOAT_TAG = "$float"


def _stored_value(key: str, value: Any) -> Any:
    # JSON columns cannot hold datetimes or non-finite floats; tag them so reads restore the original type.
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    if isinstance(value, float) and not math.isfinite(value):
        return {_FLOAT_TAG: repr(value)}
    if value is None or isinstance(value, (bool, str, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): _stored_value(f"{key}.{k}", v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stored_value(f"{key}[{index}]", item) for index, item in enumerate(value)]
    raise UnsupportedValueError(key, value, "storage")


def _loaded_value(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and _DATETIME_TAG in value:
            return datetime.fromisoformat(value[_DATETIME_TAG])
        if len(value) == 1 and _FLOAT_TAG in value:
            return float(value[_FLOAT_TAG])
        return {k: _loaded_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_loaded_value(item) for item in value]
    return value


def stored_attributes(event: NotificationEvent) -> list[list[Any]]:
    """Attributes as ordered ``[key, value]`` pairs safe for a JSON column."""
    return [[key, _stored_value(key, value)] for key, value in event.attributes.items()]


def event_to_row(event: NotificationEvent) -> NotificationEventRow:
    return NotificationEventRow(
        id=event.id,
        tenant_id=event.tenant_id,
        kind=event.kind.value,
        severity=event.severity,
        subject=event.subject,
        attributes_json=stored_attributes(event),
        created_at=event.created_at,
    )


def event_conflict(row: NotificationEventRow, event: NotificationEvent) -> str | None:
    # created_at is not compared: the first stored timestamp wins for a re-sent event.
    if row.tenant_id != event.tenant_id:
        return "tenant_mismatch"
    stored = (row.kind, int(row.severity), row.subject, row.attributes_json or [])
    incoming = (event.kind.value, event.severity, event.subject, stored_attributes(event))
    if stored != incoming:
        return "content_mismatch"
    return None


def event_from_row(row: NotificationEventRow) -> NotificationEvent:
    pairs = row.attributes_json or []
    return NotificationEvent(
        id=row.id,
        tenant_id=row.tenant_id,
        kind=row.kind,
        severity=int(row.severity),
        subject=row.subject,
        attributes={str(key): _loaded_value(value) for key, value in pairs},
        created_at=row.created_at,
    )


async def load_event(*, session: AsyncSession, event_id: str) -> NotificationEvent | None:
    row = await session.get(NotificationEventRow, event_id)
    if row is None:
        return None
    return event_from_row(row)


async def write_dead_letter(
    *,
    session: AsyncSession,
    job: DeliveryJob,
    last_outcome: str,
    last_error: str | None,
    last_http_status: int | None,
    at: datetime,
) -> DeadLetter:
    # One row per exhausted job; the job id primary key rejects a second write.
    existing = (await session.execute(select(DeadLetter).where(DeadLetter.job_id == job.id))).scalar_one_or_none()
    if existing is not None:
        return existing
    row = DeadLetter(
        job_id=job.id,
        tenant_id=job.tenant_id,
        endpoint_id=job.endpoint_id,
        event_id=job.event_id,
        attempts_made=int(job.attempt_count or 0),
        last_outcome=last_outcome,
        last_error=last_error,
        last_http_status=last_http_status,
        created_at=at,
    )
    session.add(row)
    return row


async def notify_exhausted(
    *,
    session: AsyncSession,
    job: DeliveryJob,
    last_outcome: str,
    last_error: str | None,
) -> None:
    # Operator-facing failure signal: audit row, error log and counter.
    logger.error(
        "delivery_job_exhausted job_id=%s tenant_id=%s endpoint_id=%s attempts=%s outcome=%s error=%s",
        job.id,
        job.tenant_id,
        job.endpoint_id,
        job.attempt_count,
        last_outcome,
        last_error,
    )
    increment_counter("delivery.job.exhausted")
    await record_event(
        session=session,
        tenant_id=job.tenant_id,
        actor_type="system",
        actor_id=None,
        event_type="delivery.job.exhausted",
        outcome="failure",
        resource_type="delivery_job",
        resource_id=job.id,
        metadata={
            "endpoint_id": job.endpoint_id,
            "event_id": job.event_id,
            "attempts_made": int(job.attempt_count or 0),
            "last_outcome": last_outcome,
            "last_error": last_error,
        },
        error_code=last_outcome,
        commit=True,
        best_effort=True,
    )
