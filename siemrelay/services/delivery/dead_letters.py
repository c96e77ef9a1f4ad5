from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.core.errors import ConfigurationMissingError, DeadLetterNotFoundError
from siemrelay.domain.models import DeadLetter, DeliveryJob
from siemrelay.domain.state import JobStatus
from siemrelay.services.audit import record_event
from siemrelay.services.delivery.endpoints import SqlEndpointConfigAdapter
from siemrelay.services.delivery.jobs import enqueue_delivery_job
from siemrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeadLetterRecord:
    job_id: str
    tenant_id: str
    endpoint_id: str
    event_id: str
    attempts_made: int
    last_outcome: str
    last_error: str | None
    last_http_status: int | None
    created_at: datetime


def _to_record(row: DeadLetter) -> DeadLetterRecord:
    return DeadLetterRecord(
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        endpoint_id=row.endpoint_id,
        event_id=row.event_id,
        attempts_made=int(row.attempts_made),
        last_outcome=row.last_outcome,
        last_error=row.last_error,
        last_http_status=row.last_http_status,
        created_at=row.created_at,
    )


async def list_failures(*, session: AsyncSession, tenant_id: str, limit: int = 100) -> list[DeadLetterRecord]:
    # Newest failures first, scoped to the caller's tenant.
    rows = (
        await session.execute(
            select(DeadLetter)
            .where(DeadLetter.tenant_id == tenant_id)
            .order_by(DeadLetter.created_at.desc(), DeadLetter.job_id.desc())
            .limit(max(1, min(limit, 500)))
        )
    ).scalars().all()
    return [_to_record(row) for row in rows]


async def get_dead_letter(*, session: AsyncSession, tenant_id: str, job_id: str) -> DeadLetterRecord | None:
    row = await session.get(DeadLetter, job_id)
    if row is None or row.tenant_id != tenant_id:
        return None
    return _to_record(row)


async def resubmit(
    *,
    session: AsyncSession,
    tenant_id: str,
    job_id: str,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> DeliveryJob:
    """Create a fresh job for a dead-lettered delivery.

    The dead-lettered job and its record stay untouched; the new job starts
    at attempt zero and points back at the original through
    ``resubmitted_from_job_id``.
    """
    dead_letter = await get_dead_letter(session=session, tenant_id=tenant_id, job_id=job_id)
    if dead_letter is None:
        raise DeadLetterNotFoundError(f"no dead letter for job {job_id}")
    config = await SqlEndpointConfigAdapter(session).current_config(tenant_id, dead_letter.endpoint_id)
    if config is None:
        raise ConfigurationMissingError("endpoint_missing")
    if not config.enabled:
        raise ConfigurationMissingError("endpoint_disabled")

    now = _utc_now()
    new_id = uuid4().hex
    job = DeliveryJob(
        id=new_id,
        tenant_id=tenant_id,
        event_id=dead_letter.event_id,
        endpoint_id=dead_letter.endpoint_id,
        # Fresh key per resubmission; the fan-out key stays with the original job.
        delivery_key=hashlib.sha256(f"resubmit:{job_id}:{new_id}".encode("utf-8")).hexdigest(),
        format=config.format.value,
        status=JobStatus.PENDING.value,
        attempt_count=0,
        next_attempt_at=now,
        resubmitted_from_job_id=job_id,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.commit()

    increment_counter("delivery.job.resubmitted")
    logger.info("delivery_job_resubmitted job_id=%s from_job_id=%s tenant_id=%s", job.id, job_id, tenant_id)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="operator" if actor_id else "system",
        actor_id=actor_id,
        event_type="delivery.job.resubmitted",
        outcome="success",
        resource_type="delivery_job",
        resource_id=job.id,
        request_id=request_id,
        metadata={"resubmitted_from_job_id": job_id, "endpoint_id": job.endpoint_id},
        commit=True,
        best_effort=True,
    )
    await enqueue_delivery_job(job_id=job.id)
    return job
