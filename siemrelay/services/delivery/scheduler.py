"""Claim, attempt and transition delivery jobs.

A worker owns a job only between a successful claim and the transition that
ends its attempt. Both steps are conditional single-row UPDATEs: the claim
matches only due jobs (or lapsed claims), and the transition matches only
the claim token it was given, so a worker whose claim was taken over can
never write job state.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.core.config import get_settings
from siemrelay.core.errors import FormatError
from siemrelay.domain.models import DeliveryJob
from siemrelay.domain.state import (
    FORMAT_ERROR_OUTCOME,
    READY_STATUSES,
    AttemptOutcome,
    JobStatus,
    check_transition,
    next_status_for,
)
from siemrelay.services.audit import record_event
from siemrelay.services.delivery.backoff import next_retry_delay_ms, resolve_policy, retry_backoff_ms
from siemrelay.services.delivery.dispatcher import attempt_delivery
from siemrelay.services.delivery.endpoints import EndpointConfigAdapter, SqlEndpointConfigAdapter
from siemrelay.services.delivery.jobs import enqueue_delivery_job
from siemrelay.services.delivery.records import notify_exhausted, write_dead_letter
from siemrelay.services.delivery.transport import DeliveryTransport
from siemrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _reload_job(*, session: AsyncSession, job_id: str) -> DeliveryJob | None:
    return (
        await session.execute(
            select(DeliveryJob).where(DeliveryJob.id == job_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def claim_delivery_job(*, session: AsyncSession, job_id: str) -> DeliveryJob | None:
    # Compare-and-swap into in_flight; exactly one racing worker sees rowcount 1.
    settings = get_settings()
    now = _utc_now()
    token = uuid4().hex
    result = await session.execute(
        update(DeliveryJob)
        .where(
            DeliveryJob.id == job_id,
            or_(
                and_(DeliveryJob.status.in_(READY_STATUSES), DeliveryJob.next_attempt_at <= now),
                and_(DeliveryJob.status == JobStatus.IN_FLIGHT.value, DeliveryJob.claim_expires_at < now),
            ),
        )
        .values(
            status=JobStatus.IN_FLIGHT.value,
            claim_token=token,
            claim_expires_at=now + timedelta(seconds=max(1, int(settings.delivery_claim_ttl_s))),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return None
    await session.commit()
    return await _reload_job(session=session, job_id=job_id)


async def _transition(
    *,
    session: AsyncSession,
    job_id: str,
    claim_token: str,
    target: JobStatus,
    values: dict[str, Any],
) -> DeliveryJob | None:
    # Apply the post-attempt transition only while this worker still holds the claim.
    check_transition(JobStatus.IN_FLIGHT, target)
    result = await session.execute(
        update(DeliveryJob)
        .where(
            DeliveryJob.id == job_id,
            DeliveryJob.status == JobStatus.IN_FLIGHT.value,
            DeliveryJob.claim_token == claim_token,
        )
        .values(status=target.value, claim_token=None, claim_expires_at=None, updated_at=_utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return await _reload_job(session=session, job_id=job_id)


async def _retry_config(
    *,
    adapter: EndpointConfigAdapter,
    job: DeliveryJob,
) -> dict[str, int] | None:
    config = await adapter.current_config(job.tenant_id, job.endpoint_id)
    if config is None:
        return None
    return dict(config.retry_config)


async def process_delivery_job(
    *,
    session: AsyncSession,
    job_id: str,
    transport: DeliveryTransport,
    adapter: EndpointConfigAdapter | None = None,
) -> DeliveryJob | None:
    """Claim ``job_id``, run one attempt and record where the job goes next.

    Returns the updated job, or None when the job was not due, another
    worker holds it, or this worker's claim was taken over mid-attempt.
    """
    job = await claim_delivery_job(session=session, job_id=job_id)
    if job is None:
        return None
    claim_token = str(job.claim_token)
    resolved_adapter = adapter or SqlEndpointConfigAdapter(session)
    max_attempts = max(1, int(get_settings().delivery_max_attempts))

    try:
        attempt = await attempt_delivery(session=session, job=job, transport=transport, adapter=resolved_adapter)
    except FormatError as exc:
        return await _exhaust_without_attempt(session=session, job=job, claim_token=claim_token, error=str(exc))
    except IntegrityError:
        # Another worker already recorded this attempt number after reclaiming the job.
        await session.rollback()
        logger.warning("delivery_attempt_conflict job_id=%s", job_id)
        return None

    outcome = AttemptOutcome(attempt.outcome)
    target = next_status_for(outcome, attempt_number=attempt.attempt_number, max_attempts=max_attempts)
    values: dict[str, Any] = {
        "attempt_count": attempt.attempt_number,
        "last_outcome": outcome.value,
        "last_error": attempt.reason,
        "last_http_status": attempt.http_status,
    }
    delay_ms: int | None = None
    if target is JobStatus.RETRYING:
        policy = resolve_policy(await _retry_config(adapter=resolved_adapter, job=job))
        delay_ms = next_retry_delay_ms(
            previous_ms=job.last_backoff_ms,
            computed_ms=retry_backoff_ms(job_id=job.id, attempt_no=attempt.attempt_number, policy=policy),
            job_id=job.id,
        )
        values["next_attempt_at"] = attempt.finished_at + timedelta(milliseconds=delay_ms)
        values["last_backoff_ms"] = delay_ms
    else:
        values["completed_at"] = attempt.finished_at

    updated = await _transition(session=session, job_id=job_id, claim_token=claim_token, target=target, values=values)
    if updated is None:
        await session.rollback()
        logger.warning("delivery_claim_lost job_id=%s attempt=%s", job_id, attempt.attempt_number)
        return None
    if target is JobStatus.EXHAUSTED:
        await write_dead_letter(
            session=session,
            job=updated,
            last_outcome=outcome.value,
            last_error=attempt.reason,
            last_http_status=attempt.http_status,
            at=_utc_now(),
        )
    await session.commit()

    if target is not JobStatus.EXHAUSTED:
        # notify_exhausted counts exhaustion for every path that reaches it.
        increment_counter(f"delivery.job.{target.value}")
    if target is JobStatus.RETRYING:
        logger.info(
            "delivery_retry_scheduled job_id=%s attempt=%s delay_ms=%s next_attempt_at=%s",
            updated.id,
            updated.attempt_count,
            delay_ms,
            updated.next_attempt_at.isoformat(),
        )
        await enqueue_delivery_job(job_id=updated.id, defer_ms=delay_ms or 0)
    elif target is JobStatus.SUCCEEDED:
        await record_event(
            session=session,
            tenant_id=updated.tenant_id,
            actor_type="system",
            actor_id=None,
            event_type="delivery.job.succeeded",
            outcome="success",
            resource_type="delivery_job",
            resource_id=updated.id,
            metadata={"attempts": updated.attempt_count, "endpoint_id": updated.endpoint_id},
            commit=True,
            best_effort=True,
        )
    else:
        await notify_exhausted(
            session=session,
            job=updated,
            last_outcome=outcome.value,
            last_error=attempt.reason,
        )
    return updated


async def _exhaust_without_attempt(
    *,
    session: AsyncSession,
    job: DeliveryJob,
    claim_token: str,
    error: str,
) -> DeliveryJob | None:
    # The endpoint's current format cannot carry this event; no attempt row is written.
    now = _utc_now()
    updated = await _transition(
        session=session,
        job_id=job.id,
        claim_token=claim_token,
        target=JobStatus.EXHAUSTED,
        values={"last_outcome": FORMAT_ERROR_OUTCOME, "last_error": error, "completed_at": now},
    )
    if updated is None:
        await session.rollback()
        return None
    await write_dead_letter(
        session=session,
        job=updated,
        last_outcome=FORMAT_ERROR_OUTCOME,
        last_error=error,
        last_http_status=None,
        at=now,
    )
    await session.commit()
    await notify_exhausted(session=session, job=updated, last_outcome=FORMAT_ERROR_OUTCOME, last_error=error)
    return updated
