from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.core.config import get_settings
from siemrelay.core.errors import EventConflictError, FormatError
from siemrelay.domain.events import NotificationEvent, WebhookEndpointConfig
from siemrelay.domain.models import DeadLetter, DeliveryAttempt, DeliveryJob, NotificationEventRow
from siemrelay.domain.state import FORMAT_ERROR_OUTCOME, READY_STATUSES, JobStatus, check_transition
from siemrelay.persistence.db import SessionLocal
from siemrelay.services.audit import record_event
from siemrelay.services.delivery.endpoints import list_enabled_endpoints
from siemrelay.services.delivery.formats import encode
from siemrelay.services.delivery.records import (
    delivery_key,
    event_conflict,
    event_to_row,
    notify_exhausted,
    write_dead_letter,
)
from siemrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DELIVERY_TASK_NAME = "deliver_delivery_job"

_delivery_queue_pool = None
_delivery_queue_pool_loop = None
_delivery_queue_lock = asyncio.Lock()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_delivery_queue_pool():
    # Cache the ARQ Redis pool per event loop to avoid reconnect churn.
    global _delivery_queue_pool, _delivery_queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _delivery_queue_pool is not None and _delivery_queue_pool_loop == current_loop:
        return _delivery_queue_pool
    if _delivery_queue_pool is not None and _delivery_queue_pool_loop != current_loop:
        _delivery_queue_pool = None
    async with _delivery_queue_lock:
        if _delivery_queue_pool is None:
            settings = get_settings()
            _delivery_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.delivery_queue_name,
            )
            _delivery_queue_pool_loop = current_loop
    return _delivery_queue_pool


async def enqueue_delivery_job(*, job_id: str, defer_ms: int = 0) -> bool:
    # Publish a job id onto ARQ; the due-job scan recovers anything lost here.
    settings = get_settings()
    if settings.delivery_queue_mode != "queue":
        return False
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    try:
        redis = await get_delivery_queue_pool()
        await redis.enqueue_job(
            DELIVERY_TASK_NAME,
            job_id,
            _queue_name=settings.delivery_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
        return True
    except Exception:  # noqa: BLE001 - keep enqueue best-effort and rely on due-job requeue fallback.
        logger.warning("delivery_enqueue_failed job_id=%s", job_id, exc_info=True)
        return False


async def _store_event(*, session: AsyncSession, event: NotificationEvent) -> None:
    # Insert once per event id; a concurrent producer may win the insert.
    existing = await session.get(NotificationEventRow, event.id)
    if existing is None:
        session.add(event_to_row(event))
        try:
            await session.commit()
            return
        except IntegrityError:
            await session.rollback()
            existing = await session.get(NotificationEventRow, event.id)
            if existing is None:
                raise
    reason = event_conflict(existing, event)
    if reason is not None:
        raise EventConflictError(event.id, reason)


async def _insert_jobs(
    *,
    session: AsyncSession,
    event: NotificationEvent,
    endpoints: list[WebhookEndpointConfig],
) -> tuple[list[DeliveryJob], list[DeliveryJob]]:
    keyed = {delivery_key(event_id=event.id, endpoint_id=endpoint.endpoint_id): endpoint for endpoint in endpoints}
    existing_keys = set(
        (await session.execute(select(DeliveryJob.delivery_key).where(DeliveryJob.delivery_key.in_(list(keyed)))))
        .scalars()
        .all()
    )
    now = _utc_now()
    pending: list[DeliveryJob] = []
    rejected: list[DeliveryJob] = []
    for key, endpoint in keyed.items():
        if key in existing_keys:
            continue
        job = DeliveryJob(
            id=uuid4().hex,
            tenant_id=event.tenant_id,
            event_id=event.id,
            endpoint_id=endpoint.endpoint_id,
            delivery_key=key,
            format=endpoint.format.value,
            status=JobStatus.PENDING.value,
            attempt_count=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            encode(event, endpoint.format)
        except FormatError as exc:
            # Unrenderable for this endpoint: terminal immediately, no attempt is ever made.
            job.status = check_transition(JobStatus.PENDING, JobStatus.EXHAUSTED).value
            job.last_outcome = FORMAT_ERROR_OUTCOME
            job.last_error = str(exc)
            job.completed_at = now
            session.add(job)
            await session.flush()
            await write_dead_letter(
                session=session,
                job=job,
                last_outcome=FORMAT_ERROR_OUTCOME,
                last_error=str(exc),
                last_http_status=None,
                at=now,
            )
            rejected.append(job)
            continue
        session.add(job)
        pending.append(job)
    await session.commit()
    return pending, rejected


async def submit_event(
    *,
    session: AsyncSession,
    event: NotificationEvent,
    request_id: str | None = None,
) -> list[str]:
    """Persist ``event`` and fan it out to every enabled endpoint of its tenant.

    Returns the ids of jobs created by this call. Resubmitting the same
    event creates nothing new: the delivery key dedupes per endpoint.
    Raises ``EventConflictError`` when the id is already stored for another
    tenant or with different content.
    """
    await _store_event(session=session, event=event)
    endpoints = await list_enabled_endpoints(session=session, tenant_id=event.tenant_id)
    if not endpoints:
        logger.info("delivery_fanout_skipped event_id=%s tenant_id=%s reason=no_endpoints", event.id, event.tenant_id)
        return []
    try:
        pending, rejected = await _insert_jobs(session=session, event=event, endpoints=endpoints)
    except IntegrityError:
        # A concurrent fan-out inserted some of the same keys; retry against the winner's rows.
        await session.rollback()
        pending, rejected = await _insert_jobs(session=session, event=event, endpoints=endpoints)

    created_ids = [job.id for job in pending] + [job.id for job in rejected]
    if created_ids:
        increment_counter("delivery.job.created", len(created_ids))
        await record_event(
            session=session,
            tenant_id=event.tenant_id,
            actor_type="system",
            actor_id=None,
            event_type="delivery.event.fanned_out",
            outcome="success",
            resource_type="notification_event",
            resource_id=event.id,
            request_id=request_id,
            metadata={"job_ids": created_ids, "format_errors": len(rejected)},
            commit=True,
            best_effort=True,
        )
    for job in rejected:
        await notify_exhausted(session=session, job=job, last_outcome=FORMAT_ERROR_OUTCOME, last_error=job.last_error)
    for job in pending:
        await enqueue_delivery_job(job_id=job.id)
    logger.info(
        "delivery_fanout_completed event_id=%s tenant_id=%s created=%s format_errors=%s",
        event.id,
        event.tenant_id,
        len(created_ids),
        len(rejected),
    )
    return created_ids


async def publish_event(event: NotificationEvent) -> list[str]:
    # Producer entry point: delivery problems are logged and never raised back.
    try:
        async with SessionLocal() as session:
            return await submit_event(session=session, event=event)
    except EventConflictError as exc:
        logger.error(
            "delivery_publish_rejected event_id=%s tenant_id=%s reason=%s",
            event.id,
            event.tenant_id,
            exc.reason,
        )
        return []
    except Exception:  # noqa: BLE001 - producers must not fail because delivery bookkeeping failed.
        logger.exception("delivery_publish_failed event_id=%s tenant_id=%s", event.id, event.tenant_id)
        return []


def _due_condition(now: datetime):
    # Ready and due, or claimed by a worker whose claim has lapsed.
    return or_(
        and_(DeliveryJob.status.in_(READY_STATUSES), DeliveryJob.next_attempt_at <= now),
        and_(DeliveryJob.status == JobStatus.IN_FLIGHT.value, DeliveryJob.claim_expires_at < now),
    )


async def list_due_jobs(*, session: AsyncSession, limit: int = 100) -> list[tuple[str, str]]:
    # (job_id, endpoint_id) pairs in due order so callers can gate per endpoint.
    rows = (
        await session.execute(
            select(DeliveryJob.id, DeliveryJob.endpoint_id)
            .where(_due_condition(_utc_now()))
            .order_by(DeliveryJob.next_attempt_at.asc(), DeliveryJob.created_at.asc())
            .limit(max(1, limit))
        )
    ).all()
    return [(str(job_id), str(endpoint_id)) for job_id, endpoint_id in rows]


async def list_due_job_ids(*, session: AsyncSession, limit: int = 100) -> list[str]:
    return [job_id for job_id, _ in await list_due_jobs(session=session, limit=limit)]


async def enqueue_due_delivery_jobs(*, session: AsyncSession, limit: int = 100) -> int:
    # Re-enqueue overdue jobs to recover from lost enqueues and worker outages.
    settings = get_settings()
    if settings.delivery_queue_mode != "queue":
        return 0
    now = _utc_now()
    stale_cutoff = now - timedelta(seconds=max(1, int(settings.delivery_worker_poll_interval_s)))
    rows = (
        await session.execute(
            select(DeliveryJob.id)
            .where(_due_condition(now), DeliveryJob.updated_at <= stale_cutoff)
            .order_by(DeliveryJob.next_attempt_at.asc(), DeliveryJob.created_at.asc())
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    job_ids = [str(row) for row in rows]
    if not job_ids:
        return 0
    await session.execute(
        update(DeliveryJob)
        .where(DeliveryJob.id.in_(job_ids))
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    count = 0
    for job_id in job_ids:
        if await enqueue_delivery_job(job_id=job_id):
            count += 1
    return count


async def get_delivery_job(*, session: AsyncSession, tenant_id: str, job_id: str) -> DeliveryJob | None:
    row = await session.get(DeliveryJob, job_id, populate_existing=True)
    if row is None or row.tenant_id != tenant_id:
        return None
    return row


async def list_delivery_jobs(
    *,
    session: AsyncSession,
    tenant_id: str,
    status_filter: str | None = None,
    endpoint_id: str | None = None,
    event_id: str | None = None,
    limit: int = 100,
) -> list[DeliveryJob]:
    query = select(DeliveryJob).where(DeliveryJob.tenant_id == tenant_id)
    if status_filter:
        query = query.where(DeliveryJob.status == status_filter)
    if endpoint_id:
        query = query.where(DeliveryJob.endpoint_id == endpoint_id)
    if event_id:
        query = query.where(DeliveryJob.event_id == event_id)
    rows = (
        await session.execute(
            query.order_by(DeliveryJob.created_at.desc(), DeliveryJob.id.desc()).limit(max(1, min(limit, 500)))
        )
    ).scalars().all()
    return list(rows)


async def list_delivery_attempts(
    *,
    session: AsyncSession,
    tenant_id: str,
    job_id: str,
) -> list[DeliveryAttempt] | None:
    # Attempt history only for tenant-owned jobs.
    job = await session.get(DeliveryJob, job_id)
    if job is None or job.tenant_id != tenant_id:
        return None
    rows = (
        await session.execute(
            select(DeliveryAttempt)
            .where(DeliveryAttempt.job_id == job_id)
            .order_by(DeliveryAttempt.attempt_number.asc())
        )
    ).scalars().all()
    return list(rows)


async def delivery_queue_summary(*, session: AsyncSession, tenant_id: str | None = None) -> dict[str, Any]:
    # Aggregate queue counters for operator dashboards.
    status_query = select(DeliveryJob.status, func.count()).group_by(DeliveryJob.status)
    dead_letter_query = select(func.count()).select_from(DeadLetter)
    oldest_query = select(func.min(DeliveryJob.next_attempt_at)).where(DeliveryJob.status.in_(READY_STATUSES))
    if tenant_id is not None:
        status_query = status_query.where(DeliveryJob.tenant_id == tenant_id)
        dead_letter_query = dead_letter_query.where(DeadLetter.tenant_id == tenant_id)
        oldest_query = oldest_query.where(DeliveryJob.tenant_id == tenant_id)
    counts = {status.value: 0 for status in JobStatus}
    for status, count in (await session.execute(status_query)).all():
        counts[str(status)] = int(count)
    dead_letters = int((await session.scalar(dead_letter_query)) or 0)
    oldest_ready = await session.scalar(oldest_query)
    oldest_age_s = None
    if oldest_ready is not None:
        if oldest_ready.tzinfo is None:
            oldest_ready = oldest_ready.replace(tzinfo=timezone.utc)
        oldest_age_s = max(0.0, (_utc_now() - oldest_ready).total_seconds())
    return {
        "jobs": counts,
        "dead_letters": dead_letters,
        "oldest_ready_age_s": oldest_age_s,
    }
