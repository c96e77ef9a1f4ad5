from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from siemrelay.core.config import get_settings
from siemrelay.core.logging import configure_logging
from siemrelay.domain.models import DeliveryJob
from siemrelay.persistence.db import SessionLocal
from siemrelay.services.delivery.jobs import enqueue_delivery_job, enqueue_due_delivery_jobs
from siemrelay.services.delivery.scheduler import process_delivery_job
from siemrelay.services.delivery.transport import HttpxTransport
from siemrelay.services.delivery.worker import EndpointConcurrencyGate


logger = logging.getLogger(__name__)


async def deliver_delivery_job(ctx, job_id: str) -> str:
    # One attempt per queued job id; retries come back through the queue with a deferral.
    gate: EndpointConcurrencyGate = ctx["gate"]
    async with SessionLocal() as session:
        job = await session.get(DeliveryJob, job_id)
        if job is None:
            return "missing"
        endpoint_id = job.endpoint_id
        if not gate.try_acquire(endpoint_id):
            # Endpoint already busy in this worker; come back after one poll interval.
            await enqueue_delivery_job(job_id=job_id, defer_ms=int(get_settings().delivery_worker_poll_interval_s) * 1000)
            return "deferred"
        try:
            row = await process_delivery_job(session=session, job_id=job_id, transport=ctx["transport"])
        finally:
            gate.release(endpoint_id)
    return row.status if row is not None else "skipped"


async def _scheduler_loop() -> None:
    # Re-enqueue due jobs on a bounded cadence to recover from lost enqueues.
    settings = get_settings()
    interval_s = max(1, int(settings.delivery_worker_poll_interval_s))
    batch = max(1, int(settings.delivery_requeue_batch_size))
    while True:
        try:
            async with SessionLocal() as session:
                await enqueue_due_delivery_jobs(session=session, limit=batch)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("delivery due-job scheduler failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    # Start the requeue loop with the worker so retries continue when producers are idle.
    configure_logging()
    ctx["transport"] = HttpxTransport()
    ctx["gate"] = EndpointConcurrencyGate(get_settings().delivery_endpoint_max_in_flight)
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Class attributes for the ARQ CLI: `arq siemrelay.workers.delivery_worker.WorkerSettings`.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.delivery_queue_name
    # Retries are owned by the delivery state machine, not by ARQ.
    max_tries = 1
    max_jobs = max(1, int(settings.delivery_worker_concurrency))
    functions = [deliver_delivery_job]
    on_startup = _startup
    on_shutdown = _shutdown
