from __future__ import annotations

import asyncio
from collections import defaultdict
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from siemrelay.core.config import get_settings
from siemrelay.persistence.db import SessionLocal
from siemrelay.services.delivery.jobs import list_due_jobs
from siemrelay.services.delivery.scheduler import process_delivery_job
from siemrelay.services.delivery.transport import DeliveryTransport


logger = logging.getLogger(__name__)


def _is_missing_table_error(exc: Exception) -> bool:
    # Let the pool start before migrations have run.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


class EndpointConcurrencyGate:
    """Per-endpoint in-flight slots for one worker process.

    ``try_acquire`` never waits: a busy endpoint's job is left for the next
    poll so a slow receiver cannot tie up workers meant for other endpoints.
    """

    def __init__(self, max_in_flight: int = 1) -> None:
        self._max_in_flight = max(1, int(max_in_flight))
        self._in_flight: dict[str, int] = defaultdict(int)

    def try_acquire(self, endpoint_id: str) -> bool:
        if self._in_flight[endpoint_id] >= self._max_in_flight:
            return False
        self._in_flight[endpoint_id] += 1
        return True

    def release(self, endpoint_id: str) -> None:
        remaining = self._in_flight.get(endpoint_id, 0) - 1
        if remaining > 0:
            self._in_flight[endpoint_id] = remaining
        else:
            self._in_flight.pop(endpoint_id, None)

    def in_flight(self, endpoint_id: str) -> int:
        return self._in_flight.get(endpoint_id, 0)


class DeliveryWorkerPool:
    """Drain due delivery jobs with bounded global and per-endpoint concurrency."""

    def __init__(
        self,
        *,
        transport: DeliveryTransport,
        concurrency: int | None = None,
        batch_size: int | None = None,
        poll_interval_s: float | None = None,
        gate: EndpointConcurrencyGate | None = None,
        session_factory: Callable[[], Any] = SessionLocal,
    ) -> None:
        settings = get_settings()
        self._transport = transport
        self._batch_size = max(1, int(batch_size or settings.delivery_requeue_batch_size))
        self._poll_interval_s = max(0.01, float(poll_interval_s or settings.delivery_worker_poll_interval_s))
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency or settings.delivery_worker_concurrency)))
        self._gate = gate or EndpointConcurrencyGate(settings.delivery_endpoint_max_in_flight)
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    @property
    def gate(self) -> EndpointConcurrencyGate:
        return self._gate

    async def _run_job(self, job_id: str, endpoint_id: str) -> bool:
        try:
            async with self._semaphore:
                async with self._session_factory() as session:
                    row = await process_delivery_job(session=session, job_id=job_id, transport=self._transport)
            return row is not None
        except Exception:  # noqa: BLE001 - one failing job must not take down the pool.
            logger.exception("delivery_job_processing_failed job_id=%s endpoint_id=%s", job_id, endpoint_id)
            return False
        finally:
            self._gate.release(endpoint_id)

    async def run_once(self, *, wait: bool = True) -> dict[str, int]:
        # Start every due job whose endpoint has a free slot; optionally wait for them.
        try:
            async with self._session_factory() as session:
                due = await list_due_jobs(session=session, limit=self._batch_size)
        except SQLAlchemyError as exc:
            if _is_missing_table_error(exc):
                return {"due": 0, "started": 0, "skipped": 0, "processed": 0}
            raise
        started: list[asyncio.Task] = []
        skipped = 0
        for job_id, endpoint_id in due:
            if not self._gate.try_acquire(endpoint_id):
                skipped += 1
                continue
            task = asyncio.create_task(self._run_job(job_id, endpoint_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        processed = 0
        if wait and started:
            processed = sum(1 for ok in await asyncio.gather(*started) if ok)
        return {"due": len(due), "started": len(started), "skipped": skipped, "processed": processed}

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_forever(self, *, stop_event: asyncio.Event | None = None) -> None:
        # Poll on a fixed cadence; cycle failures are logged and the loop keeps going.
        stop = stop_event or asyncio.Event()
        try:
            while not stop.is_set():
                try:
                    await self.run_once(wait=False)
                except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                    logger.exception("delivery worker cycle failed")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._poll_interval_s)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.drain()
