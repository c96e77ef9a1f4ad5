from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging

import pytest
from sqlalchemy import func, select

from siemrelay.core.errors import ConfigurationMissingError, DeadLetterNotFoundError, EventConflictError
from siemrelay.domain.models import DeadLetter, DeliveryAttempt, DeliveryJob, NotificationEventRow
from siemrelay.persistence.db import SessionLocal
from siemrelay.services.delivery import jobs as jobs_module
from siemrelay.services.delivery.dead_letters import list_failures, resubmit
from siemrelay.services.delivery.endpoints import patch_endpoint
from siemrelay.services.delivery.records import load_event
from siemrelay.services.delivery.jobs import (
    delivery_queue_summary,
    enqueue_delivery_job,
    list_due_job_ids,
    publish_event,
    submit_event,
)
from siemrelay.services.delivery.scheduler import claim_delivery_job, process_delivery_job
from siemrelay.services.delivery.transport import TransportResponse
from siemrelay.services.delivery.worker import DeliveryWorkerPool, EndpointConcurrencyGate
from siemrelay.tests.utils.delivery import (
    FrozenClock,
    ScriptedTransport,
    create_test_endpoint,
    drive_to_terminal,
    load_job,
    make_event,
    run_job_once,
)


async def _submit(event) -> list[str]:
    async with SessionLocal() as session:
        return await submit_event(session=session, event=event)


async def _count(model, *criteria) -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(model).where(*criteria)) or 0)


async def test_fanout_creates_one_job_per_enabled_endpoint(clock: FrozenClock) -> None:
    # Disabled endpoints and other tenants are not fanned out to.
    await create_test_endpoint(fmt="cef", url="http://siem.test/a")
    await create_test_endpoint(fmt="leef", url="http://siem.test/b")
    await create_test_endpoint(fmt="json", url="http://siem.test/c", enabled=False)
    await create_test_endpoint(tenant_id="t-other", fmt="json", url="http://siem.test/d")

    job_ids = await _submit(make_event())
    assert len(job_ids) == 2
    async with SessionLocal() as session:
        formats = sorted(
            (await session.execute(select(DeliveryJob.format).where(DeliveryJob.id.in_(job_ids)))).scalars().all()
        )
    assert formats == ["cef", "leef"]


async def test_resubmitting_same_event_creates_no_duplicate_jobs(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef")
    event = make_event(event_id="evt-dedupe")
    first = await _submit(event)
    second = await _submit(event)
    assert len(first) == 1
    assert second == []
    assert await _count(DeliveryJob) == 1
    assert await _count(NotificationEventRow) == 1


async def test_concurrent_fanout_of_same_event_dedupes(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="json")
    event = make_event(event_id="evt-race")
    results = await asyncio.gather(_submit(event), _submit(event))
    assert sum(len(ids) for ids in results) == 1
    assert await _count(DeliveryJob) == 1


async def test_fanout_reaches_every_enabled_endpoint(clock: FrozenClock) -> None:
    for index in range(30):
        await create_test_endpoint(fmt="json", url=f"http://siem.test/{index}")
    job_ids = await _submit(make_event())
    assert len(job_ids) == 30
    async with SessionLocal() as session:
        endpoint_ids = (await session.execute(select(DeliveryJob.endpoint_id))).scalars().all()
    assert len(set(endpoint_ids)) == 30


async def test_event_id_owned_by_another_tenant_is_rejected(clock: FrozenClock) -> None:
    # A reused id must never route one tenant's event to another tenant's SIEM.
    await create_test_endpoint(tenant_id="tenant-a", fmt="json", url="http://siem.test/a")
    await create_test_endpoint(tenant_id="tenant-b", fmt="json", url="http://siem.test/b")
    assert len(await _submit(make_event(tenant_id="tenant-a", event_id="shared", subject="A-secret"))) == 1

    with pytest.raises(EventConflictError) as excinfo:
        await _submit(make_event(tenant_id="tenant-b", event_id="shared", subject="B-event"))
    assert excinfo.value.reason == "tenant_mismatch"
    assert await _count(DeliveryJob, DeliveryJob.tenant_id == "tenant-b") == 0
    async with SessionLocal() as session:
        stored = await load_event(session=session, event_id="shared")
    assert stored is not None
    assert (stored.tenant_id, stored.subject) == ("tenant-a", "A-secret")


async def test_event_id_reused_with_different_content_is_rejected(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef")
    await _submit(make_event(event_id="evt-edit", severity=4))
    with pytest.raises(EventConflictError) as excinfo:
        await _submit(make_event(event_id="evt-edit", severity=9))
    assert excinfo.value.reason == "content_mismatch"

    # A re-send that only differs in its timestamp is the same event.
    later = datetime(2026, 10, 1, 11, 59, 30, tzinfo=timezone.utc)
    assert await _submit(make_event(event_id="evt-edit", severity=4, created_at=later)) == []
    assert await _count(DeliveryJob) == 1


async def test_publish_event_logs_conflicting_event_id(clock: FrozenClock, caplog: pytest.LogCaptureFixture) -> None:
    await _submit(make_event(tenant_id="tenant-a", event_id="shared"))
    with caplog.at_level(logging.ERROR, logger="siemrelay.services.delivery.jobs"):
        assert await publish_event(make_event(tenant_id="tenant-b", event_id="shared")) == []
    assert "delivery_publish_rejected" in caplog.text
    assert "tenant_mismatch" in caplog.text


async def test_no_endpoints_means_no_jobs(clock: FrozenClock) -> None:
    assert await _submit(make_event()) == []
    assert await _count(NotificationEventRow) == 1


async def test_publish_event_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    # Producers are isolated from delivery bookkeeping failures.
    async def _boom(**_kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(jobs_module, "submit_event", _boom)
    assert await publish_event(make_event()) == []


async def test_enqueue_is_a_no_op_in_poll_mode() -> None:
    assert await enqueue_delivery_job(job_id="job-x") is False


async def test_only_one_of_two_racing_claims_wins(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef")
    job_id = (await _submit(make_event()))[0]

    async def _claim():
        async with SessionLocal() as session:
            return await claim_delivery_job(session=session, job_id=job_id)

    results = await asyncio.gather(_claim(), _claim())
    winners = [row for row in results if row is not None]
    assert len(winners) == 1
    assert winners[0].status == "in_flight"
    assert winners[0].claim_token


async def test_lapsed_claim_can_be_taken_over(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef")
    job_id = (await _submit(make_event()))[0]
    async with SessionLocal() as session:
        first = await claim_delivery_job(session=session, job_id=job_id)
    assert first is not None

    async with SessionLocal() as session:
        assert await claim_delivery_job(session=session, job_id=job_id) is None
    clock.advance(seconds=61)
    async with SessionLocal() as session:
        second = await claim_delivery_job(session=session, job_id=job_id)
    assert second is not None
    assert second.claim_token != first.claim_token


async def test_worker_that_lost_its_claim_writes_nothing(clock: FrozenClock) -> None:
    # A slow attempt whose claim lapses cannot overwrite the new owner's state.
    await create_test_endpoint(fmt="json")
    job_id = (await _submit(make_event()))[0]
    rival: dict[str, DeliveryJob | None] = {}

    class SlowTransport:
        async def post(self, url, *, content, headers, timeout_s):
            clock.advance(seconds=61)
            async with SessionLocal() as session:
                rival["job"] = await claim_delivery_job(session=session, job_id=job_id)
            return TransportResponse(status_code=200)

    async with SessionLocal() as session:
        result = await process_delivery_job(session=session, job_id=job_id, transport=SlowTransport())
    assert result is None
    assert rival["job"] is not None

    job = await load_job(job_id)
    assert job.status == "in_flight"
    assert job.claim_token == rival["job"].claim_token
    assert await _count(DeliveryAttempt) == 0


async def test_due_jobs_exclude_future_and_terminal(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef", url="http://siem.test/a")
    await create_test_endpoint(fmt="cef", url="http://siem.test/b")
    job_a, job_b = await _submit(make_event())
    await run_job_once(job_a, ScriptedTransport(script=[500]), clock)
    await run_job_once(job_b, ScriptedTransport(), clock)

    async with SessionLocal() as session:
        assert await list_due_job_ids(session=session) == []
    clock.advance(seconds=5)
    async with SessionLocal() as session:
        assert await list_due_job_ids(session=session) == [job_a]


async def test_resubmit_creates_fresh_job_and_keeps_history(clock: FrozenClock) -> None:
    endpoint = await create_test_endpoint(fmt="cef")
    job_id = (await _submit(make_event()))[0]
    await drive_to_terminal(job_id, ScriptedTransport(script=[503] * 5), clock)

    async with SessionLocal() as session:
        failures = await list_failures(session=session, tenant_id="t-siem")
    assert [record.job_id for record in failures] == [job_id]
    assert failures[0].attempts_made == 5

    async with SessionLocal() as session:
        fresh = await resubmit(session=session, tenant_id="t-siem", job_id=job_id, actor_id="analyst-1")
    assert fresh.id != job_id
    assert fresh.status == "pending"
    assert fresh.attempt_count == 0
    assert fresh.resubmitted_from_job_id == job_id
    assert fresh.endpoint_id == endpoint.id

    delivered = await drive_to_terminal(fresh.id, ScriptedTransport(), clock)
    assert delivered.status == "succeeded"
    original = await load_job(job_id)
    assert original.status == "exhausted"
    assert await _count(DeadLetter) == 1


async def test_resubmit_rejects_unknown_foreign_and_disabled(clock: FrozenClock) -> None:
    endpoint = await create_test_endpoint(fmt="cef")
    job_id = (await _submit(make_event()))[0]
    await run_job_once(job_id, ScriptedTransport(script=[401]), clock)

    async with SessionLocal() as session:
        with pytest.raises(DeadLetterNotFoundError):
            await resubmit(session=session, tenant_id="t-siem", job_id="missing")
        with pytest.raises(DeadLetterNotFoundError):
            await resubmit(session=session, tenant_id="t-other", job_id=job_id)
        await patch_endpoint(session=session, tenant_id="t-siem", endpoint_id=endpoint.id, updates={"enabled": False})
        with pytest.raises(ConfigurationMissingError) as excinfo:
            await resubmit(session=session, tenant_id="t-siem", job_id=job_id)
    assert excinfo.value.reason == "endpoint_disabled"


async def test_queue_summary_counts_by_status(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef", url="http://siem.test/a")
    await create_test_endpoint(fmt="json", url="http://siem.test/b")
    job_a, _job_b = await _submit(make_event())
    await run_job_once(job_a, ScriptedTransport(script=[404]), clock)

    async with SessionLocal() as session:
        summary = await delivery_queue_summary(session=session, tenant_id="t-siem")
    assert summary["jobs"]["exhausted"] == 1
    assert summary["jobs"]["pending"] == 1
    assert summary["jobs"]["succeeded"] == 0
    assert summary["dead_letters"] == 1
    assert summary["oldest_ready_age_s"] == 0.0


def test_endpoint_gate_limits_in_flight_per_endpoint() -> None:
    gate = EndpointConcurrencyGate(max_in_flight=2)
    assert gate.try_acquire("ep-1")
    assert gate.try_acquire("ep-1")
    assert not gate.try_acquire("ep-1")
    assert gate.try_acquire("ep-2")
    gate.release("ep-1")
    assert gate.in_flight("ep-1") == 1
    gate.release("ep-1")
    assert gate.in_flight("ep-1") == 0


async def test_worker_pool_runs_one_job_per_endpoint_at_a_time(clock: FrozenClock) -> None:
    # Two endpoints with two due jobs each: one slot per endpoint per cycle.
    first_endpoint = await create_test_endpoint(fmt="cef", url="http://siem.test/a")
    second_endpoint = await create_test_endpoint(fmt="json", url="http://siem.test/b")
    await _submit(make_event(event_id="evt-1"))
    await _submit(make_event(event_id="evt-2"))
    transport = ScriptedTransport()
    pool = DeliveryWorkerPool(transport=transport, concurrency=4, gate=EndpointConcurrencyGate(1))

    first = await pool.run_once()
    assert first == {"due": 4, "started": 2, "skipped": 2, "processed": 2}
    assert pool.gate.in_flight(first_endpoint.id) == 0
    assert pool.gate.in_flight(second_endpoint.id) == 0
    second = await pool.run_once()
    assert second == {"due": 2, "started": 2, "skipped": 0, "processed": 2}
    assert await _count(DeliveryJob, DeliveryJob.status == "succeeded") == 4
    assert len(transport.sent) == 4


async def test_worker_pool_run_forever_stops_and_drains(clock: FrozenClock) -> None:
    await create_test_endpoint(fmt="cef")
    job_id = (await _submit(make_event()))[0]
    transport = ScriptedTransport()
    pool = DeliveryWorkerPool(transport=transport, poll_interval_s=0.01)
    stop = asyncio.Event()

    runner = asyncio.create_task(pool.run_forever(stop_event=stop))
    for _ in range(200):
        if (await load_job(job_id)).status == "succeeded":
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(runner, timeout=5)
    assert (await load_job(job_id)).status == "succeeded"
    assert len(transport.sent) == 1
