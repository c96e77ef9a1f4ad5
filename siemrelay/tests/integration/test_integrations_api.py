from __future__ import annotations

from typing import Any

import httpx
import pytest

from siemrelay.apps.api.main import create_app
from siemrelay.tests.utils.delivery import FrozenClock, ScriptedTransport, drive_to_terminal


TENANT_HEADERS = {"X-Tenant-Id": "t-api"}


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


async def _create_webhook(client: httpx.AsyncClient, **overrides: Any) -> dict[str, Any]:
    payload = {"name": "splunk", "url": "https://siem.example/ingest", "format": "cef", "signing_secret": "s3cret"}
    payload.update(overrides)
    response = await client.post("/v1/integrations/webhook", json=payload, headers=TENANT_HEADERS)
    assert response.status_code == 200, response.text
    return response.json()["data"]


async def test_health_uses_success_envelope(client: httpx.AsyncClient) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["request_id"] == "req-1"
    assert response.headers["X-Request-Id"] == "req-1"


async def test_tenant_header_is_required(client: httpx.AsyncClient) -> None:
    response = await client.get("/v1/integrations/webhook")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


async def test_webhook_crud_hides_secrets(client: httpx.AsyncClient) -> None:
    # Secrets are write-only; reads only say whether one is set.
    created = await _create_webhook(client)
    assert created["format"] == "cef"
    assert created["has_signing_secret"] is True
    assert "signing_secret" not in created

    listed = await client.get("/v1/integrations/webhook", headers=TENANT_HEADERS)
    assert [item["id"] for item in listed.json()["data"]["items"]] == [created["id"]]

    patched = await client.patch(
        f"/v1/integrations/webhook/{created['id']}",
        json={"enabled": False, "format": "leef"},
        headers=TENANT_HEADERS,
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["enabled"] is False
    assert patched.json()["data"]["format"] == "leef"

    other_tenant = await client.get(f"/v1/integrations/webhook/{created['id']}", headers={"X-Tenant-Id": "t-x"})
    assert other_tenant.status_code == 404
    assert other_tenant.json()["error"]["code"] == "NOT_FOUND"

    deleted = await client.delete(f"/v1/integrations/webhook/{created['id']}", headers=TENANT_HEADERS)
    assert deleted.json()["data"] == {"deleted": True}
    missing = await client.get(f"/v1/integrations/webhook/{created['id']}", headers=TENANT_HEADERS)
    assert missing.status_code == 404


@pytest.mark.parametrize(
    ("payload", "status_code", "code"),
    [
        ({"url": "ftp://siem.example", "format": "cef"}, 422, "INVALID_INPUT"),
        ({"url": "https://siem.example", "format": "syslog"}, 422, "REQUEST_VALIDATION_ERROR"),
        ({"url": "https://siem.example", "format": "json", "auth_type": "bearer"}, 422, "INVALID_INPUT"),
        ({"url": "https://siem.example", "format": "json", "retry_config": {"attempts": 3}}, 422, "INVALID_INPUT"),
    ],
)
async def test_invalid_webhook_config_is_rejected(
    client: httpx.AsyncClient,
    payload: dict[str, Any],
    status_code: int,
    code: str,
) -> None:
    response = await client.post("/v1/integrations/webhook", json=payload, headers=TENANT_HEADERS)
    assert response.status_code == status_code
    assert response.json()["error"]["code"] == code


async def test_event_submission_fans_out_and_failures_can_be_resubmitted(
    client: httpx.AsyncClient,
    clock: FrozenClock,
) -> None:
    # Submit, exhaust, list the failure, then resubmit it through the API.
    await _create_webhook(client)
    submitted = await client.post(
        "/v1/events",
        json={"kind": "alert", "severity": 9, "subject": "host-17", "attributes": {"rule": "beaconing"}},
        headers=TENANT_HEADERS,
    )
    assert submitted.status_code == 202
    job_ids = submitted.json()["data"]["job_ids"]
    assert len(job_ids) == 1
    job_id = job_ids[0]

    await drive_to_terminal(job_id, ScriptedTransport(script=[503] * 5), clock)

    job = await client.get(f"/v1/integrations/webhook/jobs/{job_id}", headers=TENANT_HEADERS)
    assert job.json()["data"]["status"] == "exhausted"
    attempts = await client.get(f"/v1/integrations/webhook/jobs/{job_id}/attempts", headers=TENANT_HEADERS)
    assert [item["attempt_number"] for item in attempts.json()["data"]["items"]] == [1, 2, 3, 4, 5]

    failures = await client.get("/v1/integrations/webhook/failures", headers=TENANT_HEADERS)
    failure = failures.json()["data"]["failures"][0]
    assert failure["job_id"] == job_id
    assert failure["attempts_made"] == 5
    assert failure["last_outcome"] == "transient_failure"

    detail = await client.get(f"/v1/integrations/webhook/failures/{job_id}", headers=TENANT_HEADERS)
    assert detail.json()["data"]["last_http_status"] == 503
    audit = await client.get("/v1/integrations/webhook/audit?event_type=delivery.job.exhausted", headers=TENANT_HEADERS)
    assert [item["resource_id"] for item in audit.json()["data"]["items"]] == [job_id]

    resubmitted = await client.post(
        f"/v1/integrations/webhook/failures/{job_id}/resubmit",
        headers={**TENANT_HEADERS, "X-Actor-Id": "analyst-1"},
    )
    assert resubmitted.status_code == 200
    assert resubmitted.json()["data"]["resubmitted_from_job_id"] == job_id

    summary = await client.get("/v1/integrations/webhook/summary", headers=TENANT_HEADERS)
    assert summary.json()["data"]["jobs"]["exhausted"] == 1
    assert summary.json()["data"]["jobs"]["pending"] == 1
    assert summary.json()["data"]["dead_letters"] == 1

    listed = await client.get("/v1/integrations/webhook/jobs?status=pending", headers=TENANT_HEADERS)
    assert [item["resubmitted_from_job_id"] for item in listed.json()["data"]["items"]] == [job_id]


async def test_resubmit_unknown_failure_is_404(client: httpx.AsyncClient) -> None:
    response = await client.post("/v1/integrations/webhook/failures/nope/resubmit", headers=TENANT_HEADERS)
    assert response.status_code == 404
    detail = await client.get("/v1/integrations/webhook/failures/nope", headers=TENANT_HEADERS)
    assert detail.status_code == 404


async def test_resubmit_to_disabled_endpoint_is_409(client: httpx.AsyncClient, clock: FrozenClock) -> None:
    created = await _create_webhook(client)
    submitted = await client.post(
        "/v1/events",
        json={"kind": "verdict", "severity": 3, "subject": "a.exe"},
        headers=TENANT_HEADERS,
    )
    job_id = submitted.json()["data"]["job_ids"][0]
    await drive_to_terminal(job_id, ScriptedTransport(script=[403]), clock)
    await client.patch(f"/v1/integrations/webhook/{created['id']}", json={"enabled": False}, headers=TENANT_HEADERS)

    response = await client.post(f"/v1/integrations/webhook/failures/{job_id}/resubmit", headers=TENANT_HEADERS)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ENDPOINT_UNAVAILABLE"


async def test_event_validation_errors(client: httpx.AsyncClient) -> None:
    response = await client.post(
        "/v1/events",
        json={"kind": "verdict", "severity": 11, "subject": "x"},
        headers=TENANT_HEADERS,
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


async def test_metrics_report_delivery_counters(client: httpx.AsyncClient, clock: FrozenClock) -> None:
    await _create_webhook(client, format="json")
    submitted = await client.post(
        "/v1/events",
        json={"kind": "verdict", "severity": 5, "subject": "doc.docx"},
        headers=TENANT_HEADERS,
    )
    await drive_to_terminal(submitted.json()["data"]["job_ids"][0], ScriptedTransport(), clock)

    response = await client.get("/v1/metrics")
    counters = response.json()["data"]["counters"]
    assert counters["delivery.job.created"] == 1
    assert counters["delivery.attempt.success"] == 1
    assert counters["delivery.job.succeeded"] == 1
    assert response.json()["data"]["endpoint_latency_ms"]["siem_webhook.json"]["max"] is not None


async def test_event_id_reused_by_another_tenant_is_409(client: httpx.AsyncClient) -> None:
    event = {"id": "evt-shared", "kind": "alert", "severity": 6, "subject": "host-1"}
    first = await client.post("/v1/events", json=event, headers=TENANT_HEADERS)
    assert first.status_code == 202

    again = await client.post("/v1/events", json=event, headers=TENANT_HEADERS)
    assert again.status_code == 202
    assert again.json()["data"]["job_ids"] == []

    foreign = await client.post("/v1/events", json=event, headers={"X-Tenant-Id": "t-other"})
    assert foreign.status_code == 409
    assert foreign.json()["error"]["code"] == "EVENT_CONFLICT"
    edited = await client.post("/v1/events", json={**event, "severity": 2}, headers=TENANT_HEADERS)
    assert edited.status_code == 409
