"""Single delivery attempt for one job.

The dispatcher re-reads the endpoint, renders and signs the body, performs
exactly one POST and records the outcome as a ``DeliveryAttempt`` row in
the caller's transaction. It never changes job state; the scheduler owns
transitions and commits the attempt together with them.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import time

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from siemrelay.core.config import get_settings
from siemrelay.core.errors import (
    ConfigurationMissingError,
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from siemrelay.domain.events import WebhookEndpointConfig
from siemrelay.domain.models import DeliveryAttempt, DeliveryJob
from siemrelay.domain.state import AttemptOutcome
from siemrelay.services.delivery import signing
from siemrelay.services.delivery.endpoints import (
    EndpointConfigAdapter,
    SqlEndpointConfigAdapter,
    build_auth_headers,
    record_endpoint_outcome,
)
from siemrelay.services.delivery.formats import render_body
from siemrelay.services.delivery.records import load_event
from siemrelay.services.delivery.transport import DeliveryTransport
from siemrelay.services.telemetry import increment_counter, record_delivery_latency, record_external_call


logger = logging.getLogger(__name__)

_RETRYABLE_4XX = {429}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify_status(status_code: int) -> DeliveryError | None:
    # None means delivered; otherwise the error type decides retry vs give up.
    if 200 <= status_code < 300:
        return None
    if status_code in _RETRYABLE_4XX or status_code >= 500:
        return TransientDeliveryError(f"http_{status_code}", http_status=status_code)
    if 400 <= status_code < 500:
        return PermanentDeliveryError(f"http_{status_code}", http_status=status_code)
    # 1xx/3xx: the receiver did not accept the event; try again later.
    return TransientDeliveryError(f"unexpected_status_{status_code}", http_status=status_code)


def classify_exception(exc: Exception) -> DeliveryError:
    if isinstance(exc, httpx.TimeoutException):
        return TransientDeliveryError("timeout")
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return PermanentDeliveryError(f"invalid_url:{type(exc).__name__}")
    if isinstance(exc, httpx.HTTPError):
        return TransientDeliveryError(f"transport_error:{type(exc).__name__}")
    # The request could not be built or sent at all; retrying would fail the same way.
    return PermanentDeliveryError(f"request_rejected:{type(exc).__name__}")


def outcome_for(error: DeliveryError | None) -> AttemptOutcome:
    if error is None:
        return AttemptOutcome.SUCCESS
    if isinstance(error, ConfigurationMissingError):
        return AttemptOutcome.CANCELLED
    if isinstance(error, PermanentDeliveryError):
        return AttemptOutcome.PERMANENT_FAILURE
    return AttemptOutcome.TRANSIENT_FAILURE


def build_request_headers(
    *,
    job: DeliveryJob,
    config: WebhookEndpointConfig,
    attempt_number: int,
    body: bytes,
) -> dict[str, str]:
    headers = build_auth_headers(config)
    headers.update(
        {
            "Content-Type": "application/json",
            signing.HEADER_DELIVERY_ID: job.id,
            signing.HEADER_ATTEMPT: str(attempt_number),
            signing.HEADER_EVENT_ID: job.event_id,
            signing.HEADER_TENANT_ID: job.tenant_id,
            signing.HEADER_FORMAT: config.format.value,
            signing.HEADER_PAYLOAD_SHA256: signing.payload_sha256(body),
        }
    )
    if config.signing_secret:
        headers[signing.HEADER_SIGNATURE] = signing.compute_signature(body, config.signing_secret)
    return headers


def _cancelled_attempt(*, job: DeliveryJob, attempt_number: int, error: ConfigurationMissingError) -> DeliveryAttempt:
    # Nothing is sent, so executed_at stays empty.
    now = _utc_now()
    return DeliveryAttempt(
        job_id=job.id,
        attempt_number=attempt_number,
        scheduled_at=job.next_attempt_at,
        executed_at=None,
        finished_at=now,
        outcome=AttemptOutcome.CANCELLED.value,
        reason=error.reason,
    )


async def attempt_delivery(
    *,
    session: AsyncSession,
    job: DeliveryJob,
    transport: DeliveryTransport,
    adapter: EndpointConfigAdapter | None = None,
) -> DeliveryAttempt:
    """Run attempt ``job.attempt_count + 1`` and flush its row.

    Raises ``FormatError`` before anything is written when the event cannot
    be rendered in the endpoint's current format.
    """
    resolved_adapter = adapter or SqlEndpointConfigAdapter(session)
    attempt_number = int(job.attempt_count or 0) + 1
    config = await resolved_adapter.current_config(job.tenant_id, job.endpoint_id)
    if config is None or not config.enabled:
        reason = "endpoint_missing" if config is None else "endpoint_disabled"
        attempt = _cancelled_attempt(job=job, attempt_number=attempt_number, error=ConfigurationMissingError(reason))
        session.add(attempt)
        await session.flush()
        increment_counter("delivery.attempt.cancelled")
        logger.info("delivery_attempt_cancelled job_id=%s attempt=%s reason=%s", job.id, attempt_number, reason)
        return attempt

    event = await load_event(session=session, event_id=job.event_id)
    if event is None:
        attempt = _cancelled_attempt(
            job=job,
            attempt_number=attempt_number,
            error=ConfigurationMissingError("event_missing"),
        )
        session.add(attempt)
        await session.flush()
        logger.error("delivery_event_missing job_id=%s event_id=%s", job.id, job.event_id)
        return attempt

    body = render_body(event, config.format)
    headers = build_request_headers(job=job, config=config, attempt_number=attempt_number, body=body)
    timeout_s = max(0.1, float(get_settings().delivery_request_timeout_s))

    executed_at = _utc_now()
    started = time.monotonic()
    http_status: int | None = None
    try:
        response = await transport.post(config.url, content=body, headers=headers, timeout_s=timeout_s)
        http_status = response.status_code
        error = classify_status(response.status_code)
    except Exception as exc:  # noqa: BLE001 - every failed POST is recorded as an attempt, never left in flight.
        error = classify_exception(exc)
    latency_ms = int((time.monotonic() - started) * 1000)
    finished_at = _utc_now()
    outcome = outcome_for(error)

    attempt = DeliveryAttempt(
        job_id=job.id,
        attempt_number=attempt_number,
        scheduled_at=job.next_attempt_at,
        executed_at=executed_at,
        finished_at=finished_at,
        outcome=outcome.value,
        reason=error.reason if error is not None else None,
        http_status=http_status,
        payload_sha256=headers[signing.HEADER_PAYLOAD_SHA256],
        latency_ms=latency_ms,
    )
    session.add(attempt)
    await record_endpoint_outcome(
        session=session,
        endpoint_id=config.endpoint_id,
        success=error is None,
        at=finished_at,
    )
    await session.flush()

    record_external_call(
        integration=f"siem_webhook.{config.format.value}",
        latency_ms=float(latency_ms),
        success=error is None,
    )
    increment_counter(f"delivery.attempt.{outcome.value}")
    if error is None:
        record_delivery_latency((finished_at - event.created_at).total_seconds() * 1000)
        logger.info("delivery_attempt_succeeded job_id=%s attempt=%s status=%s", job.id, attempt_number, http_status)
    else:
        logger.warning(
            "delivery_attempt_failed job_id=%s attempt=%s outcome=%s reason=%s",
            job.id,
            attempt_number,
            outcome.value,
            error.reason,
        )
    return attempt
