from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from siemrelay.services.delivery.signing import (
    DeliveryHeaders,
    parse_delivery_headers,
    verify_signature,
)


logger = logging.getLogger("siemrelay.siem_receiver")

_FAIL_MODES = {"never", "always", "first_n"}


@dataclass(frozen=True)
class ReceiverSettings:
    # Runtime knobs for the reference collector; tests build these directly.
    shared_secret: str | None = None
    require_signature: bool = False
    fail_mode: str = "never"
    fail_n: int = 0
    fail_status: int = 500
    port: int = 9001


class ReceiverHealth(BaseModel):
    status: str
    require_signature: bool
    fail_mode: str
    fail_n: int
    fail_status: int


class ReceiverError(BaseModel):
    accepted: bool = False
    reason: str


class ReceiverWebhookResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    delivery_id: str | None = None
    payload_sha256: str | None = None


class ReceiptItem(BaseModel):
    delivery_id: str
    attempt: int
    event_id: str
    tenant_id: str
    format: str
    received_at: str
    payload_sha256: str
    signature_valid: bool
    response_status: int
    failure_reason: str | None = None
    duplicate: bool = False
    body: dict[str, Any] | None = None


class ReceivedResponse(BaseModel):
    items: list[ReceiptItem]


class ReceiverStats(BaseModel):
    total_requests: int
    accepted_count: int
    failed_count: int
    rejected_count: int
    dedupe_hits: int
    forced_failure_count: int


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value or str(default))
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def load_receiver_settings() -> ReceiverSettings:
    # Env-driven settings for running the collector next to a local worker.
    fail_mode = (os.getenv("SIEM_RECEIVER_FAIL_MODE") or "never").strip().lower()
    if fail_mode not in _FAIL_MODES:
        fail_mode = "never"
    return ReceiverSettings(
        shared_secret=(os.getenv("SIEM_RECEIVER_SHARED_SECRET") or "").strip() or None,
        require_signature=_parse_bool(os.getenv("SIEM_RECEIVER_REQUIRE_SIGNATURE"), default=False),
        fail_mode=fail_mode,
        fail_n=_parse_int(os.getenv("SIEM_RECEIVER_FAIL_N"), default=0),
        fail_status=_parse_int(os.getenv("SIEM_RECEIVER_FAIL_STATUS"), default=500, minimum=100),
        port=_parse_int(os.getenv("SIEM_RECEIVER_PORT"), default=9001, minimum=1),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _log_event(event: str, **fields: Any) -> None:
    payload = {"event": event, **fields, "ts": _utc_now_iso()}
    logger.info(json.dumps(payload, sort_keys=True))


def _status_for_reason(reason: str) -> int:
    if reason in {"missing_signature", "signature_mismatch"}:
        return 401
    if reason == "secret_missing":
        return 500
    return 400


@dataclass
class ReceiverStore:
    """In-memory receipts for one collector process."""

    receipts: list[ReceiptItem] = field(default_factory=list)
    rejections: list[str] = field(default_factory=list)
    seen: set[str] = field(default_factory=set)
    failures_by_delivery: dict[str, int] = field(default_factory=dict)

    def record(
        self,
        *,
        headers: DeliveryHeaders,
        payload_digest: str,
        signature_valid: bool,
        response_status: int,
        failure_reason: str | None = None,
        duplicate: bool = False,
        body: dict[str, Any] | None = None,
    ) -> None:
        self.receipts.append(
            ReceiptItem(
                delivery_id=headers.delivery_id,
                attempt=headers.attempt,
                event_id=headers.event_id,
                tenant_id=headers.tenant_id,
                format=headers.format,
                received_at=_utc_now_iso(),
                payload_sha256=payload_digest,
                signature_valid=signature_valid,
                response_status=response_status,
                failure_reason=failure_reason,
                duplicate=duplicate,
                body=body,
            )
        )

    def stats(self) -> ReceiverStats:
        return ReceiverStats(
            total_requests=len(self.receipts) + len(self.rejections),
            accepted_count=sum(1 for item in self.receipts if 200 <= item.response_status < 300),
            failed_count=sum(1 for item in self.receipts if item.response_status >= 400),
            rejected_count=len(self.rejections),
            dedupe_hits=sum(1 for item in self.receipts if item.duplicate),
            forced_failure_count=sum(1 for item in self.receipts if item.failure_reason == "forced_failure"),
        )


def create_app(settings: ReceiverSettings | None = None) -> FastAPI:
    """Reference SIEM collector that checks what siemrelay sends.

    Accepts deliveries on ``POST /webhook``, verifies the HMAC signature over
    the raw body and can be told to fail on purpose so retry paths are
    observable end to end.
    """
    resolved = settings or load_receiver_settings()
    store = ReceiverStore()
    app = FastAPI(
        title="siemrelay reference SIEM collector",
        version="1.0.0",
        description="Receives CEF, LEEF and JSON deliveries and reports what arrived.",
    )
    app.state.receiver_store = store

    @app.get("/health", response_model=ReceiverHealth)
    async def health() -> ReceiverHealth:
        return ReceiverHealth(
            status="ok",
            require_signature=resolved.require_signature,
            fail_mode=resolved.fail_mode,
            fail_n=resolved.fail_n,
            fail_status=resolved.fail_status,
        )

    @app.get("/received", response_model=ReceivedResponse)
    async def received(limit: int = 50) -> ReceivedResponse:
        # Newest first.
        bounded = max(1, min(limit, 500))
        return ReceivedResponse(items=list(reversed(store.receipts))[:bounded])

    @app.get("/stats", response_model=ReceiverStats)
    async def stats() -> ReceiverStats:
        return store.stats()

    @app.post(
        "/webhook",
        response_model=ReceiverWebhookResponse,
        responses={400: {"model": ReceiverError}, 401: {"model": ReceiverError}, 500: {"model": ReceiverError}},
    )
    async def webhook(request: Request) -> JSONResponse:
        # Read the body once; the signature covers these exact bytes.
        raw_body = await request.body()
        try:
            headers = parse_delivery_headers(request.headers)
        except ValueError as exc:
            reason = str(exc)
            store.rejections.append(reason)
            _log_event("receiver.webhook.rejected", reason=reason)
            return JSONResponse(status_code=400, content=ReceiverError(reason=reason).model_dump())

        verification = verify_signature(headers, raw_body, resolved.shared_secret)
        signature_failed = not verification.ok and (resolved.require_signature or headers.signature is not None)
        if signature_failed:
            status_code = _status_for_reason(verification.reason)
            store.record(
                headers=headers,
                payload_digest=verification.payload_sha256,
                signature_valid=False,
                response_status=status_code,
                failure_reason=verification.reason,
            )
            _log_event("receiver.webhook.rejected", reason=verification.reason, delivery_id=headers.delivery_id)
            return JSONResponse(status_code=status_code, content=ReceiverError(reason=verification.reason).model_dump())

        forced = resolved.fail_mode == "always"
        if resolved.fail_mode == "first_n" and resolved.fail_n > 0:
            count = store.failures_by_delivery.get(headers.delivery_id, 0) + 1
            store.failures_by_delivery[headers.delivery_id] = count
            forced = count <= resolved.fail_n
        if forced:
            store.record(
                headers=headers,
                payload_digest=verification.payload_sha256,
                signature_valid=verification.reason == "ok",
                response_status=resolved.fail_status,
                failure_reason="forced_failure",
            )
            _log_event("receiver.webhook.forced_failure", delivery_id=headers.delivery_id, attempt=headers.attempt)
            return JSONResponse(
                status_code=resolved.fail_status,
                content=ReceiverError(reason="forced_failure").model_dump(),
            )

        try:
            body = json.loads(raw_body.decode("utf-8"))
        except ValueError:
            store.rejections.append("invalid_json")
            return JSONResponse(status_code=400, content=ReceiverError(reason="invalid_json").model_dump())

        duplicate = headers.delivery_id in store.seen
        store.seen.add(headers.delivery_id)
        store.record(
            headers=headers,
            payload_digest=verification.payload_sha256,
            signature_valid=verification.reason == "ok",
            response_status=200,
            duplicate=duplicate,
            body=body,
        )
        _log_event(
            "receiver.webhook.duplicate" if duplicate else "receiver.webhook.accepted",
            delivery_id=headers.delivery_id,
            attempt=headers.attempt,
            format=headers.format,
        )
        return JSONResponse(
            status_code=200,
            content=ReceiverWebhookResponse(
                accepted=True,
                duplicate=duplicate,
                delivery_id=headers.delivery_id,
                payload_sha256=verification.payload_sha256,
            ).model_dump(),
        )

    return app
