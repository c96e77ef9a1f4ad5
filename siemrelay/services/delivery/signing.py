from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
from typing import Mapping


HEADER_DELIVERY_ID = "X-SiemRelay-Delivery-Id"
HEADER_ATTEMPT = "X-SiemRelay-Attempt"
HEADER_EVENT_ID = "X-SiemRelay-Event-Id"
HEADER_TENANT_ID = "X-SiemRelay-Tenant-Id"
HEADER_FORMAT = "X-SiemRelay-Format"
HEADER_PAYLOAD_SHA256 = "X-SiemRelay-Payload-Sha256"
HEADER_SIGNATURE = "X-SiemRelay-Signature"

_REQUIRED_HEADERS = (HEADER_DELIVERY_ID, HEADER_ATTEMPT, HEADER_EVENT_ID, HEADER_TENANT_ID, HEADER_FORMAT)


@dataclass(frozen=True)
class ParsedSignature:
    algorithm: str
    digest_hex: str


@dataclass(frozen=True)
class DeliveryHeaders:
    # Normalized view of the headers every outbound delivery carries.
    delivery_id: str
    attempt: int
    event_id: str
    tenant_id: str
    format: str
    signature: str | None


@dataclass(frozen=True)
class VerificationResult:
    # Stable reason codes let receivers report failures without echoing secrets.
    ok: bool
    reason: str
    payload_sha256: str
    algorithm: str | None = None
    expected_signature: str | None = None
    provided_signature: str | None = None


def _normalize_header_mapping(headers: Mapping[str, str] | Mapping[str, object]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        normalized[key] = str(raw_value).strip()
    return normalized


def compute_hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    # HMAC over the exact body bytes; re-serializing on the receiver breaks verification.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_signature(raw_body: bytes, secret: str) -> str:
    return f"sha256={compute_hmac_sha256_hex(secret, raw_body)}"


def payload_sha256(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def parse_signature(header_value: str) -> ParsedSignature:
    # Parse `sha256=<hex>` strictly so malformed values are rejected deterministically.
    algorithm, separator, digest = header_value.strip().partition("=")
    if separator != "=":
        raise ValueError("invalid_signature_format")
    normalized_algorithm = algorithm.strip().lower()
    digest_hex = digest.strip().lower()
    if normalized_algorithm != "sha256" or len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    try:
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    return ParsedSignature(algorithm=normalized_algorithm, digest_hex=digest_hex)


def parse_delivery_headers(headers: Mapping[str, str] | Mapping[str, object]) -> DeliveryHeaders:
    normalized = _normalize_header_mapping(headers)
    missing = [name for name in _REQUIRED_HEADERS if not normalized.get(name.lower())]
    if missing:
        raise ValueError(f"missing_required_headers:{','.join(missing)}")
    try:
        attempt = int(normalized[HEADER_ATTEMPT.lower()])
    except ValueError as exc:
        raise ValueError("invalid_attempt_header") from exc
    if attempt < 1:
        raise ValueError("invalid_attempt_header")
    return DeliveryHeaders(
        delivery_id=normalized[HEADER_DELIVERY_ID.lower()],
        attempt=attempt,
        event_id=normalized[HEADER_EVENT_ID.lower()],
        tenant_id=normalized[HEADER_TENANT_ID.lower()],
        format=normalized[HEADER_FORMAT.lower()],
        signature=normalized.get(HEADER_SIGNATURE.lower()) or None,
    )


def verify_signature(
    headers: DeliveryHeaders | Mapping[str, str] | Mapping[str, object],
    raw_body: bytes,
    secret: str | None,
) -> VerificationResult:
    """Verify a delivery the way a receiving SIEM collector should.

    Unsigned deliveries are accepted only when the receiver has no secret
    configured; a signature sent to a receiver without a secret is rejected.
    """
    parsed_headers = headers if isinstance(headers, DeliveryHeaders) else parse_delivery_headers(headers)
    payload_digest = payload_sha256(raw_body)
    signature_header = parsed_headers.signature
    if not secret:
        if signature_header:
            return VerificationResult(
                ok=False,
                reason="secret_missing",
                payload_sha256=payload_digest,
                provided_signature=signature_header,
            )
        return VerificationResult(ok=True, reason="unsigned_allowed", payload_sha256=payload_digest)
    if not signature_header:
        return VerificationResult(ok=False, reason="missing_signature", payload_sha256=payload_digest)
    try:
        parsed_signature = parse_signature(signature_header)
    except ValueError:
        return VerificationResult(
            ok=False,
            reason="invalid_signature_format",
            payload_sha256=payload_digest,
            provided_signature=signature_header,
        )
    expected_hex = compute_hmac_sha256_hex(secret, raw_body)
    if not hmac.compare_digest(expected_hex, parsed_signature.digest_hex):
        return VerificationResult(
            ok=False,
            reason="signature_mismatch",
            payload_sha256=payload_digest,
            algorithm=parsed_signature.algorithm,
            expected_signature=expected_hex,
            provided_signature=parsed_signature.digest_hex,
        )
    return VerificationResult(
        ok=True,
        reason="ok",
        payload_sha256=payload_digest,
        algorithm=parsed_signature.algorithm,
        expected_signature=expected_hex,
        provided_signature=parsed_signature.digest_hex,
    )
