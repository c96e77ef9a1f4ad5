from __future__ import annotations

import pytest

from siemrelay.services.delivery.signing import (
    HEADER_ATTEMPT,
    HEADER_DELIVERY_ID,
    HEADER_EVENT_ID,
    HEADER_FORMAT,
    HEADER_SIGNATURE,
    HEADER_TENANT_ID,
    compute_signature,
    parse_delivery_headers,
    parse_signature,
    payload_sha256,
    verify_signature,
)


BODY = b'{"id":"evt-1","kind":"verdict","severity":7}'


def _headers(**extra: str) -> dict[str, str]:
    headers = {
        HEADER_DELIVERY_ID: "job-1",
        HEADER_ATTEMPT: "1",
        HEADER_EVENT_ID: "evt-1",
        HEADER_TENANT_ID: "t1",
        HEADER_FORMAT: "cef",
    }
    headers.update(extra)
    return headers


def test_signature_verifies_over_exact_body() -> None:
    # The HMAC covers the raw bytes the receiver got.
    signature = compute_signature(BODY, "s3cret")
    parsed = parse_signature(signature)
    assert parsed.algorithm == "sha256"
    assert len(parsed.digest_hex) == 64
    result = verify_signature(_headers(**{HEADER_SIGNATURE: signature}), BODY, "s3cret")
    assert result.ok is True
    assert result.reason == "ok"
    assert result.payload_sha256 == payload_sha256(BODY)


def test_any_body_change_breaks_the_signature() -> None:
    signature = compute_signature(BODY, "s3cret")
    result = verify_signature(_headers(**{HEADER_SIGNATURE: signature}), BODY + b" ", "s3cret")
    assert result.ok is False
    assert result.reason == "signature_mismatch"


@pytest.mark.parametrize(
    ("signature", "secret", "expected"),
    [
        (None, "s3cret", "missing_signature"),
        ("md5=abc", "s3cret", "invalid_signature_format"),
        ("sha256=" + "z" * 64, "s3cret", "invalid_signature_format"),
        ("sha256=" + "0" * 64, None, "secret_missing"),
        (None, None, "unsigned_allowed"),
    ],
)
def test_verification_reason_codes(signature: str | None, secret: str | None, expected: str) -> None:
    extra = {HEADER_SIGNATURE: signature} if signature else {}
    assert verify_signature(_headers(**extra), BODY, secret).reason == expected


def test_header_names_are_case_insensitive() -> None:
    lowered = {key.lower(): value for key, value in _headers().items()}
    parsed = parse_delivery_headers(lowered)
    assert parsed.delivery_id == "job-1"
    assert parsed.attempt == 1
    assert parsed.signature is None


@pytest.mark.parametrize(
    ("headers", "message"),
    [
        ({}, "missing_required_headers"),
        (_headers(**{HEADER_ATTEMPT: "zero"}), "invalid_attempt_header"),
        (_headers(**{HEADER_ATTEMPT: "0"}), "invalid_attempt_header"),
    ],
)
def test_parse_delivery_headers_rejects_bad_input(headers: dict[str, str], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_delivery_headers(headers)
