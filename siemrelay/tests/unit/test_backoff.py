from __future__ import annotations

import logging

import pytest

from siemrelay.services.delivery.backoff import (
    BackoffPolicy,
    next_retry_delay_ms,
    resolve_policy,
    retry_backoff_ms,
)


POLICY = BackoffPolicy(base_ms=2000, cap_ms=60000, jitter_ms=250)


def test_backoff_doubles_until_cap() -> None:
    # Each delay sits in [base * 2**(n-1), + jitter] and never passes the cap.
    for attempt_no in range(1, 12):
        delay = retry_backoff_ms(job_id="job-1", attempt_no=attempt_no, policy=POLICY)
        floor = min(POLICY.cap_ms, POLICY.base_ms * 2 ** (attempt_no - 1))
        assert floor <= delay <= min(POLICY.cap_ms, floor + POLICY.jitter_ms)


@pytest.mark.parametrize("job_id", ["a", "job-2", "0f3c9e", "x" * 64])
def test_backoff_sequence_is_non_decreasing(job_id: str) -> None:
    delays = [retry_backoff_ms(job_id=job_id, attempt_no=n, policy=POLICY) for n in range(1, 20)]
    assert delays == sorted(delays)


def test_backoff_is_deterministic_per_job_and_attempt() -> None:
    first = [retry_backoff_ms(job_id="job-3", attempt_no=n, policy=POLICY) for n in range(1, 6)]
    second = [retry_backoff_ms(job_id="job-3", attempt_no=n, policy=POLICY) for n in range(1, 6)]
    assert first == second


def test_jitter_stays_below_base_for_tiny_bases() -> None:
    # With base 1ms the jitter bound collapses to zero so doubling still dominates.
    policy = BackoffPolicy(base_ms=1, cap_ms=1000, jitter_ms=250)
    delays = [retry_backoff_ms(job_id="job-4", attempt_no=n, policy=policy) for n in range(1, 8)]
    assert delays == [1, 2, 4, 8, 16, 32, 64]


def test_huge_attempt_numbers_stay_at_cap() -> None:
    assert retry_backoff_ms(job_id="job-5", attempt_no=10_000, policy=POLICY) == POLICY.cap_ms


def test_resolve_policy_applies_endpoint_overrides() -> None:
    policy = resolve_policy({"backoff_ms": 500, "backoff_max_ms": 4000})
    assert policy.base_ms == 500
    assert policy.cap_ms == 4000


def test_resolve_policy_keeps_cap_at_least_base() -> None:
    policy = resolve_policy({"backoff_ms": 9000, "backoff_max_ms": 10})
    assert policy.cap_ms == 9000


def test_next_delay_is_clamped_to_previous(caplog: pytest.LogCaptureFixture) -> None:
    # A shrunk configuration must not shorten the wait mid-retry.
    with caplog.at_level(logging.WARNING, logger="siemrelay.services.delivery.backoff"):
        assert next_retry_delay_ms(previous_ms=8000, computed_ms=1000, job_id="job-6") == 8000
    assert "delivery_backoff_clamped" in caplog.text
    assert next_retry_delay_ms(previous_ms=8000, computed_ms=16000) == 16000
    assert next_retry_delay_ms(previous_ms=None, computed_ms=2000) == 2000
