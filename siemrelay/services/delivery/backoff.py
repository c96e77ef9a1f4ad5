from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
from typing import Mapping

from siemrelay.core.config import get_settings


logger = logging.getLogger(__name__)

# Keeps 2**exponent bounded; any realistic cap is reached long before this.
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int
    cap_ms: int
    jitter_ms: int


def resolve_policy(retry_config: Mapping[str, int] | None = None) -> BackoffPolicy:
    # Deployment defaults with optional per-endpoint overrides.
    settings = get_settings()
    overrides = retry_config or {}
    base = max(1, int(overrides.get("backoff_ms", settings.delivery_backoff_ms)))
    cap = max(base, int(overrides.get("backoff_max_ms", settings.delivery_backoff_max_ms)))
    return BackoffPolicy(base_ms=base, cap_ms=cap, jitter_ms=max(0, int(settings.delivery_backoff_jitter_ms)))


def retry_backoff_ms(*, job_id: str, attempt_no: int, policy: BackoffPolicy | None = None) -> int:
    """Delay to wait after failed attempt ``attempt_no`` before the next one.

    ``min(base * 2**(n-1), cap)`` plus a jitter derived from the job id, so
    the same job always gets the same schedule while different jobs spread
    out. Jitter stays below ``base`` which keeps the sequence non-decreasing.
    """
    resolved = policy or resolve_policy()
    exponent = min(_MAX_EXPONENT, max(0, int(attempt_no) - 1))
    backoff = min(resolved.cap_ms, resolved.base_ms * (2**exponent))
    jitter_bound = max(0, min(resolved.jitter_ms, resolved.base_ms - 1))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % (jitter_bound + 1)
    return min(resolved.cap_ms, backoff + jitter)


def next_retry_delay_ms(*, previous_ms: int | None, computed_ms: int, job_id: str | None = None) -> int:
    # Never schedule a shorter wait than the previous one, even if settings shrank mid-retry.
    if previous_ms is not None and computed_ms < previous_ms:
        logger.warning(
            "delivery_backoff_clamped job_id=%s computed_ms=%s previous_ms=%s",
            job_id,
            computed_ms,
            previous_ms,
        )
        return int(previous_ms)
    return int(computed_ms)
