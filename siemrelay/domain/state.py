from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    CANCELLED = "cancelled"


# Outcome recorded on dead letters for jobs that never produced an attempt.
FORMAT_ERROR_OUTCOME = "format_error"

READY_STATUSES = (JobStatus.PENDING.value, JobStatus.RETRYING.value)
TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED.value, JobStatus.EXHAUSTED.value})

_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_FLIGHT, JobStatus.EXHAUSTED}),
    JobStatus.RETRYING: frozenset({JobStatus.IN_FLIGHT}),
    JobStatus.IN_FLIGHT: frozenset({JobStatus.SUCCEEDED, JobStatus.RETRYING, JobStatus.EXHAUSTED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.EXHAUSTED: frozenset(),
}


class InvalidTransitionError(ValueError):
    pass


def is_terminal(status: str | JobStatus) -> bool:
    return JobStatus(status).value in TERMINAL_STATUSES


def check_transition(current: str | JobStatus, target: str | JobStatus) -> JobStatus:
    # Reject edges outside the delivery state machine; terminal states accept none.
    source = JobStatus(current)
    destination = JobStatus(target)
    if destination not in _TRANSITIONS[source]:
        raise InvalidTransitionError(f"{source.value} -> {destination.value}")
    return destination


def next_status_for(outcome: AttemptOutcome, *, attempt_number: int, max_attempts: int) -> JobStatus:
    # Map one attempt outcome onto the next job state.
    if outcome is AttemptOutcome.SUCCESS:
        return JobStatus.SUCCEEDED
    if outcome is AttemptOutcome.TRANSIENT_FAILURE and attempt_number < max_attempts:
        return JobStatus.RETRYING
    return JobStatus.EXHAUSTED
