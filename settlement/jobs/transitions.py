"""Pure job state machine.

``transition`` maps the state of a claimed job and the outcome of one
processing attempt to the next state. It never touches storage, so the retry
policy can be tested on plain values; the job store persists the result with
a guarded UPDATE.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Union

from settlement.models.db.enums import JobStatus
from settlement.utils.backoff import compute_job_backoff_ms
from settlement.utils.time import ensure_utc

if TYPE_CHECKING:  # pragma: no cover
    from settlement.models.db.jobs import PostTradeJob


@dataclass(frozen=True)
class JobState:
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    last_error: str | None = None
    processed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: "PostTradeJob") -> "JobState":
        return cls(
            status=JobStatus(job.status),
            attempts=job.attempts or 0,
            max_attempts=job.max_attempts,
            scheduled_for=ensure_utc(job.scheduled_for),
            last_error=job.last_error,
            processed_at=ensure_utc(job.processed_at),
        )


@dataclass(frozen=True)
class Succeeded:
    pass


@dataclass(frozen=True)
class Failed:
    error: str
    retryable: bool = True


Outcome = Union[Succeeded, Failed]


class InvalidTransition(ValueError):
    pass


def transition(state: JobState, outcome: Outcome, now: datetime) -> JobState:
    """Apply one attempt's outcome to a job that is being processed.

    Success completes the job. A retryable failure below the attempt bound goes
    back to pending after ``min(base * factor**attempts, max)`` ms, where
    ``attempts`` already counts this failure. Anything else is dead-lettered.
    """
    if state.status != JobStatus.PROCESSING:
        raise InvalidTransition(f"cannot apply outcome to job in status {state.status.value}")

    if isinstance(outcome, Succeeded):
        return replace(state, status=JobStatus.COMPLETED, processed_at=now)

    attempts = state.attempts + 1
    if outcome.retryable and attempts < state.max_attempts:
        delay_ms = compute_job_backoff_ms(attempts)
        return replace(
            state,
            status=JobStatus.PENDING,
            attempts=attempts,
            last_error=outcome.error,
            scheduled_for=now + timedelta(milliseconds=delay_ms),
        )
    return replace(
        state,
        status=JobStatus.DEAD_LETTER,
        attempts=attempts,
        last_error=outcome.error,
    )


def recover_stale(state: JobState, now: datetime) -> JobState:
    """Orphaned processing job back to pending; attempts are preserved."""
    if state.status != JobStatus.PROCESSING:
        raise InvalidTransition(f"only processing jobs can be recovered, got {state.status.value}")
    return replace(state, status=JobStatus.PENDING, scheduled_for=now)


def requeue_dead_letter(state: JobState, now: datetime) -> JobState:
    """Operator re-drive: fresh attempt budget, previous error kept for the record."""
    if state.status != JobStatus.DEAD_LETTER:
        raise InvalidTransition(f"only dead-lettered jobs can be requeued, got {state.status.value}")
    return replace(state, status=JobStatus.PENDING, attempts=0, scheduled_for=now)


__all__ = [
    "JobState",
    "Succeeded",
    "Failed",
    "Outcome",
    "InvalidTransition",
    "transition",
    "recover_stale",
    "requeue_dead_letter",
]
