"""Exponential backoff helpers for job retries and on-chain redelivery."""
from __future__ import annotations

from typing import Optional

from settlement.config import JOB_BACKOFF_POLICY, ONCHAIN_SETTINGS


def compute_job_backoff_ms(attempts: int, *, base_ms: Optional[int] = None, factor: Optional[int] = None, max_ms: Optional[int] = None) -> int:
    """Delay before a failed job is claimable again: min(base * factor^attempts, max).

    ``attempts`` is the attempt counter *after* the failure was counted, so the
    first retry waits 2s, the second 4s, and so on up to one minute.
    """
    attempts = max(attempts, 0)
    base_ms = int(base_ms if base_ms is not None else JOB_BACKOFF_POLICY["base_ms"])
    factor = int(factor if factor is not None else JOB_BACKOFF_POLICY["factor"])
    max_ms = int(max_ms if max_ms is not None else JOB_BACKOFF_POLICY["max_ms"])
    return min(base_ms * (factor ** attempts), max_ms)


def compute_onchain_backoff_minutes(attempts: int, *, max_minutes: Optional[int] = None) -> int:
    """2^attempts minutes (2, 4, 8, 16, ...), capped."""
    attempts = max(attempts, 0)
    max_minutes = int(max_minutes if max_minutes is not None else ONCHAIN_SETTINGS["max_backoff_minutes"])
    return min(2 ** attempts, max_minutes)


__all__ = ["compute_job_backoff_ms", "compute_onchain_backoff_minutes"]
