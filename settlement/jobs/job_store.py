"""Durable post-trade job queue.

Jobs live in the ``post_trade_jobs`` table. Claiming is a two-step operation
in one short transaction:

1. ``SELECT id ... FOR UPDATE SKIP LOCKED`` picks candidate rows that no other
   worker is currently locking (PostgreSQL; other dialects omit the clause).
2. ``UPDATE ... SET status='processing', claim_token=:token WHERE id IN (...)
   AND status='pending'`` only succeeds for rows that are still pending, so a
   row can carry exactly one worker's token even without row locks.

The transaction is committed before any side effect runs; outcomes are then
written back with an UPDATE guarded by the same token.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from settlement.config import ALERTING_SETTINGS, WORKER_SETTINGS
from settlement.database import SessionLocal
from settlement.exceptions import PayloadDecodeError
from settlement.jobs.transitions import (
    JobState,
    Outcome,
    recover_stale,
    requeue_dead_letter as requeue_transition,
    transition,
)
from settlement.models.db.enums import JobStatus, JobType
from settlement.models.db.jobs import PostTradeJob
from settlement.models.schemas.jobs import decode_payload
from settlement.utils import get_logger
from settlement.utils.observability import trade_correlation_id
from settlement.utils.time import utc_now

logger = get_logger(__name__)


class JobStore:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #
    def enqueue(
        self,
        job_type: JobType | str,
        payload: BaseModel | Dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> int:
        """Persist a pending job and return its id.

        The payload is validated against the job type's schema up front so a
        malformed job is rejected here rather than dead-lettered later.
        """
        job_type = JobType(job_type)
        raw = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
        decoded = decode_payload(job_type, raw)
        stored = decoded.model_dump(mode="json", exclude={"job_type"})
        now = utc_now()
        job = PostTradeJob(
            trade_id=decoded.trade_id,
            job_type=job_type,
            correlation_id=trade_correlation_id(decoded.trade_id, correlation_id),
            status=JobStatus.PENDING,
            payload=stored,
            attempts=0,
            max_attempts=int(max_attempts or WORKER_SETTINGS["default_max_attempts"]),
            scheduled_for=scheduled_for or now,
            created_at=now,
            updated_at=now,
        )
        session: Session = self._session_factory()
        try:
            session.add(job)
            session.commit()
            logger.info(
                "Post-trade job enqueued",
                job_id=job.id,
                job_type=job_type.value,
                trade_id=job.trade_id,
                correlation_id=job.correlation_id,
            )
            return job.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #
    def claim_batch(self, limit: int, *, now: Optional[datetime] = None) -> list[PostTradeJob]:
        """Claim up to ``limit`` due pending jobs for this worker.

        Returned rows are detached snapshots already marked processing and
        carrying this claim's ``claim_token``.
        """
        if limit <= 0:
            return []
        now = now or utc_now()
        session: Session = self._session_factory()
        try:
            candidate_ids = list(
                session.scalars(
                    select(PostTradeJob.id)
                    .where(PostTradeJob.status == JobStatus.PENDING, PostTradeJob.scheduled_for <= now)
                    .order_by(PostTradeJob.scheduled_for, PostTradeJob.id)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
            )
            if not candidate_ids:
                session.commit()
                return []
            token = str(uuid.uuid4())
            self._mark_claimed(session, candidate_ids, token, now)
            claimed = list(
                session.scalars(
                    select(PostTradeJob).where(PostTradeJob.claim_token == token).order_by(PostTradeJob.id)
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if claimed:
            logger.debug("Claimed post-trade jobs", count=len(claimed), claim_token=token)
        return claimed

    @staticmethod
    def _mark_claimed(session: Session, ids: list[int], token: str, now: datetime) -> int:
        result = session.execute(
            update(PostTradeJob)
            .where(PostTradeJob.id.in_(ids), PostTradeJob.status == JobStatus.PENDING)
            .values(status=JobStatus.PROCESSING, claim_token=token, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def record_outcome(
        self,
        job: PostTradeJob,
        outcome: Outcome,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[JobState]:
        """Persist the state that follows ``outcome`` for a claimed job.

        Returns the new state, or None when the claim was lost (the job was
        recovered as stale and re-claimed elsewhere); the write is skipped then.
        """
        now = now or utc_now()
        new_state = transition(JobState.from_job(job), outcome, now)
        values: Dict[str, Any] = {
            "status": new_state.status,
            "attempts": new_state.attempts,
            "last_error": new_state.last_error,
            "scheduled_for": new_state.scheduled_for,
            "processed_at": new_state.processed_at,
            "claim_token": None,
            "updated_at": now,
        }
        session: Session = self._session_factory()
        try:
            result = session.execute(
                update(PostTradeJob)
                .where(
                    PostTradeJob.id == job.id,
                    PostTradeJob.status == JobStatus.PROCESSING,
                    PostTradeJob.claim_token == job.claim_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if not result.rowcount:
            logger.warning(
                "Job outcome discarded: claim no longer held",
                job_id=job.id,
                correlation_id=job.correlation_id,
                status=new_state.status.value,
            )
            return None
        job.status = new_state.status
        job.attempts = new_state.attempts
        job.last_error = new_state.last_error
        job.scheduled_for = new_state.scheduled_for
        job.processed_at = new_state.processed_at
        job.claim_token = None
        return new_state

    def decode(self, job: PostTradeJob):
        """Typed payload of a claimed job (PayloadDecodeError if it does not fit)."""
        try:
            job_type = JobType(job.job_type)
        except ValueError as e:
            raise PayloadDecodeError(f"unknown job type {job.job_type!r}") from e
        return decode_payload(job_type, job.payload)

    # ------------------------------------------------------------------ #
    # Recovery / operator actions
    # ------------------------------------------------------------------ #
    def replay_stalled(self, *, now: Optional[datetime] = None, stale_after_seconds: Optional[int] = None) -> int:
        """Return jobs orphaned in ``processing`` to ``pending`` (crash recovery)."""
        now = now or utc_now()
        window = int(stale_after_seconds if stale_after_seconds is not None else WORKER_SETTINGS["stale_after_seconds"])
        cutoff = now - timedelta(seconds=window)
        session: Session = self._session_factory()
        try:
            stalled = list(
                session.scalars(
                    select(PostTradeJob)
                    .where(
                        PostTradeJob.status == JobStatus.PROCESSING,
                        func.coalesce(PostTradeJob.claimed_at, PostTradeJob.updated_at) <= cutoff,
                    )
                    .with_for_update(skip_locked=True)
                )
            )
            recovered = 0
            for job in stalled:
                state = recover_stale(JobState.from_job(job), now)
                result = session.execute(
                    update(PostTradeJob)
                    .where(
                        PostTradeJob.id == job.id,
                        PostTradeJob.status == JobStatus.PROCESSING,
                        PostTradeJob.claim_token == job.claim_token,
                    )
                    .values(status=state.status, scheduled_for=state.scheduled_for, claim_token=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                recovered += result.rowcount or 0
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if recovered:
            logger.warning("Replayed stalled post-trade jobs", count=recovered, stale_after_seconds=window)
        return recovered

    def requeue_dead_letter(self, job_id: int, *, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        session: Session = self._session_factory()
        try:
            job = session.get(PostTradeJob, job_id)
            if job is None or job.status != JobStatus.DEAD_LETTER:
                return False
            state = requeue_transition(JobState.from_job(job), now)
            job.status = state.status
            job.attempts = state.attempts
            job.scheduled_for = state.scheduled_for
            job.updated_at = now
            session.commit()
            logger.info("Dead-letter job requeued", job_id=job_id, correlation_id=job.correlation_id)
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def cleanup(self, days_to_keep: int = 7, *, now: Optional[datetime] = None) -> int:
        """Delete completed jobs processed more than ``days_to_keep`` days ago."""
        now = now or utc_now()
        cutoff = now - timedelta(days=days_to_keep)
        session: Session = self._session_factory()
        try:
            result = session.execute(
                delete(PostTradeJob).where(
                    PostTradeJob.status == JobStatus.COMPLETED,
                    PostTradeJob.processed_at < cutoff,
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        deleted = result.rowcount or 0
        logger.info("Completed jobs cleaned up", deleted=deleted, days_to_keep=days_to_keep)
        return deleted

    # ------------------------------------------------------------------ #
    # Read-only snapshots
    # ------------------------------------------------------------------ #
    def get_job(self, job_id: int) -> Optional[PostTradeJob]:
        session: Session = self._session_factory()
        try:
            return session.get(PostTradeJob, job_id)
        finally:
            session.close()

    def list_dead_letter(self, limit: int = 50, offset: int = 0) -> list[PostTradeJob]:
        session: Session = self._session_factory()
        try:
            return list(
                session.scalars(
                    select(PostTradeJob)
                    .where(PostTradeJob.status == JobStatus.DEAD_LETTER)
                    .order_by(PostTradeJob.updated_at.desc(), PostTradeJob.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
            )
        finally:
            session.close()

    def get_stats(self) -> Dict[str, Any]:
        session: Session = self._session_factory()
        try:
            rows = session.execute(
                select(PostTradeJob.status, func.count(PostTradeJob.id)).group_by(PostTradeJob.status)
            ).all()
        finally:
            session.close()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status).value] = int(count)
        if counts[JobStatus.DEAD_LETTER.value] > ALERTING_SETTINGS["dead_letter_critical_count"]:
            health = "critical"
        elif counts[JobStatus.FAILED.value] > ALERTING_SETTINGS["failed_warning_count"]:
            health = "warning"
        else:
            health = "healthy"
        return {
            "counts": counts,
            "total": sum(counts.values()),
            "queue_depth": counts[JobStatus.PENDING.value],
            "dead_letter": counts[JobStatus.DEAD_LETTER.value],
            "health": health,
        }


__all__ = ["JobStore"]
