"""Background worker draining the post-trade job queue."""
from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Optional

from settlement.config import WORKER_SETTINGS
from settlement.exceptions import NonRetryableJobError, PayloadDecodeError
from settlement.jobs.job_store import JobStore
from settlement.jobs.post_trade import PostTradeProcessor
from settlement.jobs.transitions import Failed, JobState, Succeeded
from settlement.models.db.enums import AlertCategory, AlertSeverity, JobStatus
from settlement.models.db.jobs import PostTradeJob
from settlement.services.alerting import raise_operator_alert
from settlement.utils import get_logger, log_business_event, log_performance
from settlement.utils.time import utc_now

logger = get_logger(__name__)

# Debug instrumentation store (test visibility)
LAST_EXCEPTIONS: list[dict] = []


class SettlementWorker:
    def __init__(
        self,
        store: JobStore,
        processor: PostTradeProcessor,
        *,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        stale_sweep_interval: Optional[float] = None,
    ):
        self.store = store
        self.processor = processor
        self.poll_interval = float(poll_interval if poll_interval is not None else WORKER_SETTINGS["poll_interval_seconds"])
        self.batch_size = int(batch_size if batch_size is not None else WORKER_SETTINGS["batch_size"])
        self.stale_sweep_interval = float(
            stale_sweep_interval if stale_sweep_interval is not None else WORKER_SETTINGS["stale_sweep_interval_seconds"]
        )
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._last_sweep = 0.0
        self.stats = {"claimed": 0, "completed": 0, "retried": 0, "dead_lettered": 0}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        # Crash recovery happens before the first claim
        try:
            replayed = self.store.replay_stalled()
            if replayed:
                logger.info("Replayed stalled jobs on startup", count=replayed)
        except Exception as e:
            logger.error("Failed to replay stalled jobs", error=str(e), exc_info=True)
        self._last_sweep = time.monotonic()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="settlement-worker", daemon=True)
        self._thread.start()
        logger.info("Settlement worker started", poll_interval=self.poll_interval, batch_size=self.batch_size)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        logger.info("Settlement worker stop requested")
        if timeout is not None:
            self.join(timeout)

    def join(self, timeout: float) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self._stop_event.is_set())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._maybe_sweep()
                processed = self.process_batch()
                if processed:
                    continue
            except Exception as e:
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)
            self._stop_event.wait(self.poll_interval)

    def _maybe_sweep(self) -> None:
        if self.stale_sweep_interval <= 0:
            return
        if time.monotonic() - self._last_sweep < self.stale_sweep_interval:
            return
        self._last_sweep = time.monotonic()
        self.store.replay_stalled()

    def process_batch(self, *, now: Optional[datetime] = None) -> int:
        """Claim and process one batch; returns the number of jobs handled."""
        jobs = self.store.claim_batch(self.batch_size, now=now)
        if not jobs:
            return 0
        self.stats["claimed"] += len(jobs)
        logger.info("Processing post-trade jobs", count=len(jobs))
        for job in jobs:
            self.process_job(job)
        return len(jobs)

    def process_job(self, job: PostTradeJob) -> Optional[JobState]:
        started = time.perf_counter()
        logger.info(
            "Processing post-trade job",
            job_id=job.id,
            job_type=job.job_type.value,
            trade_id=job.trade_id,
            correlation_id=job.correlation_id,
            attempt=job.attempts + 1,
        )
        try:
            payload = self.store.decode(job)
            steps = self.processor.run(payload, job.correlation_id)
            outcome = Succeeded()
        except (PayloadDecodeError, NonRetryableJobError) as e:
            steps = []
            outcome = Failed(error=f"{type(e).__name__}: {e}", retryable=False)
        except Exception as e:
            steps = []
            outcome = Failed(error=f"{type(e).__name__}: {e}", retryable=True)
            LAST_EXCEPTIONS.append({"job_id": job.id, "error": str(e), "type": type(e).__name__})
            del LAST_EXCEPTIONS[:-100]

        state = self.store.record_outcome(job, outcome, now=utc_now())
        duration_ms = (time.perf_counter() - started) * 1000
        if state is None:
            return None
        if state.status == JobStatus.COMPLETED:
            self.stats["completed"] += 1
            logger.info("Post-trade job completed", job_id=job.id, steps=steps, correlation_id=job.correlation_id)
            log_performance("post_trade_job", duration_ms, {"job_id": job.id, "job_type": job.job_type.value})
        elif state.status == JobStatus.PENDING:
            self.stats["retried"] += 1
            logger.warning(
                "Post-trade job failed; retry scheduled",
                job_id=job.id,
                attempts=state.attempts,
                max_attempts=state.max_attempts,
                next_attempt_at=state.scheduled_for.isoformat(),
                error=state.last_error,
                correlation_id=job.correlation_id,
            )
        else:
            self.stats["dead_lettered"] += 1
            self._on_dead_letter(job, state)
        return state

    def _on_dead_letter(self, job: PostTradeJob, state: JobState) -> None:
        details = {
            "job_id": job.id,
            "job_type": job.job_type.value,
            "trade_id": job.trade_id,
            "attempts": state.attempts,
            "max_attempts": state.max_attempts,
            "error": state.last_error,
        }
        logger.error("Post-trade job moved to dead letter", correlation_id=job.correlation_id, **details)
        log_business_event("job_dead_lettered", details, correlation_id=job.correlation_id)
        raise_operator_alert(
            AlertCategory.SYSTEM_HEALTH,
            AlertSeverity.HIGH,
            "Post-trade job dead-lettered",
            details,
            correlation_id=job.correlation_id,
        )


__all__ = ["SettlementWorker", "LAST_EXCEPTIONS"]
