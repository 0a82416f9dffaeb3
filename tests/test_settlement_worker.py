import time
from datetime import timedelta

import pytest
from sqlalchemy import select

from settlement.exceptions import NonRetryableJobError
from settlement.jobs import settlement_worker as worker_mod
from settlement.jobs.job_store import JobStore
from settlement.jobs.post_trade import PostTradeProcessor, enqueue_for_trade
from settlement.jobs.settlement_worker import SettlementWorker
from settlement.models.db import (
    AlertCategory,
    AlertSeverity,
    FeeRole,
    JobStatus,
    JobType,
    PostTradeJob,
    RevenueEvent,
    RevenueStream,
    RevenueStreamId,
)
from settlement.services.alerting import recent_alerts
from settlement.utils.time import utc_now


@pytest.fixture()
def make_worker(store, recorder):
    def _make(collaborators) -> SettlementWorker:
        return SettlementWorker(
            store,
            PostTradeProcessor(recorder, collaborators),
            poll_interval=0.05,
            batch_size=10,
            stale_sweep_interval=0,
        )
    return _make


def _events_for(db_session, trade_id: str) -> list[RevenueEvent]:
    return list(db_session.scalars(select(RevenueEvent).where(RevenueEvent.source_id == trade_id)))


def test_post_trade_job_runs_every_step(store, make_worker, collaborators, trade_factory, db_session):
    trade = trade_factory(fee_payer_id="seller-1", fee_role=FeeRole.MAKER)
    job_id = enqueue_for_trade(store, trade)
    worker = make_worker(collaborators)

    assert worker.process_batch() == 1
    job = store.get_job(job_id)
    assert job.status == JobStatus.COMPLETED

    [event] = _events_for(db_session, trade.trade_id)
    assert event.stream_id == RevenueStreamId.TRADING_FEES
    assert event.user_id == "seller-1"
    assert event.gross_amount == pytest.approx(10.0)
    assert event.holder_share == pytest.approx(1.5)
    assert event.event_metadata["role"] == "MAKER"
    assert event.event_metadata["correlation_id"] == job.correlation_id

    assert collaborators.fee_distributions == [(8.5, job.correlation_id)]
    assert [r[0] for r in collaborators.rewards] == ["buyer-1", "seller-1"]
    assert {u for u, _ in collaborators.referral_checks} == {"buyer-1", "seller-1"}
    assert worker.stats["completed"] == 1


def test_granular_job_runs_its_own_steps(store, make_worker, collaborators):
    store.enqueue(JobType.REFERRAL_UPDATE, {"trade_id": "t-ref", "buyer_id": "b9", "notional": 250})
    make_worker(collaborators).process_batch()
    assert collaborators.referral_checks == [("b9", 250.0)]
    assert collaborators.fee_distributions == []
    assert collaborators.rewards == []


def test_retry_does_not_double_count_revenue(store, make_worker, collaborators_factory, trade_factory, db_session):
    failing = collaborators_factory(fail_with=RuntimeError("fee pool unavailable"))
    worker = make_worker(failing)
    trade = trade_factory()
    job_id = enqueue_for_trade(store, trade)

    worker.process_batch()
    job = store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert "fee pool unavailable" in job.last_error
    assert worker_mod.LAST_EXCEPTIONS[-1]["job_id"] == job_id

    worker.process_batch(now=utc_now() + timedelta(seconds=5))
    assert store.get_job(job_id).attempts == 2

    assert len(_events_for(db_session, trade.trade_id)) == 1
    stream = db_session.get(RevenueStream, int(RevenueStreamId.TRADING_FEES))
    assert stream.collected == pytest.approx(10.0)
    assert stream.event_count == 1


def test_exhausted_job_is_dead_lettered_and_alerted(store, make_worker, collaborators_factory, trade_factory):
    worker = make_worker(collaborators_factory(fail_with=RuntimeError("down")))
    job_id = enqueue_for_trade(store, trade_factory())
    for step in range(3):
        worker.process_batch(now=utc_now() + timedelta(minutes=step + 1))

    job = store.get_job(job_id)
    assert job.status == JobStatus.DEAD_LETTER
    assert job.attempts == 3
    assert worker.stats["dead_lettered"] == 1
    [alert] = recent_alerts(category=AlertCategory.SYSTEM_HEALTH)
    assert alert.severity == AlertSeverity.HIGH
    assert alert.details["job_id"] == job_id
    # dead letter stays put
    assert worker.process_batch(now=utc_now() + timedelta(days=1)) == 0


def test_undecodable_payload_dead_letters_without_retry(store, make_worker, collaborators, db_session):
    now = utc_now()
    bad = PostTradeJob(
        trade_id="t-bad",
        job_type=JobType.FEE_DISTRIBUTION,
        correlation_id="trade-t-bad",
        status=JobStatus.PENDING,
        payload={"trade_id": "t-bad"},
        attempts=0,
        max_attempts=3,
        scheduled_for=now,
        created_at=now,
        updated_at=now,
    )
    db_session.add(bad)
    db_session.commit()

    make_worker(collaborators).process_batch()
    job = store.get_job(bad.id)
    assert job.status == JobStatus.DEAD_LETTER
    assert job.attempts == 1
    assert job.last_error.startswith("PayloadDecodeError")


def test_non_retryable_collaborator_error(store, make_worker, collaborators_factory, trade_factory):
    worker = make_worker(collaborators_factory(fail_with=NonRetryableJobError("account closed")))
    job_id = enqueue_for_trade(store, trade_factory())
    worker.process_batch()
    job = store.get_job(job_id)
    assert job.status == JobStatus.DEAD_LETTER
    assert job.attempts == 1


def test_exempt_trade_keeps_upstream_split(store, make_worker, collaborators, trade_factory, db_session):
    trade = trade_factory(total_fees=10.0, holder_share=0.0, platform_share=10.0)
    job_id = enqueue_for_trade(store, trade)
    make_worker(collaborators).process_batch()
    job = store.get_job(job_id)
    assert job.status == JobStatus.COMPLETED

    [event] = _events_for(db_session, trade.trade_id)
    assert event.gross_amount == pytest.approx(10.0)
    assert event.holder_share == pytest.approx(0.0)
    assert event.reserve_share == pytest.approx(10.0)
    assert event.net_amount == pytest.approx(0.0)
    # holders and the fee pool together never receive more than the fee
    assert collaborators.fee_distributions == [(10.0, job.correlation_id)]
    assert event.holder_share + collaborators.fee_distributions[0][0] == pytest.approx(trade.total_fees)


def test_inconsistent_fee_split_dead_letters_before_any_side_effect(
    store, make_worker, collaborators, trade_factory, db_session
):
    trade = trade_factory(total_fees=10.0, holder_share=1.5, platform_share=10.0)
    job_id = enqueue_for_trade(store, trade)
    make_worker(collaborators).process_batch()

    job = store.get_job(job_id)
    assert job.status == JobStatus.DEAD_LETTER
    assert job.attempts == 1
    assert job.last_error.startswith("NonRetryableJobError")
    assert _events_for(db_session, trade.trade_id) == []
    assert collaborators.fee_distributions == []


def test_background_thread_drains_queue(store, make_worker, collaborators, trade_factory):
    worker = make_worker(collaborators)
    ids = [enqueue_for_trade(store, trade_factory()) for _ in range(3)]
    worker.start()
    try:
        deadline = time.time() + 10
        while time.time() < deadline:
            if all(store.get_job(i).status == JobStatus.COMPLETED for i in ids):
                break
            time.sleep(0.05)
    finally:
        worker.stop(timeout=5)
    assert all(store.get_job(i).status == JobStatus.COMPLETED for i in ids)
    assert not worker.running


def test_start_replays_stalled_jobs(session_factory, make_worker, collaborators, trade_factory):
    store = JobStore(session_factory)
    long_ago = utc_now() - timedelta(hours=1)
    job_id = enqueue_for_trade(store, trade_factory())
    store.claim_batch(1, now=utc_now())
    session = session_factory()
    try:
        job = session.get(PostTradeJob, job_id)
        job.claimed_at = long_ago
        session.commit()
    finally:
        session.close()

    worker = make_worker(collaborators)
    worker.start()
    try:
        deadline = time.time() + 10
        while time.time() < deadline and store.get_job(job_id).status != JobStatus.COMPLETED:
            time.sleep(0.05)
    finally:
        worker.stop(timeout=5)
    assert store.get_job(job_id).status == JobStatus.COMPLETED
