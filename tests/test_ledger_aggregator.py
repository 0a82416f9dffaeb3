from datetime import timedelta

import pytest
from sqlalchemy import select

from settlement.jobs.aggregator import LedgerAggregator
from settlement.models.db import LedgerEntry
from settlement.utils.time import utc_now


def _entries(db_session) -> dict[tuple[str, int], LedgerEntry]:
    db_session.expire_all()
    return {(e.user_id, e.stream_id): e for e in db_session.scalars(select(LedgerEntry))}


def test_fold_groups_by_user_stream_day(recorder, aggregator, db_session):
    recorder.record_revenue(0, "t-1", 10, user_id="u1")
    last = recorder.record_revenue(0, "t-2", 20, user_id="u1")
    recorder.record_revenue(0, "t-3", 5, user_id="u2")
    recorder.record_revenue(2, "sub-1", 40, user_id="u1")
    recorder.record_revenue(0, "anon-1", 7)  # no user: never folded

    result = aggregator.run()
    assert result["skipped"] is False
    assert result["processed_events"] == 4
    assert result["groups"] == 3

    entries = _entries(db_session)
    u1 = entries[("u1", 0)]
    assert u1.gross_total == pytest.approx(30.0)
    assert u1.net_total == pytest.approx(4.5)
    assert u1.event_count == 2
    assert u1.last_event_id == last.event.id
    assert u1.period == utc_now().date()
    assert entries[("u1", 2)].gross_total == pytest.approx(40.0)
    assert entries[("u2", 0)].event_count == 1


def test_rerun_is_a_no_op(recorder, aggregator, db_session):
    recorder.record_revenue(0, "t-1", 10, user_id="u1")
    aggregator.run()
    assert aggregator.run()["processed_events"] == 0
    assert _entries(db_session)[("u1", 0)].gross_total == pytest.approx(10.0)


def test_new_events_are_added_to_existing_row(recorder, aggregator, db_session):
    recorder.record_revenue(0, "t-1", 10, user_id="u1")
    aggregator.run()
    newest = recorder.record_revenue(0, "t-2", 15, user_id="u1")
    assert aggregator.run()["processed_events"] == 1
    entry = _entries(db_session)[("u1", 0)]
    assert entry.gross_total == pytest.approx(25.0)
    assert entry.event_count == 2
    assert entry.last_event_id == newest.event.id


def test_refunds_fold_negatively(recorder, aggregator, db_session):
    recorder.record_revenue(0, "t-1", 100, user_id="u1")
    recorder.record_refund(0, "t-1", 40, user_id="u1")
    aggregator.run()
    entry = _entries(db_session)[("u1", 0)]
    assert entry.gross_total == pytest.approx(60.0)
    assert entry.net_total == pytest.approx(9.0)


def test_batch_limit_carries_over_to_next_run(recorder, session_factory, db_session):
    small = LedgerAggregator(session_factory, batch_limit=2, settle_lag_seconds=0)
    for i in range(3):
        recorder.record_revenue(0, f"t-{i}", 10, user_id="u1")
    assert small.run()["processed_events"] == 2
    assert small.run()["processed_events"] == 1
    assert small.run()["processed_events"] == 0
    assert _entries(db_session)[("u1", 0)].gross_total == pytest.approx(30.0)


def test_settle_lag_defers_fresh_events(recorder, session_factory):
    lagged = LedgerAggregator(session_factory, settle_lag_seconds=60)
    recorder.record_revenue(0, "t-1", 10, user_id="u1")
    assert lagged.run()["processed_events"] == 0
    assert lagged.run(now=utc_now() + timedelta(seconds=61))["processed_events"] == 1


def test_days_are_separate_rows(recorder, aggregator, db_session):
    yesterday = utc_now() - timedelta(days=1)
    recorder.record_revenue(0, "t-old", 10, user_id="u1", now=yesterday)
    recorder.record_revenue(0, "t-new", 10, user_id="u1")
    aggregator.run()
    periods = sorted(e.period for e in db_session.scalars(select(LedgerEntry)))
    assert periods == [yesterday.date(), utc_now().date()]


def test_overlapping_run_is_skipped(aggregator):
    assert aggregator._guard.acquire(blocking=False)
    try:
        assert aggregator.run() == {"skipped": True, "processed_events": 0, "groups": 0}
    finally:
        aggregator._guard.release()


def test_status_reports_health(recorder, aggregator):
    status = aggregator.status()
    assert status["healthy"] is False
    assert status["last_run_at"] is None

    recorder.record_revenue(0, "t-1", 10, user_id="u1")
    aggregator.run()
    status = aggregator.status()
    assert status["healthy"] is True
    assert status["last_processed_count"] == 1
    assert status["total_events"] == 1
    assert status["total_ledger_entries"] == 1
    assert status["is_running"] is False
    assert aggregator.status(now=utc_now() + timedelta(hours=1))["healthy"] is False


class _InterleavedAggregator(LedgerAggregator):
    """Lets a second aggregator commit between this one's read and its writes."""

    def __init__(self, session_factory, rival: LedgerAggregator):
        super().__init__(session_factory, settle_lag_seconds=0)
        self.rival: LedgerAggregator | None = rival

    def _read_groups(self, session, now):
        groups = super()._read_groups(session, now)
        if self.rival is not None:
            rival, self.rival = self.rival, None
            rival.run()
        return groups


def test_concurrent_insert_of_new_row_is_not_double_counted(recorder, session_factory, db_session):
    first = recorder.record_revenue(0, "t-1", 10, user_id="u1")
    second = recorder.record_revenue(0, "t-2", 5, user_id="u1")
    rival = LedgerAggregator(session_factory, batch_limit=1, settle_lag_seconds=0)
    racing = _InterleavedAggregator(session_factory, rival)

    result = racing.run()
    assert result["groups"] == 0
    assert result["contended_groups"] == 1
    assert result["processed_events"] == 0
    entry = _entries(db_session)[("u1", 0)]
    assert entry.gross_total == pytest.approx(10.0)
    assert entry.last_event_id == first.event.id

    assert racing.run()["processed_events"] == 1
    entry = _entries(db_session)[("u1", 0)]
    assert entry.gross_total == pytest.approx(15.0)
    assert entry.event_count == 2
    assert entry.last_event_id == second.event.id


def test_concurrent_update_of_existing_row_is_not_double_counted(recorder, aggregator, session_factory, db_session):
    recorder.record_revenue(0, "t-1", 10, user_id="u1")
    aggregator.run()
    recorder.record_revenue(0, "t-2", 5, user_id="u1")
    racing = _InterleavedAggregator(session_factory, LedgerAggregator(session_factory, settle_lag_seconds=0))

    result = racing.run()
    assert result["contended_groups"] == 1
    assert racing.run()["processed_events"] == 0
    entry = _entries(db_session)[("u1", 0)]
    assert entry.gross_total == pytest.approx(15.0)
    assert entry.net_total == pytest.approx(2.25)
    assert entry.event_count == 2
