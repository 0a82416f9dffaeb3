from datetime import timedelta

import pytest
from sqlalchemy import update

from settlement.models.db import AlertCategory, AlertSeverity, OnChainDeliveryStatus, RevenueEvent
from settlement.services.alerting import recent_alerts
from settlement.services.onchain_retry import CHAIN_TARGET, OnChainRetryWorker, StaticPriceConverter
from settlement.utils.circuit_breaker import CircuitBreaker
from settlement.utils.log_throttle import FailureLogThrottle, InMemoryCounterStore
from settlement.utils.time import ensure_utc, utc_now


@pytest.fixture()
def make_onchain(session_factory):
    def _make(client, *, rate: float = 2.0, max_attempts: int = 5, breaker: CircuitBreaker | None = None) -> OnChainRetryWorker:
        return OnChainRetryWorker(
            StaticPriceConverter(rate),
            client,
            session_factory,
            throttle=FailureLogThrottle(InMemoryCounterStore(), first_n=3),
            breaker=breaker or CircuitBreaker(),
            batch_size=20,
            max_attempts=max_attempts,
        )
    return _make


def _old_event(recorder, ref: str, amount: float = 100.0, stream=0, minutes_ago: int = 10):
    return recorder.record_revenue(stream, ref, amount, user_id="u1", now=utc_now() - timedelta(minutes=minutes_ago)).event


def _reload(db_session, event_id: int) -> RevenueEvent:
    db_session.expire_all()
    return db_session.get(RevenueEvent, event_id)


def test_unattempted_event_is_delivered(recorder, make_onchain, chain_client, db_session):
    event = _old_event(recorder, "t-1")
    worker = make_onchain(chain_client)
    result = worker.process_batch()
    assert result["claimed"] == 1
    assert result["delivered"] == 1
    assert chain_client.calls == [(0, pytest.approx(30.0))]

    stored = _reload(db_session, event.id)
    assert stored.onchain_status == OnChainDeliveryStatus.DELIVERED
    assert stored.onchain_delivered_at is not None
    assert stored.onchain_claim_token is None
    assert worker.process_batch()["claimed"] == 0


def test_grace_window_skips_fresh_events(recorder, make_onchain, chain_client):
    recorder.record_revenue(0, "t-fresh", 100, user_id="u1")
    assert make_onchain(chain_client).process_batch()["claimed"] == 0
    assert chain_client.calls == []


def test_refunds_are_never_delivered(recorder, make_onchain, chain_client):
    recorder.record_refund(0, "t-1", 50, now=utc_now() - timedelta(minutes=30))
    assert make_onchain(chain_client).process_batch()["claimed"] == 0


def test_backoff_doubles_per_failure(recorder, make_onchain, chain_client_factory, db_session):
    event = _old_event(recorder, "t-1")
    worker = make_onchain(chain_client_factory(fail=True))

    now = utc_now()
    for expected_attempts, wait_minutes in ((1, 2), (2, 4), (3, 8)):
        result = worker.process_batch(now=now)
        assert result["failed"] == 1
        stored = _reload(db_session, event.id)
        assert stored.onchain_status == OnChainDeliveryStatus.FAILED
        assert stored.onchain_attempts == expected_attempts
        assert ensure_utc(stored.onchain_next_retry_at) == now + timedelta(minutes=wait_minutes)
        assert "rpc endpoint unreachable" in stored.onchain_last_error
        # not eligible again before the backoff elapses
        assert worker.process_batch(now=now + timedelta(minutes=wait_minutes - 1))["claimed"] == 0
        now = now + timedelta(minutes=wait_minutes)

    snapshot = {row["key"]: row["total_failures_seen"] for row in worker.throttle.snapshot()}
    assert snapshot == {"0": 3}


def test_exhausted_delivery_alerts_and_stops(recorder, make_onchain, chain_client_factory, db_session):
    event = _old_event(recorder, "t-1")
    worker = make_onchain(chain_client_factory(fail=True), max_attempts=2)
    now = utc_now()
    worker.process_batch(now=now)
    result = worker.process_batch(now=now + timedelta(minutes=2))
    assert result["exhausted"] == 1

    stored = _reload(db_session, event.id)
    assert stored.onchain_attempts == 2
    assert stored.onchain_next_retry_at is None
    [alert] = recent_alerts(severity=AlertSeverity.CRITICAL)
    assert alert.category == AlertCategory.SYSTEM_HEALTH
    assert alert.details["event_id"] == event.id
    assert worker.process_batch(now=now + timedelta(days=1))["claimed"] == 0


def test_success_after_failure_resets_throttle(recorder, make_onchain, chain_client_factory, db_session):
    event = _old_event(recorder, "t-1")
    client = chain_client_factory(fail=True)
    worker = make_onchain(client)
    now = utc_now()
    worker.process_batch(now=now)
    client.fail = False
    assert worker.process_batch(now=now + timedelta(minutes=2))["delivered"] == 1
    assert _reload(db_session, event.id).onchain_status == OnChainDeliveryStatus.DELIVERED
    assert worker.throttle.snapshot() == []


def test_zero_conversion_rate_counts_as_failure(recorder, make_onchain, chain_client, db_session):
    event = _old_event(recorder, "t-1")
    result = make_onchain(chain_client, rate=0.0).process_batch()
    assert result["failed"] == 1
    assert chain_client.calls == []
    assert "not positive" in _reload(db_session, event.id).onchain_last_error


def test_stuck_delivery_is_reclaimed(recorder, make_onchain, chain_client, db_session):
    event = _old_event(recorder, "t-1", minutes_ago=60)
    db_session.execute(
        update(RevenueEvent)
        .where(RevenueEvent.id == event.id)
        .values(
            onchain_status=OnChainDeliveryStatus.DELIVERING,
            onchain_last_attempt_at=utc_now() - timedelta(minutes=20),
            onchain_claim_token="crashed-worker",
        )
    )
    db_session.commit()
    assert make_onchain(chain_client).process_batch()["delivered"] == 1


def test_recent_in_flight_delivery_is_left_alone(recorder, make_onchain, chain_client, db_session):
    event = _old_event(recorder, "t-1", minutes_ago=60)
    db_session.execute(
        update(RevenueEvent)
        .where(RevenueEvent.id == event.id)
        .values(onchain_status=OnChainDeliveryStatus.DELIVERING, onchain_last_attempt_at=utc_now())
    )
    db_session.commit()
    assert make_onchain(chain_client).process_batch()["claimed"] == 0


def test_breaker_opening_mid_batch_releases_the_rest(recorder, make_onchain, chain_client_factory, db_session):
    events = [_old_event(recorder, f"t-{i}") for i in range(4)]
    breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=300)
    worker = make_onchain(chain_client_factory(fail=True), breaker=breaker)

    result = worker.process_batch()
    assert result["claimed"] == 4
    assert result["failed"] == 2
    assert result["released"] == 2
    released = [_reload(db_session, e.id) for e in events[2:]]
    assert all(e.onchain_status is None and e.onchain_claim_token is None for e in released)
    assert all(e.onchain_attempts == 0 for e in released)

    skipped = worker.process_batch()
    assert skipped["skipped"] is True
    assert skipped["reason"] == "circuit_open"
    assert worker.status()["circuit"]["state"] == "OPEN"
    assert breaker.is_open(CHAIN_TARGET)


def test_failure_report_groups_by_stream(recorder, make_onchain, chain_client_factory):
    _old_event(recorder, "t-1", stream=0)
    _old_event(recorder, "t-2", stream=0)
    _old_event(recorder, "sub-1", amount=200, stream=2, minutes_ago=30)
    worker = make_onchain(chain_client_factory(fail=True))
    worker.process_batch()
    _old_event(recorder, "t-3", stream=0, minutes_ago=20)  # never attempted, past report grace
    recorder.record_revenue(0, "t-fresh", 10, user_id="u1")  # inside grace

    report = worker.get_failure_report(hours=24)
    summary = report["summary"]
    assert summary["total_failures"] == 4
    assert summary["needs_reconciliation"] is True
    assert summary["critical_failures"] == 0
    assert summary["total_holder_share_pending"] == pytest.approx(15 * 3 + 30)
    assert [s["stream_name"] for s in report["by_stream"]] == ["TRADING_FEES", "PREMIUM_SUBS"]
    assert report["by_stream"][0]["count"] == 3

    only_premium = worker.get_failure_report(stream_id=2)
    assert only_premium["summary"]["total_failures"] == 1
    assert only_premium["by_stream"][0]["events"][0]["retry_attempts"] == 1


class _ClaimStealingClient:
    """Chain client during whose call another worker re-claims the event."""

    def __init__(self, session_factory, fail: bool = False):
        self.session_factory = session_factory
        self.fail = fail
        self.calls: list[tuple[int, float]] = []

    def collect_revenue(self, stream_id: int, amount_native: float):
        self.calls.append((stream_id, amount_native))
        session = self.session_factory()
        try:
            session.execute(
                update(RevenueEvent)
                .where(RevenueEvent.onchain_claim_token.is_not(None))
                .values(onchain_claim_token="other-worker")
            )
            session.commit()
        finally:
            session.close()
        if self.fail:
            raise ConnectionError("rpc endpoint unreachable")
        return "0xlate"


def test_success_after_lost_claim_is_discarded(recorder, make_onchain, session_factory, db_session):
    event = _old_event(recorder, "t-1")
    breaker = CircuitBreaker(failure_threshold=5)
    breaker.record_failure(CHAIN_TARGET)
    worker = make_onchain(_ClaimStealingClient(session_factory), breaker=breaker)
    worker.throttle.record_failure(event.stream_id)

    result = worker.process_batch()
    assert result["claimed"] == 1
    assert result["delivered"] == 0
    assert result["discarded"] == 1

    stored = _reload(db_session, event.id)
    assert stored.onchain_status == OnChainDeliveryStatus.DELIVERING
    assert stored.onchain_claim_token == "other-worker"
    assert stored.onchain_delivered_at is None
    # neither the breaker nor the failure throttle hears about it
    assert breaker.snapshot()[CHAIN_TARGET]["consecutive_failures"] == 1
    assert [entry["total_failures_seen"] for entry in worker.throttle.snapshot()] == [1]


def test_failure_after_lost_claim_is_discarded(recorder, make_onchain, session_factory, db_session):
    event = _old_event(recorder, "t-1")
    breaker = CircuitBreaker(failure_threshold=5)
    worker = make_onchain(_ClaimStealingClient(session_factory, fail=True), breaker=breaker)

    result = worker.process_batch()
    assert result["failed"] == 0
    assert result["discarded"] == 1

    stored = _reload(db_session, event.id)
    assert stored.onchain_attempts == 0
    assert stored.onchain_last_error is None
    assert stored.onchain_claim_token == "other-worker"
    assert breaker.snapshot()[CHAIN_TARGET]["consecutive_failures"] == 0
    assert worker.throttle.snapshot() == []
