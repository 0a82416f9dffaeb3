"""On-chain delivery of the holder share, with retries.

Every revenue event with a positive holder share must eventually reach the
settlement contract. The worker picks up

* failed deliveries below the retry cap whose ``onchain_next_retry_at`` is due,
* events never attempted and older than ``unattempted_grace_minutes``,
* deliveries stuck in ``delivering`` past ``inflight_timeout_minutes``,

moves them to ``delivering`` in a short claim transaction, delivers outside
any lock, then records the result. Failures back off ``2^attempts`` minutes
(capped) and are logged through a per-stream throttle so an outage of one
stream cannot flood the logs.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from settlement.config import ONCHAIN_SETTINGS
from settlement.database import SessionLocal
from settlement.exceptions import DeliveryError
from settlement.models.db.enums import AlertCategory, AlertSeverity, OnChainDeliveryStatus, RevenueStreamId
from settlement.models.db.revenue_events import RevenueEvent
from settlement.services.alerting import raise_operator_alert
from settlement.utils import get_logger, log_business_event
from settlement.utils.backoff import compute_onchain_backoff_minutes
from settlement.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER, CircuitBreaker
from settlement.utils.log_throttle import FailureLogThrottle, create_counter_store
from settlement.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

CHAIN_TARGET = "settlement_contract"


class PriceConverter(Protocol):
    def settlement_to_native(self, amount: float) -> float: ...


class SettlementChainClient(Protocol):
    def collect_revenue(self, stream_id: int, amount_native: float) -> Optional[str]: ...


class StaticPriceConverter:
    """Fixed conversion rate; a rate of 0 makes every delivery fail visibly."""

    def __init__(self, native_per_unit: Optional[float] = None):
        self.native_per_unit = float(
            native_per_unit if native_per_unit is not None else ONCHAIN_SETTINGS["native_per_settlement_unit"]
        )

    def settlement_to_native(self, amount: float) -> float:
        return amount * self.native_per_unit


class UnconfiguredChainClient:
    def collect_revenue(self, stream_id: int, amount_native: float) -> Optional[str]:
        raise DeliveryError("no settlement chain client configured")


def _stream_name(stream_id: int) -> str:
    try:
        return RevenueStreamId(stream_id).name
    except ValueError:
        return f"STREAM_{stream_id}"


class OnChainRetryWorker:
    def __init__(
        self,
        converter: PriceConverter,
        chain_client: SettlementChainClient,
        session_factory: Optional[sessionmaker] = None,
        *,
        throttle: Optional[FailureLogThrottle] = None,
        breaker: Optional[CircuitBreaker] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.converter = converter
        self.chain_client = chain_client
        self._session_factory = session_factory or SessionLocal
        self.throttle = throttle or FailureLogThrottle(create_counter_store())
        self.breaker = breaker or GLOBAL_CIRCUIT_BREAKER
        self.batch_size = int(batch_size if batch_size is not None else ONCHAIN_SETTINGS["batch_size"])
        self.max_attempts = int(max_attempts if max_attempts is not None else ONCHAIN_SETTINGS["max_retry_attempts"])
        self.last_run_at: datetime | None = None
        self.last_result: dict[str, Any] | None = None

    # ------------------------------------------------------------------ #
    # Selection / claim
    # ------------------------------------------------------------------ #
    def _eligible(self, now: datetime):
        grace = now - timedelta(minutes=int(ONCHAIN_SETTINGS["unattempted_grace_minutes"]))
        inflight = now - timedelta(minutes=int(ONCHAIN_SETTINGS["inflight_timeout_minutes"]))
        return and_(
            RevenueEvent.holder_share > 0,
            or_(
                and_(
                    RevenueEvent.onchain_status == OnChainDeliveryStatus.FAILED,
                    RevenueEvent.onchain_attempts < self.max_attempts,
                    RevenueEvent.onchain_next_retry_at <= now,
                ),
                and_(RevenueEvent.onchain_status.is_(None), RevenueEvent.created_at <= grace),
                and_(
                    RevenueEvent.onchain_status == OnChainDeliveryStatus.DELIVERING,
                    RevenueEvent.onchain_last_attempt_at <= inflight,
                ),
            ),
        )

    def _claim(self, now: datetime) -> tuple[list[RevenueEvent], dict[int, Optional[OnChainDeliveryStatus]]]:
        session: Session = self._session_factory()
        try:
            candidates = session.execute(
                select(RevenueEvent.id, RevenueEvent.onchain_status)
                .where(self._eligible(now))
                .order_by(RevenueEvent.created_at, RevenueEvent.id)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            ).all()
            if not candidates:
                session.commit()
                return [], {}
            prior = {row.id: row.onchain_status for row in candidates}
            token = str(uuid.uuid4())
            session.execute(
                update(RevenueEvent)
                .where(RevenueEvent.id.in_(list(prior)), self._eligible(now))
                .values(
                    onchain_status=OnChainDeliveryStatus.DELIVERING,
                    onchain_claim_token=token,
                    onchain_last_attempt_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            claimed = list(
                session.scalars(
                    select(RevenueEvent).where(RevenueEvent.onchain_claim_token == token).order_by(RevenueEvent.id)
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return claimed, prior

    def _release(self, event: RevenueEvent, prior: Optional[OnChainDeliveryStatus]) -> None:
        """Hand a claimed event back untouched (breaker opened mid-batch)."""
        self._write(event, {"onchain_status": prior, "onchain_claim_token": None})

    def _write(self, event: RevenueEvent, values: dict[str, Any]) -> bool:
        session: Session = self._session_factory()
        try:
            result = session.execute(
                update(RevenueEvent)
                .where(RevenueEvent.id == event.id, RevenueEvent.onchain_claim_token == event.onchain_claim_token)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return bool(result.rowcount)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------ #
    # Batch processing
    # ------------------------------------------------------------------ #
    def process_batch(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utc_now()
        result: dict[str, Any] = {
            "claimed": 0,
            "delivered": 0,
            "failed": 0,
            "exhausted": 0,
            "released": 0,
            "discarded": 0,
            "skipped": False,
        }
        allowed, reason = self.breaker.allow_call(CHAIN_TARGET, now=now)
        if not allowed:
            logger.warning("On-chain retry batch skipped: chain target unavailable", reason=reason)
            result.update(skipped=True, reason=reason)
            self._finish(now, result)
            return result

        events, prior = self._claim(now)
        result["claimed"] = len(events)
        for index, event in enumerate(events):
            if index > 0:
                allowed, reason = self.breaker.allow_call(CHAIN_TARGET, now=now)
                if not allowed:
                    for remaining in events[index:]:
                        self._release(remaining, prior.get(remaining.id))
                        result["released"] += 1
                    logger.warning("Circuit opened mid-batch; remaining deliveries released", released=result["released"], reason=reason)
                    break
            try:
                tx_ref = self._deliver(event)
            except Exception as e:
                outcome = self._on_failure(event, e, now)
                if outcome is None:
                    result["discarded"] += 1
                else:
                    result["failed"] += 1
                    result["exhausted"] += int(outcome)
                continue
            if self._on_success(event, tx_ref, now):
                result["delivered"] += 1
            else:
                result["discarded"] += 1
        self._finish(now, result)
        if events:
            logger.info("On-chain retry batch processed", **{k: v for k, v in result.items() if k != "skipped"})
        return result

    def _finish(self, now: datetime, result: dict[str, Any]) -> None:
        self.last_run_at = now
        self.last_result = dict(result)

    def _deliver(self, event: RevenueEvent) -> Optional[str]:
        holder_share = float(event.holder_share)
        amount_native = float(self.converter.settlement_to_native(holder_share))
        if amount_native <= 0:
            raise DeliveryError(f"converted amount {amount_native} is not positive (holder share {holder_share})")
        return self.chain_client.collect_revenue(event.stream_id, amount_native)

    def _discarded(self, event: RevenueEvent, outcome: str, **context: Any) -> None:
        logger.warning(
            "On-chain delivery outcome discarded: claim lost",
            event_id=event.id,
            stream=_stream_name(event.stream_id),
            outcome=outcome,
            **context,
        )

    def _on_success(self, event: RevenueEvent, tx_ref: Optional[str], now: datetime) -> bool:
        """Record the delivery; False when another worker took the claim meanwhile."""
        written = self._write(
            event,
            {
                "onchain_status": OnChainDeliveryStatus.DELIVERED,
                "onchain_delivered_at": now,
                "onchain_next_retry_at": None,
                "onchain_last_error": None,
                "onchain_claim_token": None,
            },
        )
        if not written:
            self._discarded(event, "delivered", tx_ref=tx_ref)
            return False
        self.breaker.record_success(CHAIN_TARGET)
        self.throttle.record_success(event.stream_id)
        logger.info(
            "On-chain delivery succeeded",
            event_id=event.id,
            stream=_stream_name(event.stream_id),
            holder_share=float(event.holder_share),
            attempts=event.onchain_attempts + 1,
            tx_ref=tx_ref,
        )
        return True

    def _on_failure(self, event: RevenueEvent, error: Exception, now: datetime) -> Optional[bool]:
        """Record a failed attempt; returns whether retries are exhausted, None if the claim was lost."""
        attempts = (event.onchain_attempts or 0) + 1
        exhausted = attempts >= self.max_attempts
        next_retry_at = None if exhausted else now + timedelta(minutes=compute_onchain_backoff_minutes(attempts))
        message = f"{type(error).__name__}: {error}"
        written = self._write(
            event,
            {
                "onchain_status": OnChainDeliveryStatus.FAILED,
                "onchain_attempts": attempts,
                "onchain_next_retry_at": next_retry_at,
                "onchain_last_error": message[:2000],
                "onchain_claim_token": None,
            },
        )
        if not written:
            self._discarded(event, "failed", error=message)
            return None
        self.breaker.record_failure(CHAIN_TARGET, now=now)
        event.onchain_attempts = attempts
        event.onchain_next_retry_at = next_retry_at

        decision = self.throttle.record_failure(event.stream_id)
        if decision.should_log:
            logger.log(
                logging.ERROR if exhausted else logging.WARNING,
                "On-chain delivery failed",
                event_id=event.id,
                stream=_stream_name(event.stream_id),
                attempts=attempts,
                max_attempts=self.max_attempts,
                next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
                stream_failures=decision.count,
                error=message,
            )
        if exhausted:
            details = {
                "event_id": event.id,
                "stream": _stream_name(event.stream_id),
                "holder_share": float(event.holder_share),
                "attempts": attempts,
                "error": message,
            }
            log_business_event("onchain_delivery_exhausted", details)
            raise_operator_alert(
                AlertCategory.SYSTEM_HEALTH,
                AlertSeverity.CRITICAL,
                "On-chain delivery exhausted retries; manual reconciliation required",
                details,
            )
        return exhausted

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #
    def get_failure_report(self, stream_id: Optional[int] = None, hours: int = 24, *, now: Optional[datetime] = None) -> dict[str, Any]:
        """Outstanding deliveries grouped by stream, for manual reconciliation."""
        now = now or utc_now()
        since = now - timedelta(hours=hours)
        grace = now - timedelta(minutes=int(ONCHAIN_SETTINGS["report_grace_minutes"]))
        query = (
            select(RevenueEvent)
            .where(
                RevenueEvent.created_at >= since,
                RevenueEvent.holder_share > 0,
                or_(
                    RevenueEvent.onchain_status == OnChainDeliveryStatus.FAILED,
                    and_(RevenueEvent.onchain_status.is_(None), RevenueEvent.created_at < grace),
                ),
            )
            .order_by(RevenueEvent.created_at.desc())
        )
        if stream_id is not None:
            query = query.where(RevenueEvent.stream_id == int(stream_id))
        session: Session = self._session_factory()
        try:
            failures = list(session.scalars(query))
        finally:
            session.close()

        by_stream: dict[int, dict[str, Any]] = {}
        for event in failures:
            group = by_stream.setdefault(
                event.stream_id,
                {
                    "stream_id": event.stream_id,
                    "stream_name": _stream_name(event.stream_id),
                    "count": 0,
                    "total_holder_share": 0.0,
                    "max_retries": 0,
                    "events": [],
                },
            )
            retries = event.onchain_attempts or 0
            group["count"] += 1
            group["total_holder_share"] += float(event.holder_share)
            group["max_retries"] = max(group["max_retries"], retries)
            next_retry_at = ensure_utc(event.onchain_next_retry_at)
            group["events"].append(
                {
                    "id": event.id,
                    "source_id": event.source_id,
                    "holder_share": float(event.holder_share),
                    "created_at": ensure_utc(event.created_at).isoformat(),
                    "retry_attempts": retries,
                    "last_error": event.onchain_last_error,
                    "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                }
            )
        streams = sorted(by_stream.values(), key=lambda s: s["count"], reverse=True)
        for group in streams:
            group["total_holder_share"] = round(group["total_holder_share"], 8)
        total_pending = sum(s["total_holder_share"] for s in streams)
        return {
            "summary": {
                "total_failures": len(failures),
                "critical_failures": sum(1 for e in failures if (e.onchain_attempts or 0) >= self.max_attempts),
                "total_holder_share_pending": round(total_pending, 4),
                "period": f"Last {hours} hours",
                "needs_reconciliation": len(failures) > 0,
            },
            "by_stream": streams,
        }

    def status(self) -> dict[str, Any]:
        return {
            "enabled": bool(ONCHAIN_SETTINGS["enabled"]),
            "batch_size": self.batch_size,
            "max_retry_attempts": self.max_attempts,
            "max_backoff_minutes": int(ONCHAIN_SETTINGS["max_backoff_minutes"]),
            "unattempted_grace_minutes": int(ONCHAIN_SETTINGS["unattempted_grace_minutes"]),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
            "circuit": self.breaker.snapshot().get(CHAIN_TARGET),
            "throttled_streams": self.throttle.snapshot(),
        }


__all__ = [
    "OnChainRetryWorker",
    "PriceConverter",
    "SettlementChainClient",
    "StaticPriceConverter",
    "UnconfiguredChainClient",
    "CHAIN_TARGET",
]
