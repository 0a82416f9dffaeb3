"""Idempotent revenue event recording.

``record_revenue`` is safe to call any number of times for the same
(stream, source reference): the first call inserts the event and bumps the
stream totals in one transaction, every later call returns the stored event
with ``is_new=False``. Concurrent first calls race on the unique
``(source_type, source_id)`` constraint; the loser rolls back and re-reads.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from settlement.config import REVENUE_SPLIT
from settlement.database import SessionLocal
from settlement.exceptions import InvalidRevenueAmount, InvalidRevenueStream, SettlementError
from settlement.models.db.enums import STREAM_DESCRIPTIONS, RevenueStreamId
from settlement.models.db.revenue_events import RevenueEvent
from settlement.models.db.revenue_streams import RevenueStream
from settlement.models.schemas.revenue import RevenueInput
from settlement.utils import get_logger, log_business_event
from settlement.utils.time import utc_now

logger = get_logger(__name__)


@dataclass
class RecordResult:
    event: RevenueEvent
    is_new: bool


def compute_split(amount: float, holder_share: Optional[float] = None) -> tuple[float, float]:
    """(holder_share, reserve_share) of ``amount``; negative for refunds.

    ``holder_share`` overrides the configured percentage with a split computed
    upstream (e.g. a fee-exempt trade pays holders nothing); it is given as a
    magnitude and the reserve takes the remainder.
    """
    sign = -1.0 if amount < 0 else 1.0
    gross = abs(amount)
    if holder_share is None:
        holder = round(gross * float(REVENUE_SPLIT["holder_pct"]), 8)
        reserve = round(gross * float(REVENUE_SPLIT["reserve_pct"]), 8)
    else:
        holder = abs(float(holder_share))
        if not math.isfinite(holder) or holder > gross + 1e-8:
            raise InvalidRevenueAmount(f"holder share {holder_share!r} exceeds amount {amount!r}")
        holder = round(min(holder, gross), 8)
        reserve = round(gross - holder, 8)
    return sign * holder, sign * reserve


def resolve_stream(stream: RevenueStreamId | int | str) -> RevenueStreamId:
    try:
        return RevenueStreamId.coerce(stream)
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidRevenueStream(f"unknown revenue stream {stream!r}") from e


class RevenueRecorder:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal
        self._streams_ready = False

    def ensure_streams(self) -> int:
        """Seed the fixed stream rows; returns how many were created."""
        session: Session = self._session_factory()
        created = 0
        try:
            existing = set(session.scalars(select(RevenueStream.id)))
            for stream in RevenueStreamId:
                if stream.value in existing:
                    continue
                session.add(
                    RevenueStream(
                        id=stream.value,
                        name=stream.name,
                        description=STREAM_DESCRIPTIONS.get(stream),
                        collected=0,
                        distributed=0,
                        event_count=0,
                        currency=str(REVENUE_SPLIT["default_currency"]),
                        is_active=True,
                    )
                )
                created += 1
            session.commit()
        except IntegrityError:
            # Another process seeded concurrently
            session.rollback()
            created = 0
        finally:
            session.close()
        self._streams_ready = True
        if created:
            logger.info("Revenue streams seeded", created=created)
        return created

    def _find(self, session: Session, source_type: str, source_id: str) -> Optional[RevenueEvent]:
        return session.scalars(
            select(RevenueEvent).where(RevenueEvent.source_type == source_type, RevenueEvent.source_id == source_id)
        ).first()

    def record_revenue(
        self,
        stream: RevenueStreamId | int | str,
        source_ref_id: str | int,
        amount: float,
        user_id: Optional[str | int] = None,
        metadata: Optional[dict[str, Any]] = None,
        *,
        currency: Optional[str] = None,
        holder_share: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        stream_id = resolve_stream(stream)
        try:
            amount = float(amount)
        except (TypeError, ValueError) as e:
            raise InvalidRevenueAmount(f"amount must be numeric, got {amount!r}") from e
        if amount == 0 or not math.isfinite(amount):
            raise InvalidRevenueAmount(f"amount must be a non-zero finite number, got {amount!r}")
        source_id = str(source_ref_id).strip()
        if not source_id:
            raise SettlementError("source_ref_id is required")
        holder, reserve = compute_split(amount, holder_share)
        if not self._streams_ready:
            self.ensure_streams()

        now = now or utc_now()
        source_type = stream_id.name
        session: Session = self._session_factory()
        try:
            existing = self._find(session, source_type, source_id)
            if existing is not None:
                logger.debug("Revenue event already recorded", stream=source_type, source_id=source_id, event_id=existing.id)
                return RecordResult(existing, False)

            event = RevenueEvent(
                stream_id=stream_id.value,
                source_type=source_type,
                source_id=source_id,
                user_id=str(user_id) if user_id is not None else None,
                currency=currency or str(REVENUE_SPLIT["default_currency"]),
                gross_amount=amount,
                net_amount=holder,
                holder_share=holder,
                reserve_share=reserve,
                event_metadata=dict(metadata or {}),
                ledger_period=now.date(),
                created_at=now,
                onchain_attempts=0,
            )
            session.add(event)
            session.flush()
            # Increment in the database, never read-modify-write
            result = session.execute(
                update(RevenueStream)
                .where(RevenueStream.id == stream_id.value)
                .values(
                    collected=RevenueStream.collected + amount,
                    distributed=RevenueStream.distributed + holder,
                    event_count=RevenueStream.event_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                logger.warning("Revenue stream row missing; totals not incremented", stream=source_type)
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = self._find(session, source_type, source_id)
            if existing is None:
                raise
            logger.info("Concurrent duplicate revenue event resolved", stream=source_type, source_id=source_id, event_id=existing.id)
            return RecordResult(existing, False)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "Revenue event recorded",
            event_id=event.id,
            stream=source_type,
            source_id=source_id,
            gross=amount,
            holder_share=holder,
            reserve_share=reserve,
        )
        return RecordResult(event, True)

    def record_refund(
        self,
        stream: RevenueStreamId | int | str,
        original_ref_id: str | int,
        refund_amount: float,
        reason: Optional[str] = None,
        *,
        user_id: Optional[str | int] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        """Record a refund as a new negative event; the original stays untouched."""
        try:
            amount = -abs(float(refund_amount))
        except (TypeError, ValueError) as e:
            raise InvalidRevenueAmount(f"refund amount must be numeric, got {refund_amount!r}") from e
        meta = dict(metadata or {})
        meta.update({"original_ref_id": str(original_ref_id), "refund_reason": reason, "is_refund": True})
        result = self.record_revenue(stream, f"refund:{original_ref_id}", amount, user_id, meta, now=now)
        if result.is_new:
            log_business_event(
                "revenue_refund_recorded",
                {
                    "stream": result.event.source_type,
                    "original_ref_id": str(original_ref_id),
                    "amount": amount,
                    "reason": reason,
                    "event_id": result.event.id,
                },
            )
        return result

    def record_revenue_batch(self, inputs: Iterable[RevenueInput | dict[str, Any]]) -> list[dict[str, Any]]:
        """Record each item independently; one bad item does not sink the rest."""
        results: list[dict[str, Any]] = []
        for raw in inputs:
            item = raw if isinstance(raw, RevenueInput) else RevenueInput(**raw)
            try:
                res = self.record_revenue(
                    item.stream,
                    item.source_ref_id,
                    item.amount,
                    item.user_id,
                    item.metadata,
                    currency=item.currency,
                )
                results.append({"success": True, "source_ref_id": item.source_ref_id, "event_id": res.event.id, "is_new": res.is_new})
            except SettlementError as e:
                logger.warning("Batch revenue item rejected", source_ref_id=item.source_ref_id, error=str(e))
                results.append({"success": False, "source_ref_id": item.source_ref_id, "error": str(e)})
        return results

    def list_streams(self) -> list[RevenueStream]:
        session: Session = self._session_factory()
        try:
            return list(session.scalars(select(RevenueStream).order_by(RevenueStream.id)))
        finally:
            session.close()

    def stream_heartbeat(self, window_minutes: int = 60, *, now: Optional[datetime] = None) -> dict[str, Any]:
        """Flag active streams with a monthly target but no recent intake."""
        now = now or utc_now()
        since = now - timedelta(minutes=window_minutes)
        session: Session = self._session_factory()
        try:
            streams = list(session.scalars(select(RevenueStream).where(RevenueStream.is_active.is_(True)).order_by(RevenueStream.id)))
            recent = dict(
                session.execute(
                    select(RevenueEvent.stream_id, func.count(RevenueEvent.id))
                    .where(RevenueEvent.created_at >= since)
                    .group_by(RevenueEvent.stream_id)
                ).all()
            )
        finally:
            session.close()

        report_streams: list[dict[str, Any]] = []
        stale: list[dict[str, Any]] = []
        total_collected = 0.0
        total_target = 0.0
        for stream in streams:
            collected = float(stream.collected or 0)
            target = float(stream.target_monthly or 0)
            progress = (collected / target) * 100 if target > 0 else 0.0
            recent_events = int(recent.get(stream.id, 0))
            entry = {
                "stream_id": stream.id,
                "name": stream.name,
                "recent_events": recent_events,
                "collected": collected,
                "target_monthly": target or None,
                "progress_pct": round(progress, 1),
            }
            report_streams.append(entry)
            total_collected += collected
            total_target += target
            if target > 0 and recent_events == 0 and progress < 100:
                stale.append({**entry, "issue": f"No revenue events in last {window_minutes} minutes"})

        if stale:
            logger.warning("Revenue stream heartbeat found idle streams", count=len(stale), streams=[s["name"] for s in stale])
        else:
            logger.info("All revenue streams healthy", streams=len(streams))
        return {
            "checked_at": now.isoformat(),
            "window_minutes": window_minutes,
            "streams": report_streams,
            "alerts": stale,
            "total_collected": total_collected,
            "overall_progress_pct": round((total_collected / total_target) * 100, 1) if total_target > 0 else 0.0,
        }


__all__ = ["RevenueRecorder", "RecordResult", "compute_split", "resolve_stream"]
