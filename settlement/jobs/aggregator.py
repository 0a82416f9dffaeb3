"""Periodic fold of revenue events into per-user daily ledger rows.

An event is pending for aggregation while no ledger row for its
(user, stream, day, currency) key has ``last_event_id >= event.id``. Each run
takes the oldest pending events (by id) together with the watermark their
row had at read time, sums them per key and applies each group as a
compare-and-set: the row is updated only while its watermark still equals the
one read, and a missing row is inserted only if still absent. A group whose
row moved in between (another process folded it) is left for the next run,
so concurrent aggregators never add the same event twice.

Events younger than ``settle_lag_seconds`` are left for the next run so an
insert still in flight cannot end up behind an advanced watermark.
"""
from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, aliased, sessionmaker

from settlement.config import AGGREGATOR_SETTINGS
from settlement.database import SessionLocal
from settlement.models.db.ledger_entries import LedgerEntry
from settlement.models.db.revenue_events import RevenueEvent
from settlement.utils import get_logger, log_performance
from settlement.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

_KEY_COLUMNS = ("user_id", "stream_id", "period", "currency")


class LedgerAggregator:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        batch_limit: Optional[int] = None,
        settle_lag_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self.batch_limit = int(batch_limit if batch_limit is not None else AGGREGATOR_SETTINGS["batch_limit"])
        self.settle_lag_seconds = int(
            settle_lag_seconds if settle_lag_seconds is not None else AGGREGATOR_SETTINGS["settle_lag_seconds"]
        )
        self._guard = threading.Lock()
        self.is_running = False
        self.last_run_at: datetime | None = None
        self.last_processed_count = 0
        self.last_error: str | None = None

    def run(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        if not self._guard.acquire(blocking=False):
            logger.warning("Ledger aggregation already running; skipping")
            return {"skipped": True, "processed_events": 0, "groups": 0}
        self.is_running = True
        started = time.perf_counter()
        now = now or utc_now()
        try:
            processed, groups, contended = self._fold(now)
            self.last_run_at = now
            self.last_processed_count = processed
            self.last_error = None
        except Exception as e:
            self.last_error = str(e)
            logger.error("Ledger aggregation failed", error=str(e), exc_info=True)
            raise
        finally:
            self.is_running = False
            self._guard.release()
        duration_ms = (time.perf_counter() - started) * 1000
        if processed:
            logger.info("Ledger aggregation complete", processed_events=processed, groups=groups)
        else:
            logger.debug("Ledger aggregation found nothing to fold")
        log_performance("ledger_aggregation", duration_ms, {"processed_events": processed, "groups": groups})
        return {
            "skipped": False,
            "processed_events": processed,
            "groups": groups,
            "contended_groups": contended,
            "duration_ms": round(duration_ms, 2),
        }

    def _pending_events(self, now: datetime):
        """Unfolded events together with the watermark of their ledger row.

        One statement, so each event and the watermark it was judged against
        come from the same snapshot.
        """
        row = aliased(LedgerEntry)
        cutoff = now - timedelta(seconds=self.settle_lag_seconds)
        return (
            select(
                RevenueEvent.id,
                RevenueEvent.user_id,
                RevenueEvent.stream_id,
                RevenueEvent.ledger_period,
                RevenueEvent.currency,
                RevenueEvent.gross_amount,
                RevenueEvent.net_amount,
                row.last_event_id,
            )
            .outerjoin(
                row,
                and_(
                    row.user_id == RevenueEvent.user_id,
                    row.stream_id == RevenueEvent.stream_id,
                    row.period == RevenueEvent.ledger_period,
                    row.currency == RevenueEvent.currency,
                ),
            )
            .where(
                RevenueEvent.user_id.is_not(None),
                RevenueEvent.created_at <= cutoff,
                or_(row.last_event_id.is_(None), RevenueEvent.id > row.last_event_id),
            )
            .order_by(RevenueEvent.id)
            .limit(self.batch_limit)
        )

    def _read_groups(self, session: Session, now: datetime) -> list[dict[str, Any]]:
        groups: dict[tuple, dict[str, Any]] = {}
        for event_id, user_id, stream_id, period, currency, gross, net, observed in session.execute(
            self._pending_events(now)
        ):
            group = groups.setdefault(
                (user_id, stream_id, period, currency),
                {
                    "user_id": user_id,
                    "stream_id": stream_id,
                    "period": period,
                    "currency": currency,
                    "gross_total": 0.0,
                    "net_total": 0.0,
                    "event_count": 0,
                    "last_event_id": 0,
                    "observed_event_id": observed,
                    "updated_at": now,
                },
            )
            group["gross_total"] += float(gross or 0)
            group["net_total"] += float(net or 0)
            group["event_count"] += 1
            group["last_event_id"] = max(group["last_event_id"], int(event_id))
        return list(groups.values())

    def _fold(self, now: datetime) -> tuple[int, int, int]:
        session: Session = self._session_factory()
        try:
            groups = self._read_groups(session, now)
            dialect = session.get_bind().dialect.name
            applied: list[dict[str, Any]] = []
            for group in groups:
                if self._apply_group(session, group, dialect):
                    applied.append(group)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        contended = len(groups) - len(applied)
        if contended:
            logger.warning("Ledger rows moved during aggregation; groups left for next run", contended_groups=contended)
        return sum(g["event_count"] for g in applied), len(applied), contended

    def _apply_group(self, session: Session, group: dict[str, Any], dialect: str) -> bool:
        """Compare-and-set on the watermark read with the group's events.

        A row that appeared or advanced since the read belongs to another run;
        the group is dropped and its events are re-read next time.
        """
        observed = group["observed_event_id"]
        values = {k: v for k, v in group.items() if k != "observed_event_id"}
        if observed is None:
            return self._insert_if_absent(session, values, dialect)
        key = {name: group[name] for name in _KEY_COLUMNS}
        result = session.execute(
            update(LedgerEntry)
            .filter_by(**key)
            .where(LedgerEntry.last_event_id == observed)
            .values(
                gross_total=LedgerEntry.gross_total + group["gross_total"],
                net_total=LedgerEntry.net_total + group["net_total"],
                event_count=LedgerEntry.event_count + group["event_count"],
                last_event_id=group["last_event_id"],
                updated_at=group["updated_at"],
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    @staticmethod
    def _insert_if_absent(session: Session, values: dict[str, Any], dialect: str) -> bool:
        table = LedgerEntry.__table__
        if dialect in ("postgresql", "sqlite"):
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(table).values(**values).on_conflict_do_nothing(
                index_elements=[table.c[name] for name in _KEY_COLUMNS]
            )
            return bool(session.execute(stmt).rowcount)
        try:
            with session.begin_nested():
                session.execute(table.insert().values(**values))
        except IntegrityError:
            return False
        return True

    def status(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utc_now()
        session: Session = self._session_factory()
        try:
            total_events = session.scalar(select(func.count(RevenueEvent.id))) or 0
            total_rows = session.scalar(select(func.count()).select_from(LedgerEntry)) or 0
            last_event_at = session.scalar(select(func.max(RevenueEvent.created_at)))
        finally:
            session.close()
        healthy_within = int(AGGREGATOR_SETTINGS["healthy_within_seconds"])
        healthy = self.last_run_at is not None and (now - self.last_run_at).total_seconds() <= healthy_within
        last_event_at = ensure_utc(last_event_at)
        return {
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_processed_count": self.last_processed_count,
            "last_error": self.last_error,
            "total_events": int(total_events),
            "total_ledger_entries": int(total_rows),
            "last_event_at": last_event_at.isoformat() if last_event_at else None,
            "healthy": healthy,
        }


__all__ = ["LedgerAggregator"]
