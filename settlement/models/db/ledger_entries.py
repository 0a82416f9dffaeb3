"""SQLAlchemy model for per-user/stream/day ledger rollups."""
from __future__ import annotations
from datetime import date, datetime
from sqlalchemy import Integer, String, Date, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base
from settlement.utils.time import utc_now


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stream_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    period: Mapped[date] = mapped_column(Date, primary_key=True)
    currency: Mapped[str] = mapped_column(String(10), primary_key=True)

    gross_total: Mapped[float] = mapped_column(Numeric(24, 8, asdecimal=False), default=0, nullable=False)
    net_total: Mapped[float] = mapped_column(Numeric(24, 8, asdecimal=False), default=0, nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Highest revenue_events.id folded into this row
    last_event_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
