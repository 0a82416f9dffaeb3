from __future__ import annotations
"""SQLAlchemy model for revenue streams (fixed set, ids 0-9).

Running totals are only ever changed with in-database increments.
"""
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, Boolean, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base
from settlement.utils.time import utc_now


class RevenueStream(Base):
    __tablename__ = "revenue_streams"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    collected: Mapped[float] = mapped_column(Numeric(24, 8, asdecimal=False), default=0, nullable=False)
    distributed: Mapped[float] = mapped_column(Numeric(24, 8, asdecimal=False), default=0, nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    target_monthly: Mapped[float | None] = mapped_column(Numeric(24, 8, asdecimal=False), nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
