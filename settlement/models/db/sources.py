from __future__ import annotations
"""Read-only mappings of upstream-owned tables.

The trade-execution and wallet subsystems own these tables; settlement only
reads them to cross-check revenue completeness and never writes to them.
"""
from datetime import datetime
from sqlalchemy import String, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base


class TradeRecord(Base):
    __tablename__ = "trades"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    buyer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seller_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_fees: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TransactionRecord(Base):
    __tablename__ = "transactions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[float | None] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
