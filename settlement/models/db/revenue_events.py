from __future__ import annotations
"""SQLAlchemy model for immutable revenue events.

Only the ``onchain_*`` sidecar columns change after insert; they are owned by
the on-chain retry worker.
"""
from datetime import date, datetime
from sqlalchemy import Integer, String, Text, Date, DateTime, Enum, JSON, Numeric, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base
from settlement.utils.time import utc_now
from .enums import OnChainDeliveryStatus


class RevenueEvent(Base):
    __tablename__ = "revenue_events"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_revenue_events_source"),
        Index("ix_revenue_events_onchain", "onchain_status", "onchain_next_retry_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # Stream name; (source_type, source_id) is the dedupe key
    source_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")

    gross_amount: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    net_amount: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    holder_share: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    reserve_share: Mapped[float] = mapped_column(Numeric(20, 8, asdecimal=False), nullable=False)
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    ledger_period: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    # On-chain delivery sidecar (NULL status = never attempted)
    onchain_status: Mapped[OnChainDeliveryStatus | None] = mapped_column(Enum(OnChainDeliveryStatus), nullable=True)
    onchain_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    onchain_next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    onchain_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    onchain_last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    onchain_delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    onchain_claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
