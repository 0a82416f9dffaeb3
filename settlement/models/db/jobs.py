from __future__ import annotations
"""SQLAlchemy model for queued post-trade jobs."""
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, Enum, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from settlement.database import Base
from settlement.utils.time import utc_now
from .enums import JobStatus, JobType


class PostTradeJob(Base):
    __tablename__ = "post_trade_jobs"
    __table_args__ = (
        Index("ix_post_trade_jobs_claimable", "status", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    trade_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_type: Mapped[JobType] = mapped_column(Enum(JobType), nullable=False)
    # Groups every job spawned by one trade
    correlation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    # Claim bookkeeping: token identifies the claiming worker batch
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)
