"""Central Enum definitions for settlement domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and worker logic.
"""
from __future__ import annotations
import enum


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class JobType(str, enum.Enum):
    POST_TRADE = "post_trade"
    FEE_DISTRIBUTION = "fee_distribution"
    REWARD_DISTRIBUTION = "reward_distribution"
    REFERRAL_UPDATE = "referral_update"


class RevenueStreamId(enum.IntEnum):
    TRADING_FEES = 0
    WITHDRAWAL_FEES = 1
    PREMIUM_SUBS = 2
    API_LICENSING = 3
    MARKET_MAKING = 4
    LENDING_INTEREST = 5
    STAKING_COMMISSIONS = 6
    COPY_TRADING_FEES = 7
    WHITE_LABEL = 8
    NFT_POSITIONS = 9

    @classmethod
    def coerce(cls, value: "RevenueStreamId | int | str") -> "RevenueStreamId":
        """Accept a member, its numeric id or its name (case-insensitive)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.isdigit():
            return cls[value.strip().upper()]
        return cls(int(value))


STREAM_DESCRIPTIONS: dict[RevenueStreamId, str] = {
    RevenueStreamId.TRADING_FEES: "Maker/taker fees on executed trades",
    RevenueStreamId.WITHDRAWAL_FEES: "Fees charged on completed withdrawals",
    RevenueStreamId.PREMIUM_SUBS: "Premium subscription revenue",
    RevenueStreamId.API_LICENSING: "API access licensing",
    RevenueStreamId.MARKET_MAKING: "Market making spread capture",
    RevenueStreamId.LENDING_INTEREST: "Interest earned on lending",
    RevenueStreamId.STAKING_COMMISSIONS: "Commission on staking rewards",
    RevenueStreamId.COPY_TRADING_FEES: "Copy trading performance commissions",
    RevenueStreamId.WHITE_LABEL: "White label platform licensing",
    RevenueStreamId.NFT_POSITIONS: "NFT position minting and trading",
}


class OnChainDeliveryStatus(str, enum.Enum):
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    FAILED = "failed"


class FeeRole(str, enum.Enum):
    MAKER = "MAKER"
    TAKER = "TAKER"


class ParameterChangeStatus(str, enum.Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

# ------------------------------ Alerting ------------------------------ #

class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

class AlertCategory(str, enum.Enum):
    DATA_QUALITY = "DATA_QUALITY"
    FRAUD = "FRAUD"
    SYSTEM_HEALTH = "SYSTEM_HEALTH"
    GOVERNANCE = "GOVERNANCE"

__all__ = [
    "JobStatus",
    "JobType",
    "RevenueStreamId",
    "STREAM_DESCRIPTIONS",
    "OnChainDeliveryStatus",
    "FeeRole",
    "ParameterChangeStatus",
    "AlertSeverity",
    "AlertCategory",
]
