from .jobs import PostTradeJob
from .revenue_events import RevenueEvent
from .revenue_streams import RevenueStream
from .ledger_entries import LedgerEntry
from .sources import TradeRecord, TransactionRecord
from .enums import (
    JobStatus,
    JobType,
    RevenueStreamId,
    OnChainDeliveryStatus,
    FeeRole,
    AlertSeverity,
    AlertCategory,
)

__all__ = [
    "PostTradeJob",
    "RevenueEvent",
    "RevenueStream",
    "LedgerEntry",
    "TradeRecord",
    "TransactionRecord",
    "JobStatus",
    "JobType",
    "RevenueStreamId",
    "OnChainDeliveryStatus",
    "FeeRole",
    "AlertSeverity",
    "AlertCategory",
]
