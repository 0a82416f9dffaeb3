"""Interfaces of the fee, reward and referral subsystems.

Those subsystems live outside settlement. Each call may be repeated on a job
retry, so implementations must be idempotent (or fail loudly so the whole job
is retried).
"""
from __future__ import annotations

from typing import Any, Protocol

from settlement.utils import get_logger

logger = get_logger(__name__)


class PostTradeCollaborators(Protocol):
    def distribute_fees(self, amount: float, correlation_id: str) -> None: ...
    def grant_trading_reward(self, user_id: str, notional: float, context: dict[str, Any]) -> None: ...
    def check_referral_milestones(self, user_id: str, notional: float) -> None: ...


class LoggingCollaborators:
    """Stand-in used when no external subsystem is wired: records the calls in the log."""

    def distribute_fees(self, amount: float, correlation_id: str) -> None:
        logger.info("Fee pool distribution requested", amount=amount, correlation_id=correlation_id)

    def grant_trading_reward(self, user_id: str, notional: float, context: dict[str, Any]) -> None:
        logger.info("Trading reward requested", user_id=user_id, notional=notional, **context)

    def check_referral_milestones(self, user_id: str, notional: float) -> None:
        logger.info("Referral milestone check requested", user_id=user_id, notional=notional)


__all__ = ["PostTradeCollaborators", "LoggingCollaborators"]
