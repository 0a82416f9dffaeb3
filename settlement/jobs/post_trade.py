"""Post-trade side effects.

A ``post_trade`` job runs every step in a fixed order: revenue split, fee-pool
distribution, buyer/seller rewards, referral milestones. The granular job
types run their own subset so an operator can re-drive one concern. Revenue
recording is idempotent on the trade id, so a retried job never double-counts.
"""
from __future__ import annotations

import math
from typing import Optional, Union

from settlement.exceptions import NonRetryableJobError
from settlement.jobs.collaborators import PostTradeCollaborators
from settlement.jobs.job_store import JobStore
from settlement.models.db.enums import JobType, RevenueStreamId
from settlement.models.schemas.jobs import (
    CompletedTrade,
    FeeDistributionPayload,
    PostTradePayload,
    ReferralUpdatePayload,
    RewardDistributionPayload,
)
from settlement.services.revenue_recorder import RevenueRecorder
from settlement.utils import get_logger

logger = get_logger(__name__)

FeePayload = Union[FeeDistributionPayload, PostTradePayload]
RewardPayload = Union[RewardDistributionPayload, PostTradePayload]

_SPLIT_TOLERANCE = 1e-6


def enqueue_for_trade(store: JobStore, trade: CompletedTrade, *, correlation_id: Optional[str] = None) -> int:
    """Queue the composite job for a completed trade; the fee split is taken as given."""
    return store.enqueue(JobType.POST_TRADE, PostTradePayload.from_trade(trade), correlation_id=correlation_id)


class PostTradeProcessor:
    def __init__(self, recorder: RevenueRecorder, collaborators: PostTradeCollaborators):
        self.recorder = recorder
        self.collaborators = collaborators

    def run(self, payload, correlation_id: str) -> list[str]:
        """Execute the steps owned by ``payload``'s job type; returns the step names run."""
        if isinstance(payload, PostTradePayload):
            steps = [self._record_fees, self._distribute_fees, self._grant_rewards, self._update_referrals]
        elif isinstance(payload, FeeDistributionPayload):
            steps = [self._record_fees, self._distribute_fees]
        elif isinstance(payload, RewardDistributionPayload):
            steps = [self._grant_rewards]
        elif isinstance(payload, ReferralUpdatePayload):
            steps = [self._update_referrals]
        else:
            raise TypeError(f"unsupported payload {type(payload).__name__}")
        executed: list[str] = []
        for step in steps:
            if step(payload, correlation_id):
                executed.append(step.__name__.lstrip("_"))
        return executed

    @staticmethod
    def _check_split(payload: FeePayload) -> None:
        if not math.isclose(payload.holder_share + payload.platform_share, payload.total_fees, abs_tol=_SPLIT_TOLERANCE):
            raise NonRetryableJobError(
                f"fee split {payload.holder_share} + {payload.platform_share} does not equal total {payload.total_fees}"
                f" for trade {payload.trade_id}"
            )

    def _record_fees(self, payload: FeePayload, correlation_id: str) -> bool:
        self._check_split(payload)
        if payload.total_fees <= 0:
            return False
        result = self.recorder.record_revenue(
            RevenueStreamId.TRADING_FEES,
            payload.trade_id,
            payload.total_fees,
            user_id=payload.fee_payer_id or payload.buyer_id,
            metadata={
                "role": payload.fee_role.value,
                "trade_id": payload.trade_id,
                "correlation_id": correlation_id,
            },
            currency=payload.currency,
            holder_share=payload.holder_share,
        )
        logger.info(
            "Trade fees recorded",
            trade_id=payload.trade_id,
            event_id=result.event.id,
            is_new=result.is_new,
            correlation_id=correlation_id,
        )
        return True

    def _distribute_fees(self, payload: FeePayload, correlation_id: str) -> bool:
        if payload.platform_share <= 0:
            return False
        self.collaborators.distribute_fees(payload.platform_share, correlation_id)
        return True

    def _grant_rewards(self, payload: RewardPayload, correlation_id: str) -> bool:
        if payload.notional <= 0:
            return False
        granted = False
        for user_id, order_id in ((payload.buyer_id, payload.buy_order_id), (payload.seller_id, payload.sell_order_id)):
            if not user_id:
                continue
            self.collaborators.grant_trading_reward(
                user_id,
                payload.notional,
                {"trade_id": payload.trade_id, "order_id": order_id, "correlation_id": correlation_id},
            )
            granted = True
        return granted

    def _update_referrals(self, payload, correlation_id: str) -> bool:
        checked = False
        for user_id in (payload.buyer_id, payload.seller_id):
            if user_id:
                self.collaborators.check_referral_milestones(user_id, payload.notional)
                checked = True
        return checked


__all__ = ["enqueue_for_trade", "PostTradeProcessor"]
