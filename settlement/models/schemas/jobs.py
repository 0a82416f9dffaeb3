"""
Pydantic schemas for post-trade jobs.

Each job type owns a strongly-typed payload; the stored JSON blob is decoded
into the matching variant when a worker claims the job.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from settlement.exceptions import PayloadDecodeError
from settlement.models.db.enums import FeeRole, JobStatus, JobType


class CompletedTrade(BaseModel):
    """Completed-trade record handed over by the trade-execution subsystem.

    The fee split is computed upstream and carried as-is.
    """
    trade_id: str
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
    notional: float = Field(ge=0, description="Total trade value in the settlement currency")
    total_fees: float = Field(ge=0)
    holder_share: float = Field(ge=0)
    platform_share: float = Field(ge=0)
    fee_payer_id: Optional[str] = Field(None, description="User charged the fee; defaults to the buyer")
    fee_role: FeeRole = FeeRole.TAKER
    currency: str = "USD"


class _TradePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    trade_id: str
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    notional: float = Field(0.0, ge=0)


class FeeDistributionPayload(_TradePayload):
    job_type: Literal["fee_distribution"] = "fee_distribution"
    total_fees: float = Field(ge=0)
    holder_share: float = Field(ge=0)
    platform_share: float = Field(ge=0)
    fee_payer_id: Optional[str] = None
    fee_role: FeeRole = FeeRole.TAKER
    currency: str = "USD"


class RewardDistributionPayload(_TradePayload):
    job_type: Literal["reward_distribution"] = "reward_distribution"
    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None


class ReferralUpdatePayload(_TradePayload):
    job_type: Literal["referral_update"] = "referral_update"


class PostTradePayload(_TradePayload):
    """Every side effect of one trade in a single job."""
    job_type: Literal["post_trade"] = "post_trade"
    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
    total_fees: float = Field(0.0, ge=0)
    holder_share: float = Field(0.0, ge=0)
    platform_share: float = Field(0.0, ge=0)
    fee_payer_id: Optional[str] = None
    fee_role: FeeRole = FeeRole.TAKER
    currency: str = "USD"

    @classmethod
    def from_trade(cls, trade: CompletedTrade) -> "PostTradePayload":
        return cls(**trade.model_dump())


JobPayload = Annotated[
    Union[FeeDistributionPayload, RewardDistributionPayload, ReferralUpdatePayload, PostTradePayload],
    Field(discriminator="job_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def decode_payload(job_type: JobType | str, raw: Dict[str, Any] | None) -> JobPayload:
    """Decode a stored payload into the variant owned by ``job_type``.

    Raises PayloadDecodeError when the blob does not fit; such a job can never
    succeed and must not be retried.
    """
    type_value = job_type.value if isinstance(job_type, JobType) else str(job_type)
    if not isinstance(raw, dict):
        raise PayloadDecodeError(f"payload for {type_value} is not an object")
    try:
        return _PAYLOAD_ADAPTER.validate_python({**raw, "job_type": type_value})
    except ValidationError as e:
        raise PayloadDecodeError(f"invalid {type_value} payload: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trade_id: str
    job_type: JobType
    correlation_id: str
    status: JobStatus
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    scheduled_for: datetime
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
