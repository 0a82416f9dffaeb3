from .base import ResponseBase
from .jobs import (
    CompletedTrade,
    FeeDistributionPayload,
    RewardDistributionPayload,
    ReferralUpdatePayload,
    PostTradePayload,
    JobPayload,
    JobRead,
    decode_payload,
)
from .revenue import RevenueStreamRead, RevenueInput
from .defense import ParameterChangeCreate, ParameterChangeRead

__all__ = [
    "ResponseBase",
    "CompletedTrade",
    "FeeDistributionPayload",
    "RewardDistributionPayload",
    "ReferralUpdatePayload",
    "PostTradePayload",
    "JobPayload",
    "JobRead",
    "decode_payload",
    "RevenueStreamRead",
    "RevenueInput",
    "ParameterChangeCreate",
    "ParameterChangeRead",
]
