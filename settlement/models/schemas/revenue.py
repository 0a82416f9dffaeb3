"""
Pydantic schemas for revenue events and streams.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class RevenueInput(BaseModel):
    """One item of a batch recording request."""
    stream: int | str = Field(description="Stream id (0-9) or name")
    source_ref_id: str
    amount: float
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    currency: Optional[str] = None


class RevenueStreamRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    collected: float
    distributed: float
    event_count: int
    target_monthly: Optional[float] = None
    currency: str
    is_active: bool
