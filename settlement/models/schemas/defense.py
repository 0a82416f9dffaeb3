"""
Pydantic schemas for fee-parameter governance.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ParameterChangeCreate(BaseModel):
    key: str = Field(description="maker_rebate_bps | taker_fee_bps | commission_bps | withdrawal_fee_pct")
    new_value: float = Field(ge=0)
    requested_by: str = Field(min_length=1)


class ParameterChangeRead(BaseModel):
    id: str
    key: str
    old_value: Optional[float] = None
    new_value: float
    requested_by: str
    requested_at: datetime
    execute_at: datetime
    status: str
    executed_at: Optional[datetime] = None
    error: Optional[str] = None
