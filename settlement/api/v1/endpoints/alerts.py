"""
Operator alert endpoints.
"""
from typing import Optional
from fastapi import APIRouter, Query

from settlement.models.db.enums import AlertCategory, AlertSeverity
from settlement.models.schemas.base import ResponseBase
from settlement.services.alerting import recent_alerts

router = APIRouter()

@router.get("/", response_model=ResponseBase, summary="Recent operator alerts")
async def get_alerts(
    category: Optional[AlertCategory] = Query(None),
    severity: Optional[AlertSeverity] = Query(None),
    limit: int = Query(50, ge=1, le=500),
) -> ResponseBase:
    """Newest first."""
    alerts = recent_alerts(limit, category=category, severity=severity)
    return ResponseBase(data={"alerts": [a.to_dict() for a in alerts], "count": len(alerts)})
