"""
Revenue stream, ledger aggregation and on-chain delivery endpoints.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from settlement.api.deps import get_runtime
from settlement.exceptions import InvalidRevenueStream
from settlement.models.schemas.base import ResponseBase
from settlement.models.schemas.revenue import RevenueStreamRead
from settlement.runtime import SettlementRuntime
from settlement.services.revenue_recorder import resolve_stream
from settlement.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)

@router.get("/streams", response_model=ResponseBase, summary="Revenue streams with running totals")
async def list_streams(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    streams = runtime.recorder.list_streams()
    return ResponseBase(data={"streams": [RevenueStreamRead.model_validate(s).model_dump() for s in streams]})

@router.get("/heartbeat", response_model=ResponseBase, summary="Idle stream detection")
async def stream_heartbeat(
    window_minutes: int = Query(60, ge=1, le=24 * 60),
    runtime: SettlementRuntime = Depends(get_runtime),
) -> ResponseBase:
    return ResponseBase(data=runtime.recorder.stream_heartbeat(window_minutes))

@router.get("/aggregator/status", response_model=ResponseBase, summary="Ledger aggregator status")
async def aggregator_status(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    return ResponseBase(data=runtime.aggregator.status())

@router.post("/aggregator/run", response_model=ResponseBase, summary="Run ledger aggregation now")
def run_aggregator(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    result = runtime.aggregator.run()
    message = "Aggregation already running" if result["skipped"] else "Aggregation complete"
    return ResponseBase(message=message, data=result)

@router.get("/onchain/failures", response_model=ResponseBase, summary="Outstanding on-chain deliveries")
async def onchain_failures(
    stream_id: Optional[str] = Query(None, description="Stream id (0-9) or name"),
    hours: int = Query(24, ge=1, le=24 * 30),
    runtime: SettlementRuntime = Depends(get_runtime),
) -> ResponseBase:
    resolved: Optional[int] = None
    if stream_id is not None:
        try:
            resolved = int(resolve_stream(stream_id))
        except InvalidRevenueStream as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ResponseBase(data=runtime.onchain.get_failure_report(stream_id=resolved, hours=hours))

@router.get("/onchain/status", response_model=ResponseBase, summary="On-chain retry worker status")
async def onchain_status(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    return ResponseBase(data=runtime.onchain.status())
