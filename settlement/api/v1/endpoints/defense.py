"""
Revenue defense endpoints: anomaly checks and timelocked fee-parameter changes.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from settlement.api.deps import get_runtime
from settlement.exceptions import FeeParameterViolation, UnknownParameterChange
from settlement.models.schemas.base import ResponseBase
from settlement.models.schemas.defense import ParameterChangeCreate, ParameterChangeRead
from settlement.runtime import SettlementRuntime
from settlement.utils import get_logger, log_business_event

router = APIRouter()
logger = get_logger(__name__)

@router.get("/checks", response_model=ResponseBase, summary="Run defense checks now")
def run_checks(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    report = runtime.defense.run_defense_checks()
    return ResponseBase(data=report)

@router.get("/parameters", response_model=ResponseBase, summary="Active fee parameters and hard caps")
async def get_parameters(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    return ResponseBase(data=runtime.defense.current_parameters())

@router.get("/parameter-changes", response_model=ResponseBase, summary="Recent parameter changes")
async def list_parameter_changes(
    hours: int = Query(24, ge=1, le=24 * 30),
    runtime: SettlementRuntime = Depends(get_runtime),
) -> ResponseBase:
    changes = runtime.defense.recent_parameter_changes(hours)
    return ResponseBase(data={"changes": [ParameterChangeRead(**c.to_dict()).model_dump(mode="json") for c in changes]})

@router.post(
    "/parameter-changes",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Request a timelocked parameter change"
)
async def request_parameter_change(
    body: ParameterChangeCreate,
    request: Request,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> ResponseBase:
    request_id = getattr(request.state, "request_id", None)
    try:
        change = runtime.defense.request_parameter_change(body.key, body.new_value, body.requested_by)
    except FeeParameterViolation as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "violations": e.violations}
        )
    log_business_event(
        "parameter_change_requested",
        {"change_id": change.id, "key": change.key, "new_value": change.new_value, "requested_by": change.requested_by},
        request_id=request_id,
    )
    return ResponseBase(
        message="Parameter change staged behind timelock",
        data=ParameterChangeRead(**change.to_dict()).model_dump(mode="json"),
    )

@router.post("/parameter-changes/execute", response_model=ResponseBase, summary="Apply due parameter changes")
async def execute_parameter_changes(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    processed = runtime.defense.execute_pending_changes()
    return ResponseBase(data={"processed": [ParameterChangeRead(**c.to_dict()).model_dump(mode="json") for c in processed]})

@router.delete("/parameter-changes/{change_id}", response_model=ResponseBase, summary="Cancel a pending change")
async def cancel_parameter_change(change_id: str, runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    try:
        change = runtime.defense.cancel_parameter_change(change_id)
    except UnknownParameterChange:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending parameter change {change_id}"
        )
    return ResponseBase(message="Parameter change cancelled", data=ParameterChangeRead(**change.to_dict()).model_dump(mode="json"))
