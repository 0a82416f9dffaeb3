"""
Post-trade job queue endpoints (operator visibility and dead-letter re-drive).
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from settlement.api.deps import get_pagination_params, get_runtime
from settlement.models.db.enums import JobStatus
from settlement.models.schemas.base import ResponseBase
from settlement.models.schemas.jobs import JobRead
from settlement.runtime import SettlementRuntime
from settlement.utils import get_logger, log_business_event

router = APIRouter()
logger = get_logger(__name__)

@router.get("/stats", response_model=ResponseBase, summary="Queue depth by status")
async def queue_stats(runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    stats = runtime.store.get_stats()
    stats["worker"] = {"running": runtime.worker.running, **runtime.worker.stats}
    return ResponseBase(data=stats)

@router.get("/dead-letter", response_model=ResponseBase, summary="List dead-lettered jobs")
async def list_dead_letter(
    pagination: dict = Depends(get_pagination_params),
    runtime: SettlementRuntime = Depends(get_runtime),
) -> ResponseBase:
    jobs = runtime.store.list_dead_letter(limit=pagination["limit"], offset=pagination["offset"])
    return ResponseBase(
        data={
            "jobs": [JobRead.model_validate(j).model_dump(mode="json") for j in jobs],
            "count": len(jobs),
            **pagination,
        }
    )

@router.get("/jobs/{job_id}", response_model=ResponseBase, summary="Get a single job")
async def get_job(job_id: int, runtime: SettlementRuntime = Depends(get_runtime)) -> ResponseBase:
    job = runtime.store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return ResponseBase(data=JobRead.model_validate(job).model_dump(mode="json"))

@router.post("/dead-letter/{job_id}/requeue", response_model=ResponseBase, summary="Re-drive a dead-lettered job")
async def requeue_job(
    job_id: int,
    request: Request,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> ResponseBase:
    request_id = getattr(request.state, "request_id", None)
    job = runtime.store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    if job.status != JobStatus.DEAD_LETTER or not runtime.store.requeue_dead_letter(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is not in dead letter"
        )
    log_business_event(
        "job_requeued",
        {"job_id": job_id, "job_type": job.job_type.value},
        correlation_id=job.correlation_id,
        request_id=request_id,
    )
    return ResponseBase(message=f"Job {job_id} requeued", data={"job_id": job_id})
