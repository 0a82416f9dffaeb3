"""
FastAPI application for the settlement service.

The HTTP surface is operator-facing only: queue visibility and dead-letter
re-drive, revenue/ledger status, on-chain delivery reports, fee-parameter
governance and recent alerts. The settlement worker and the periodic jobs run
in background threads owned by the lifespan hook.
"""
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional
import time
import os
from contextlib import asynccontextmanager
from settlement.api.deps import get_db
from settlement.api.v1 import api_router
from settlement.utils import setup_logging, get_logger
from settlement.utils.log_throttle import RedisCounterStore
from settlement.utils.observability import REQUEST_ID_HEADER, ensure_request_id
from settlement.config import AGGREGATOR_SETTINGS, LOG_THROTTLE_SETTINGS, WORKER_SETTINGS
from settlement.runtime import SettlementRuntime, build_runtime
import settlement.database as database

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "settlement-ledger"
SERVICE_VERSION = "1.0.0"


def check_redis_health() -> bool:
    """Redis backs the shared log-throttle counters when enabled."""
    return RedisCounterStore().health_check()


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Optional[SettlementRuntime] = None
    logger.info("Settlement service starting", version=SERVICE_VERSION)
    try:
        database.Base.metadata.create_all(bind=database.engine)
        runtime = build_runtime(database.SessionLocal)
        app.state.settlement = runtime
        runtime.start()
        logger.info("Settlement runtime started", runners=[r.name for r in runtime.runners])
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Settlement service failed to start", error=str(e), exc_info=True)
        raise
    finally:
        if runtime is not None:
            runtime.stop(timeout=float(WORKER_SETTINGS["shutdown_timeout_seconds"]))
        app.state.settlement = None
        logger.info("Settlement service stopped")


app = FastAPI(
    title="Settlement Ledger Service",
    description="""
    Post-trade settlement and revenue ledger.

    * **Post-trade jobs**: durable queue, retries with backoff, dead letter and re-drive
    * **Revenue events**: recorded once per source reference, split between holders and reserve
    * **Ledger**: per-user, per-stream, per-day totals folded from the event log
    * **On-chain delivery**: retried with backoff behind a circuit breaker
    * **Revenue defense**: concentration, negative fee flows, missing events, timelocked fee changes
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a request id and log each operator call with its duration."""
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    logger.info(
        "Operator request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=elapsed_ms,
        client=request.client.host if request.client else None,
        request_id=request_id
    )
    return response


def _error_response(request: Request, status_code: int, body: Dict[str, Any]) -> JSONResponse:
    content = {"success": False, "request_id": getattr(request.state, "request_id", "unknown")}
    content.update(body)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", path=request.url.path, errors=exc.errors())
    return _error_response(request, 422, {"message": "Request validation failed", "details": exc.errors()})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Dict details (e.g. fee-cap violations) are merged into the body."""
    logger.warning("HTTP exception", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    body = exc.detail if isinstance(exc.detail, dict) else {"message": exc.detail}
    return _error_response(request, exc.status_code, body)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True
    )
    return _error_response(request, 500, {"message": "Internal server error"})


@app.get("/health", tags=["health"], summary="Liveness")
async def health_check():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
    }


@app.get("/health/detailed", tags=["health"], summary="Readiness with component checks")
def detailed_health_check(request: Request, db: Session = Depends(get_db)):
    """
    Database, optional Redis, post-trade queue and ledger aggregator.

    Any component that is not healthy degrades the overall status; the
    endpoint itself still answers 200 so operators can read the details.
    """
    checks: Dict[str, Any] = {}
    degraded = False

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError as e:
        checks["database"] = f"unhealthy: {e}"
        degraded = True

    if bool(LOG_THROTTLE_SETTINGS.get("use_redis", False)):
        redis_ok = check_redis_health()
        checks["redis"] = "healthy" if redis_ok else "unavailable"
        degraded = degraded or not redis_ok

    runtime: Optional[SettlementRuntime] = getattr(request.app.state, "settlement", None)
    if runtime is not None and not degraded:
        stats = runtime.store.get_stats()
        checks["queue"] = {key: stats[key] for key in ("queue_depth", "dead_letter", "health")}
        if AGGREGATOR_SETTINGS["enabled"]:
            aggregator_ok = runtime.aggregator.status()["healthy"]
            checks["aggregator"] = "healthy" if aggregator_ok else "stale"
        else:
            aggregator_ok = True
            checks["aggregator"] = "disabled"
        degraded = stats["health"] != "healthy" or not aggregator_ok

    return {
        "status": "degraded" if degraded else "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Settlement Ledger API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "settlement.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "false").lower() == "true",
        log_level="info",
        access_log=True
    )
