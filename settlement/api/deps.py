"""
FastAPI dependencies: database session, settlement runtime, paging.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

import settlement.database as database
from settlement.runtime import SettlementRuntime
from settlement.utils import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; rolled back if the handler raises."""
    session = database.SessionLocal()
    try:
        yield session
    except Exception as e:
        logger.error("Rolling back request session", error=str(e), exc_info=True)
        session.rollback()
        raise
    finally:
        session.close()


def get_runtime(request: Request) -> SettlementRuntime:
    """Settlement components created in the application lifespan."""
    runtime = getattr(request.app.state, "settlement", None)
    if runtime is None:
        logger.error("Settlement runtime requested before startup", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Settlement runtime not initialized"
        )
    return runtime


def get_pagination_params(limit: int = 50, offset: int = 0) -> dict:
    """Bounded ``limit``/``offset`` for list endpoints (400 when out of range)."""
    problems = []
    if not 1 <= limit <= MAX_PAGE_SIZE:
        problems.append(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        problems.append("offset must be >= 0")
    if problems:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="; ".join(problems))
    return {"limit": limit, "offset": offset}
