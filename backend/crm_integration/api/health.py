"""
Health check endpoints for monitoring and load balancers.

Provides:
- /up, /health: Basic liveness check
- /ready: Readiness check (database reachable, task backlog)
"""

import logging
from typing import Dict, Any
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from ..core import database
from ..models.task import Task, TaskState

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/up", status_code=status.HTTP_200_OK)
@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint.

    Returns 200 if the application is running. Kept lightweight so load
    balancers can poll it freely.
    """
    return {
        "status": "healthy",
        "service": "linq-crm-integration",
        "version": "1.0.0"
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check() -> Any:
    """
    Readiness check endpoint.

    Checks database connectivity and reports how many sync tasks are
    waiting, so operators can spot a stalled worker.
    """
    checks: Dict[str, Any] = {
        "database": "unknown",
        "overall": "unknown"
    }

    try:
        with Session(database.engine) as db:
            db.execute(text("SELECT 1"))
            checks["database"] = "healthy"
            checks["pending_tasks"] = db.scalar(
                select(func.count(Task.id)).where(Task.state == TaskState.PENDING.value)
            ) or 0
    except Exception as e:
        checks["database"] = "unhealthy"
        logger.error(f"Database readiness check failed: {e}")

    if checks["database"] == "healthy":
        checks["overall"] = "ready"
        return checks

    checks["overall"] = "not ready"
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=checks
    )
