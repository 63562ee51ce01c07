"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Liveness never
touches dependencies; readiness verifies the database answers.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.dealpulse.config import get_settings
from src.dealpulse.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check."""
    settings = get_settings()
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "hubspot_configured": settings.hubspot_configured(),
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 if the database answers, 503 otherwise."""
    checks: dict = {"database": "ok"}
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
