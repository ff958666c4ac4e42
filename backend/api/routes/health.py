"""Health check endpoints."""

import time
from typing import Any

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import get_settings
from db import database

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])

_start_time = time.monotonic()


@router.get("/health", response_model=dict[str, Any])
async def health_check():
    """
    Liveness plus a database ping. Returns 503 when the database is
    unreachable.
    """
    settings = get_settings()
    checks: dict[str, str] = {}
    try:
        async with database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.warning("Health check: database unavailable", error=str(e))
        checks["database"] = "unavailable"

    healthy = all(value == "ok" for value in checks.values())
    body = {
        "status": "ok" if healthy else "degraded",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
