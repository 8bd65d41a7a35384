from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.dependencies import get_settings
from app.config import Settings
from app.core.database import check_database_health

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check(settings: Settings = Depends(get_settings)):
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check(request: Request, settings: Settings = Depends(get_settings)):
    """Readiness check endpoint that includes database connectivity."""
    engine = request.app.state.db_engine
    if not await check_database_health(engine):
        raise HTTPException(status_code=503, detail="Database is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if engine is not None else "not configured",
        "payments": "configured" if request.app.state.gateway is not None else "not configured",
    }
