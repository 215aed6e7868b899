from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.config import settings
from app.services.prospecting.attempt_store import attempt_store_backend
from app.services.prospecting.errors import ProspectingError
from app.services.prospecting.service import ProspectPipelineService, get_pipeline_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
def readiness_check(service: ProspectPipelineService = Depends(get_pipeline_service)):
    """Readiness check that confirms the attempt store can be read."""
    try:
        tracked = len(service.retry_candidates())
    except ProspectingError as exc:
        logger.error("health.attempt_store_unavailable", extra={"code": exc.code})
        raise HTTPException(status_code=503, detail="Attempt store is not available") from exc

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "attempt_store": attempt_store_backend(),
        "pending_retries": tracked,
    }
