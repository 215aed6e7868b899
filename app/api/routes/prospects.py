"""API endpoints for running and inspecting prospect research pipelines."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

from app.models.attempt import AttemptStatus, ProcessingAttempt
from app.models.prospect import ProspectRecord, Target
from app.services.prospecting.errors import ProspectingError
from app.services.prospecting.service import (
    ProspectPipelineService,
    RunMode,
    get_pipeline_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ProspectRunRequest(BaseModel):
    """Request payload for researching a single business."""

    name: str = Field(..., min_length=1)
    city: str | None = None
    state: str | None = None
    mode: RunMode = Field(default=RunMode.PROCESS, description="process, retry or force")
    passes: list[int] | None = Field(
        default=None,
        description="Run exactly these pass ids (process mode only).",
    )

    model_config = ConfigDict(extra="forbid")


class ProspectRunResponse(BaseModel):
    target_key: str
    ran: bool
    attempt: ProcessingAttempt | None = None
    record: ProspectRecord | None = None


@router.post("/prospects", response_model=ProspectRunResponse)
def run_prospect(
    payload: ProspectRunRequest,
    service: ProspectPipelineService = Depends(get_pipeline_service),
) -> ProspectRunResponse:
    """Run the pipeline for a business and return the attempt and updated record."""
    target = Target(name=payload.name, city=payload.city, state=payload.state)
    if payload.passes is not None and payload.mode is not RunMode.PROCESS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="passes can only be combined with mode=process",
        )
    try:
        if payload.mode is RunMode.PROCESS:
            outcome = service.process(target, only_passes=payload.passes)
        else:
            outcome = service.run(target, payload.mode)
    except ProspectingError as exc:
        logger.error("prospecting.api_error", extra={"target_key": target.key, "code": exc.code})
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc
    if outcome is None:
        return ProspectRunResponse(target_key=target.key, ran=False, record=service.record(target))
    return ProspectRunResponse(
        target_key=target.key, ran=True, attempt=outcome.attempt, record=outcome.record
    )


@router.get("/prospects/{target_key}", response_model=ProspectRecord)
def get_prospect(
    target_key: str,
    service: ProspectPipelineService = Depends(get_pipeline_service),
) -> ProspectRecord:
    """Fetch the latest fused record for a business."""
    record = service.record(target_key)
    if record is None:
        raise HTTPException(status_code=404, detail="Prospect not found.")
    return record


@router.get("/prospects/{target_key}/status", response_model=AttemptStatus)
def get_prospect_status(
    target_key: str,
    service: ProspectPipelineService = Depends(get_pipeline_service),
) -> AttemptStatus:
    """Fetch retry status derived from the business's attempt history."""
    result = service.status(target_key)
    if result is None:
        raise HTTPException(status_code=404, detail="No attempts recorded for prospect.")
    return result


def _map_error_code(code: str) -> int:
    if code == "E_UNKNOWN_PASS":
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if code.startswith("E_ATTEMPT"):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR
