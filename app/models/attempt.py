"""Attempt bookkeeping models for the multi-pass research pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

from app.models.prospect import ProspectField


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PassResult(BaseModel):
    """Outcome of one pass execution against one target."""

    pass_id: int
    pass_name: str
    source_id: str
    success: bool
    fields_extracted: dict[ProspectField, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    quarantined_fields: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ProcessingAttempt(BaseModel):
    """One full pipeline invocation for a target. Never mutated once built."""

    attempt_id: str = Field(default_factory=lambda: uuid4().hex)
    target_key: str
    timestamp: datetime = Field(default_factory=_utcnow)
    forced: bool = False
    requested_passes: list[int] = Field(default_factory=list)
    pass_results: list[PassResult] = Field(default_factory=list)
    successful_passes: list[int] = Field(default_factory=list)
    failed_passes: list[int] = Field(default_factory=list)
    not_attempted_passes: list[int] = Field(default_factory=list)
    next_retry_passes: list[int] = Field(default_factory=list)
    completeness: float = 0.0
    overall_confidence: float = 0.0
    qualification_score: int = 0

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def executed_passes(self) -> list[int]:
        return [result.pass_id for result in self.pass_results]

    def result_for(self, pass_id: int) -> PassResult | None:
        for result in self.pass_results:
            if result.pass_id == pass_id:
                return result
        return None


class AttemptStatus(BaseModel):
    """Retry status derived by folding a target's full attempt history."""

    target_key: str
    total_attempts: int
    last_attempt_timestamp: datetime
    successful_passes: list[int] = Field(default_factory=list)
    failed_passes: list[int] = Field(default_factory=list)
    next_retry_passes: list[int] = Field(default_factory=list)
    not_attempted_passes: list[int] = Field(default_factory=list)
    failure_counts: dict[int, int] = Field(default_factory=dict)
    last_errors: dict[int, list[str]] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def needs_retry(self) -> bool:
        return bool(self.next_retry_passes)
