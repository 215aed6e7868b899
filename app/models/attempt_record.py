"""SQLModel mapping for the persisted processing-attempt log."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from app.models.attempt import ProcessingAttempt
from app.models.prospect import Target

ATTEMPT_SCHEMA_VERSION = 1

JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


class ProcessingAttemptRecord(SQLModel, table=True):
    """One appended row per pipeline invocation. Rows are never updated."""

    __tablename__ = "processing_attempts"
    __table_args__ = (
        sa.UniqueConstraint("attempt_id", name="uq_processing_attempts_attempt_id"),
        sa.Index("ix_processing_attempts_target_key", "target_key"),
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    attempt_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    target_key: str = Field(sa_column=Column(String(length=255), nullable=False))
    schema_version: int = Field(
        default=ATTEMPT_SCHEMA_VERSION, sa_column=Column(Integer, nullable=False)
    )
    target: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    attempt: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    attempted_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
        ),
    )

    @classmethod
    def from_attempt(cls, target: Target, attempt: ProcessingAttempt) -> ProcessingAttemptRecord:
        """Convert a domain attempt into a persistence row."""
        return cls(
            attempt_id=attempt.attempt_id,
            target_key=attempt.target_key,
            schema_version=ATTEMPT_SCHEMA_VERSION,
            target=target.model_dump(mode="json"),
            attempt=attempt.model_dump(mode="json"),
            attempted_at=attempt.timestamp,
        )

    def to_attempt(self) -> ProcessingAttempt:
        """Hydrate the domain attempt from the stored JSON payload."""
        return ProcessingAttempt.model_validate(self.attempt)

    def to_target(self) -> Target:
        return Target.model_validate(self.target)
