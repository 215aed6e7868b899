"""Create processing_attempts table for the append-only attempt log.

One row per pipeline invocation; status is always derived by folding a
target's rows in insertion order, so rows are never updated.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "4b2e9c1f7a10"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "processing_attempts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("attempt_id", sa.String(length=64), nullable=False),
        sa.Column("target_key", sa.String(length=255), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("target", JSON_TYPE, nullable=False),
        sa.Column("attempt", JSON_TYPE, nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_processing_attempts"),
        sa.UniqueConstraint("attempt_id", name="uq_processing_attempts_attempt_id"),
    )
    op.create_index(
        "ix_processing_attempts_target_key",
        "processing_attempts",
        ["target_key"],
        unique=False,
    )
    logger.info("prospecting.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_processing_attempts_target_key", table_name="processing_attempts")
    op.drop_table("processing_attempts")
