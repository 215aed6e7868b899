"""Alembic environment for the processing-attempt log tables."""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine.url import make_url
from sqlmodel import SQLModel

from app.config import settings
from app.models import attempt_record  # noqa: F401 - registers processing_attempts
from app.services.prospecting.attempt_store import coerce_sync_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("prospect_pipeline.alembic")
target_metadata = SQLModel.metadata


def _attempt_database() -> tuple[str, dict]:
    """Pick the attempt-store database: ``-x database_url=``, env, ini, then settings."""
    overrides = context.get_x_argument(as_dictionary=True)
    candidates = (
        ("-x database_url", overrides.get("database_url")),
        ("DATABASE_URL", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("settings", settings.database_url),
    )
    for source, raw in candidates:
        if not raw:
            continue
        url, connect_args, _ = coerce_sync_database_url(make_url(raw))
        rendered = make_url(url).render_as_string(hide_password=True)
        logger.info("prospecting.migration.database", extra={"source": source, "url": rendered})
        config.print_stdout(f"[Alembic] attempt store database ({source}): {rendered}")
        return url, connect_args
    raise RuntimeError("Set DATABASE_URL (or -x database_url=...) to migrate the attempt store.")


def run_migrations_offline() -> None:
    url, _ = _attempt_database()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url, connect_args = _attempt_database()
    engine = create_engine(url, poolclass=pool.NullPool, connect_args=connect_args)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
