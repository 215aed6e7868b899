"""Append-only persistence for processing attempts."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import Settings, settings
from app.models.attempt import AttemptStatus, ProcessingAttempt
from app.models.attempt_record import ATTEMPT_SCHEMA_VERSION, ProcessingAttemptRecord
from app.models.prospect import Target
from app.observability.metrics import metrics
from app.services.prospecting.errors import AttemptPersistenceError

logger = logging.getLogger(__name__)

TargetRef = Target | str

_SAFE_KEY = re.compile(r"[a-z0-9][a-z0-9-]*")


class AttemptStore(Protocol):
    """Persistence contract for the per-target attempt history."""

    def record_attempt(self, target: Target, attempt: ProcessingAttempt) -> None:
        ...

    def get_history(self, target: TargetRef) -> list[ProcessingAttempt]:
        ...

    def get_status(
        self, target: TargetRef, known_pass_ids: Iterable[int] | None = None
    ) -> AttemptStatus | None:
        ...

    def list_targets(self) -> list[Target]:
        ...


def target_key(target: TargetRef) -> str:
    return target if isinstance(target, str) else target.key


def derive_status(
    key: str,
    history: Sequence[ProcessingAttempt],
    known_pass_ids: Iterable[int] | None = None,
) -> AttemptStatus | None:
    """Fold a full attempt history into the current retry status.

    * successful = union of every attempt's successes (monotonic);
    * failed = the latest attempt's failures that never succeeded;
    * next_retry = failed plus known pass ids absent from every attempt. A pass
      skipped by the early stop counts as present: it waits for a full run
      instead of a retry.
    """
    if not history:
        return None

    successful: set[int] = set()
    present: set[int] = set()
    failure_counts: dict[int, int] = {}
    last_errors: dict[int, list[str]] = {}
    for attempt in history:
        successful.update(attempt.successful_passes)
        present.update(attempt.not_attempted_passes)
        for result in attempt.pass_results:
            present.add(result.pass_id)
            if result.success:
                successful.add(result.pass_id)
            else:
                failure_counts[result.pass_id] = failure_counts.get(result.pass_id, 0) + 1
                last_errors[result.pass_id] = list(result.errors)

    latest = history[-1]
    failed = {
        result.pass_id for result in latest.pass_results if not result.success
    } - successful
    not_attempted = set(latest.not_attempted_passes) - successful
    never_attempted = set(known_pass_ids or ()) - present - successful

    return AttemptStatus(
        target_key=key,
        total_attempts=len(history),
        last_attempt_timestamp=latest.timestamp,
        successful_passes=sorted(successful),
        failed_passes=sorted(failed),
        next_retry_passes=sorted(failed | never_attempted),
        not_attempted_passes=sorted(not_attempted),
        failure_counts={pass_id: failure_counts[pass_id] for pass_id in sorted(failure_counts)},
        last_errors={pass_id: last_errors[pass_id] for pass_id in sorted(last_errors)},
    )


def retry_candidates(
    store: AttemptStore, known_pass_ids: Iterable[int] | None = None
) -> list[AttemptStatus]:
    """Every recorded target whose status still lists passes to retry."""
    known = list(known_pass_ids or ())
    candidates: list[AttemptStatus] = []
    for target in store.list_targets():
        status = store.get_status(target, known)
        if status is not None and status.needs_retry:
            candidates.append(status)
    return sorted(candidates, key=lambda status: status.target_key)


class InMemoryAttemptStore(AttemptStore):
    """Thread-safe, process-local store; opt in with an empty ``attempt_log_dir``."""

    def __init__(self) -> None:
        self._history: dict[str, list[ProcessingAttempt]] = {}
        self._targets: dict[str, Target] = {}
        self._lock = Lock()

    def record_attempt(self, target: Target, attempt: ProcessingAttempt) -> None:
        with self._lock:
            self._history.setdefault(target.key, []).append(attempt)
            self._targets.setdefault(target.key, target)
        metrics.increment("pipeline.attempt.persisted", tags={"store": "memory"})
        logger.info(
            "prospecting.attempt.persisted",
            extra={"target_key": target.key, "attempt_id": attempt.attempt_id, "backend": "memory"},
        )

    def get_history(self, target: TargetRef) -> list[ProcessingAttempt]:
        with self._lock:
            return list(self._history.get(target_key(target), []))

    def get_status(
        self, target: TargetRef, known_pass_ids: Iterable[int] | None = None
    ) -> AttemptStatus | None:
        key = target_key(target)
        return derive_status(key, self.get_history(key), known_pass_ids)

    def list_targets(self) -> list[Target]:
        with self._lock:
            return [self._targets[key] for key in sorted(self._targets)]


class JsonlAttemptStore(AttemptStore):
    """One ``<target_key>.jsonl`` file per target, one attempt per line."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def record_attempt(self, target: Target, attempt: ProcessingAttempt) -> None:
        line = json.dumps(
            {
                "schema_version": ATTEMPT_SCHEMA_VERSION,
                "target_key": target.key,
                "target": target.model_dump(mode="json"),
                "attempt": attempt.model_dump(mode="json"),
            },
            sort_keys=True,
        )
        path = self._path_for(target.key)
        try:
            with self._lock_for(target.key):
                self._drop_partial_tail(path, target.key)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
        except OSError as exc:
            logger.exception(
                "prospecting.attempt.persist_failed",
                extra={"target_key": target.key, "path": str(path), "backend": "jsonl"},
            )
            raise AttemptPersistenceError(
                f"Failed to append attempt for {target.key}: {exc}", code="E_ATTEMPT_WRITE"
            ) from exc
        metrics.increment("pipeline.attempt.persisted", tags={"store": "jsonl"})
        logger.info(
            "prospecting.attempt.persisted",
            extra={"target_key": target.key, "attempt_id": attempt.attempt_id, "backend": "jsonl"},
        )

    def get_history(self, target: TargetRef) -> list[ProcessingAttempt]:
        key = target_key(target)
        return [attempt for _, attempt in self._read(key)]

    def get_status(
        self, target: TargetRef, known_pass_ids: Iterable[int] | None = None
    ) -> AttemptStatus | None:
        key = target_key(target)
        return derive_status(key, self.get_history(key), known_pass_ids)

    def list_targets(self) -> list[Target]:
        targets: list[Target] = []
        for path in sorted(self._directory.glob("*.jsonl")):
            records = self._read(path.stem)
            if records:
                targets.append(records[-1][0])
        return targets

    def _read(self, key: str) -> list[tuple[Target, ProcessingAttempt]]:
        if not _SAFE_KEY.fullmatch(key):
            return []
        path = self._path_for(key)
        if not path.exists():
            return []
        with self._lock_for(key):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except OSError as exc:
                raise AttemptPersistenceError(
                    f"Failed to read attempt log {path}: {exc}", code="E_ATTEMPT_READ"
                ) from exc

        records: list[tuple[Target, ProcessingAttempt]] = []
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                records.append(
                    (
                        Target.model_validate(payload["target"]),
                        ProcessingAttempt.model_validate(payload["attempt"]),
                    )
                )
            except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
                if index == len(lines) - 1:
                    # Partial write from an interrupted append.
                    logger.warning(
                        "prospecting.attempt.truncated_line",
                        extra={"target_key": key, "path": str(path), "line": index + 1},
                    )
                    continue
                raise AttemptPersistenceError(
                    f"Corrupt attempt log {path} at line {index + 1}", code="E_ATTEMPT_CORRUPT"
                ) from exc
        return records

    def _drop_partial_tail(self, path: Path, key: str) -> None:
        """Cut an unterminated last line so the next append starts on a fresh line."""
        if not path.exists():
            return
        data = path.read_bytes()
        if not data or data.endswith(b"\n"):
            return
        keep = data.rfind(b"\n") + 1
        with path.open("r+b") as handle:
            handle.truncate(keep)
            handle.flush()
            os.fsync(handle.fileno())
        logger.warning(
            "prospecting.attempt.partial_tail_dropped",
            extra={"target_key": key, "path": str(path), "bytes": len(data) - keep},
        )

    def _path_for(self, key: str) -> Path:
        return self._directory / f"{key}.jsonl"

    def _lock_for(self, key: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock


class SqlAttemptStore(AttemptStore):
    """SQLModel-backed store writing one row per attempt to ``processing_attempts``."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlAttemptStore.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": False,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine, tables=[ProcessingAttemptRecord.__table__])
        self._metrics_tags = {"store": "sqlite" if is_sqlite else "postgres"}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def record_attempt(self, target: Target, attempt: ProcessingAttempt) -> None:
        row = ProcessingAttemptRecord.from_attempt(target, attempt)
        try:
            with self._session() as session:
                session.add(row)
                session.commit()
        except IntegrityError as exc:
            logger.warning(
                "prospecting.attempt.duplicate",
                extra={"target_key": target.key, "attempt_id": attempt.attempt_id},
            )
            raise AttemptPersistenceError(
                f"Attempt {attempt.attempt_id} already recorded.", code="E_ATTEMPT_DUPLICATE"
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "prospecting.attempt.persist_failed",
                extra={"target_key": target.key, "backend": self._metrics_tags["store"]},
            )
            raise AttemptPersistenceError(
                "Failed to persist processing attempt.", code="E_ATTEMPT_WRITE"
            ) from exc
        metrics.increment("pipeline.attempt.persisted", tags=self._metrics_tags)
        logger.info(
            "prospecting.attempt.persisted",
            extra={
                "target_key": target.key,
                "attempt_id": attempt.attempt_id,
                "backend": self._metrics_tags["store"],
            },
        )

    def get_history(self, target: TargetRef) -> list[ProcessingAttempt]:
        key = target_key(target)
        try:
            with self._session() as session:
                statement = (
                    select(ProcessingAttemptRecord)
                    .where(ProcessingAttemptRecord.target_key == key)
                    .order_by(ProcessingAttemptRecord.id)
                )
                rows = session.exec(statement).all()
                return [row.to_attempt() for row in rows]
        except SQLAlchemyError as exc:  # pragma: no cover - defensive guard
            logger.exception("prospecting.attempt.read_failed", extra={"target_key": key})
            raise AttemptPersistenceError(
                "Failed to load attempt history.", code="E_ATTEMPT_READ"
            ) from exc

    def get_status(
        self, target: TargetRef, known_pass_ids: Iterable[int] | None = None
    ) -> AttemptStatus | None:
        key = target_key(target)
        return derive_status(key, self.get_history(key), known_pass_ids)

    def list_targets(self) -> list[Target]:
        try:
            with self._session() as session:
                statement = select(ProcessingAttemptRecord).order_by(ProcessingAttemptRecord.id)
                latest: dict[str, Target] = {}
                for row in session.exec(statement).all():
                    latest[row.target_key] = row.to_target()
        except SQLAlchemyError as exc:  # pragma: no cover - defensive guard
            logger.exception("prospecting.attempt.read_failed", extra={"backend": "database"})
            raise AttemptPersistenceError(
                "Failed to list targets.", code="E_ATTEMPT_READ"
            ) from exc
        return [latest[key] for key in sorted(latest)]

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = "sqlite"
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql") and "sslmode" not in query:
        if removed_ssl or "supabase.co" in host:
            connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def build_attempt_store(config: Settings | None = None) -> AttemptStore:
    """Pick the SQL store when DATABASE_URL is set, then the JSONL log, then memory."""
    config = config or settings
    if config.database_url:
        try:
            store = SqlAttemptStore(
                config.database_url,
                pool_min_size=config.db_pool_min_size,
                pool_max_size=config.db_pool_max_size,
            )
        except Exception:
            logger.exception("prospecting.attempt_store.init_failed", extra={"backend": "database"})
            raise
        logger.info("prospecting.attempt_store.initialized", extra={"backend": "database"})
        return store
    if config.attempt_log_dir:
        logger.info(
            "prospecting.attempt_store.initialized",
            extra={"backend": "jsonl", "directory": config.attempt_log_dir},
        )
        return JsonlAttemptStore(config.attempt_log_dir)
    logger.info("prospecting.attempt_store.initialized", extra={"backend": "memory"})
    return InMemoryAttemptStore()


def attempt_store_backend(config: Settings | None = None) -> str:
    """Name of the backend ``build_attempt_store`` would pick for ``config``."""
    config = config or settings
    if config.database_url:
        return "sql"
    if config.attempt_log_dir:
        return "jsonl"
    return "memory"
