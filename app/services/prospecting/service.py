"""Command surface over the pass pipeline: process, retry, status, force."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from threading import Lock

from app.config import Settings, settings
from app.models.attempt import AttemptStatus
from app.models.prospect import ProspectRecord, Target
from app.observability.metrics import metrics
from app.services.prospecting.attempt_store import (
    AttemptStore,
    build_attempt_store,
    retry_candidates,
    target_key,
)
from app.services.prospecting.coordinator import PassPipelineCoordinator, PipelineOutcome
from app.services.prospecting.passes import PassSpec, SourceAdapter, default_pass_specs
from app.services.prospecting.qualification import QualificationScorer, load_rubric
from app.services.prospecting.rate_limiter import RateLimiter
from pipelines.prospect.fixture_sources import build_source_adapters

logger = logging.getLogger(__name__)


class RunMode(str, Enum):
    PROCESS = "process"
    RETRY = "retry"
    FORCE = "force"


class ProspectPipelineService:
    """Serializes runs per target and keeps the latest record for each one."""

    def __init__(
        self,
        coordinator: PassPipelineCoordinator,
        pass_specs: Sequence[PassSpec],
        *,
        config: Settings | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._store = coordinator.attempt_store
        self._pass_specs = list(pass_specs)
        self._config = config or settings
        self._records: dict[str, ProspectRecord] = {}
        self._target_locks: dict[str, Lock] = {}
        self._registry_lock = Lock()

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        *,
        adapters: Mapping[str, SourceAdapter] | None = None,
        attempt_store: AttemptStore | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> ProspectPipelineService:
        config = config or settings
        coordinator = PassPipelineCoordinator(
            rate_limiter or RateLimiter.from_settings(config),
            attempt_store or build_attempt_store(config),
            QualificationScorer(load_rubric(config.qualification_rubric_path)),
            config=config,
        )
        specs = default_pass_specs(
            adapters if adapters is not None else build_source_adapters(config),
            timeout=config.pipeline_default_timeout_seconds,
        )
        return cls(coordinator, specs, config=config)

    @property
    def known_pass_ids(self) -> list[int]:
        return sorted(spec.id for spec in self._pass_specs)

    def process(self, target: Target, *, only_passes: Iterable[int] | None = None) -> PipelineOutcome:
        """Run every pass that has not yet succeeded (or exactly ``only_passes``)."""
        return self._run(target, RunMode.PROCESS, only_passes=only_passes)

    def retry(self, target: Target) -> PipelineOutcome | None:
        """Re-run the latest attempt's ``next_retry_passes``; None when nothing is due."""
        return self._run(target, RunMode.RETRY)

    def force_reprocess(self, target: Target) -> PipelineOutcome:
        """Run every declared pass, ignoring earlier successes."""
        return self._run(target, RunMode.FORCE)

    def run(self, target: Target, mode: RunMode | str) -> PipelineOutcome | None:
        return self._run(target, RunMode(mode))

    def status(self, target: Target | str) -> AttemptStatus | None:
        return self._store.get_status(target, self.known_pass_ids)

    def record(self, target: Target | str) -> ProspectRecord | None:
        """Latest record for a target, rebuilt from its history when not cached."""
        key = target_key(target)
        cached = self._records.get(key)
        if cached is not None:
            return cached
        resolved_target = target if isinstance(target, Target) else self.find_target(key)
        if resolved_target is None:
            return None
        with self._lock_for(key):
            record = self._coordinator.rebuild_record(resolved_target)
            if record is not None:
                self._records[key] = record
        return record

    def find_target(self, key: str) -> Target | None:
        for target in self._store.list_targets():
            if target.key == key:
                return target
        return None

    def retry_candidates(self) -> list[AttemptStatus]:
        return retry_candidates(self._store, self.known_pass_ids)

    def retry_all(self, *, max_workers: int | None = None) -> list[PipelineOutcome]:
        """Retry every recorded target whose status lists passes to retry."""
        due = {status.target_key for status in self.retry_candidates()}
        targets = [target for target in self._store.list_targets() if target.key in due]
        logger.info("prospecting.retry_all.started", extra={"targets": len(targets)})
        outcomes = self.process_many(targets, mode=RunMode.RETRY, max_workers=max_workers)
        return [outcome for outcome in outcomes if outcome is not None]

    def process_many(
        self,
        targets: Sequence[Target],
        *,
        mode: RunMode | str = RunMode.PROCESS,
        max_workers: int | None = None,
    ) -> list[PipelineOutcome | None]:
        """Run several targets concurrently; results keep the input order."""
        if not targets:
            return []
        run_mode = RunMode(mode)
        workers = max(1, min(max_workers or self._config.pipeline_max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prospect-target") as pool:
            return list(pool.map(lambda target: self._run(target, run_mode), targets))

    def close(self) -> None:
        self._coordinator.close()

    def _run(
        self,
        target: Target,
        mode: RunMode,
        *,
        only_passes: Iterable[int] | None = None,
    ) -> PipelineOutcome | None:
        key = target.key
        with self._lock_for(key):
            record = self._records.get(key)
            previous = None
            if mode is RunMode.RETRY:
                history = self._store.get_history(target)
                if history:
                    previous = history[-1]
                    status = self._store.get_status(target, self.known_pass_ids)
                    if status is None or not status.needs_retry:
                        logger.info("prospecting.retry.nothing_due", extra={"target_key": key})
                        return None
            if record is None:
                record = self._coordinator.rebuild_record(target)
            outcome = self._coordinator.run(
                target,
                self._pass_specs,
                previous_attempt=previous,
                force=mode is RunMode.FORCE,
                only_passes=only_passes,
                record=record,
            )
            self._records[key] = outcome.record
        metrics.increment("pipeline.run.completed", tags={"mode": mode.value})
        return outcome

    def _lock_for(self, key: str) -> Lock:
        with self._registry_lock:
            lock = self._target_locks.get(key)
            if lock is None:
                lock = Lock()
                self._target_locks[key] = lock
            return lock


_SERVICE_INSTANCE: ProspectPipelineService | None = None


def get_pipeline_service() -> ProspectPipelineService:
    """Singleton accessor used by API routes."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is None:
        _SERVICE_INSTANCE = ProspectPipelineService.from_settings()
    return _SERVICE_INSTANCE


def shutdown_pipeline_service() -> None:
    """Release the singleton's worker pool; the next accessor call builds a new one."""
    global _SERVICE_INSTANCE  # noqa: PLW0603
    if _SERVICE_INSTANCE is not None:
        _SERVICE_INSTANCE.close()
        _SERVICE_INSTANCE = None
