"""Pass pipeline coordinator: runs the declared passes for one target."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from app.config import Settings, settings
from app.models.attempt import PassResult, ProcessingAttempt
from app.models.prospect import (
    ConfidenceEntry,
    ProspectField,
    ProspectRecord,
    ResolvedField,
    Target,
    coerce_fields,
)
from app.observability.metrics import MetricsReporter
from app.observability.metrics import metrics as default_metrics
from app.services.prospecting import confidence
from app.services.prospecting.attempt_store import AttemptStore, derive_status
from app.services.prospecting.errors import (
    AttemptPersistenceError,
    PassErrorCode,
    SourceUnavailableError,
    UnknownPassError,
    missing_dependency_error,
    source_unavailable_error,
)
from app.services.prospecting.passes import (
    AdapterResult,
    PassSpec,
    completeness,
    parse_required_fields,
    validate_pass_specs,
)
from app.services.prospecting.qualification import QualificationScorer
from app.services.prospecting.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineOutcome:
    attempt: ProcessingAttempt
    record: ProspectRecord


class PassPipelineCoordinator:
    """Executes a pass plan for one target and records the attempt.

    Passes run one at a time in ascending id order. Each pass failure is
    recorded on its PassResult and the run continues; the only error raised for
    a bad request is ``UnknownPassError``. Failing to persist the attempt raises
    ``AttemptPersistenceError``.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        attempt_store: AttemptStore,
        scorer: QualificationScorer | None = None,
        *,
        config: Settings | None = None,
        metrics: MetricsReporter | Any | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or settings
        self._rate_limiter = rate_limiter
        self._store = attempt_store
        self._scorer = scorer or QualificationScorer()
        self._metrics = metrics or default_metrics
        self._clock = clock
        self._required_fields = parse_required_fields(self._config.pipeline_required_fields)

    @property
    def attempt_store(self) -> AttemptStore:
        return self._store

    def close(self) -> None:
        """Nothing to release: abandoned adapter calls run out on daemon threads."""

    def run(
        self,
        target: Target,
        pass_specs: Sequence[PassSpec],
        previous_attempt: ProcessingAttempt | None = None,
        *,
        force: bool = False,
        only_passes: Iterable[int] | None = None,
        record: ProspectRecord | None = None,
    ) -> PipelineOutcome:
        specs = validate_pass_specs(pass_specs)
        by_id = {spec.id: spec for spec in specs}
        requested = sorted(set(only_passes)) if only_passes is not None else None
        if requested is not None:
            unknown = [pass_id for pass_id in requested if pass_id not in by_id]
            if unknown:
                raise UnknownPassError(unknown)

        history = self._store.get_history(target)
        if previous_attempt is not None and all(
            attempt.attempt_id != previous_attempt.attempt_id for attempt in history
        ):
            history.append(previous_attempt)
        succeeded_before = _historical_successes(history)

        working_ids = self._working_set(
            by_id,
            previous_attempt,
            succeeded_before,
            force=force,
            requested=requested,
        )
        entries = self._seed_entries(history)
        resolved = confidence.resolve(entries)
        threshold = self._config.pipeline_completeness_threshold
        # A target that was already complete enough runs its whole working set.
        early_stop_enabled = (
            self._config.pipeline_early_stop
            and not force
            and requested is None
            and bool(self._required_fields)
            and completeness(resolved.keys(), self._required_fields) < threshold
        )
        started = time.perf_counter()
        logger.info(
            "prospecting.run.started",
            extra={
                "target_key": target.key,
                "working_set": working_ids,
                "forced": force,
                "seeded_fields": len(resolved),
            },
        )

        results: list[PassResult] = []
        not_attempted: list[int] = []
        stopped = False
        for pass_id in working_ids:
            if stopped:
                not_attempted.append(pass_id)
                continue
            spec = by_id[pass_id]
            result = self._execute(spec, target, resolved)
            results.append(result)
            if result.success:
                entries = confidence.supersede(entries, self._entries_for(result))
                resolved = confidence.resolve(entries)
            if early_stop_enabled:
                if completeness(resolved.keys(), self._required_fields) >= threshold:
                    stopped = True

        final_completeness = completeness(resolved.keys(), self._required_fields)
        if not_attempted:
            logger.info(
                "prospecting.run.early_stop",
                extra={
                    "target_key": target.key,
                    "completeness": final_completeness,
                    "skipped": not_attempted,
                },
            )

        record = self._apply_to_record(record, target, entries, resolved)

        run_successes = {result.pass_id for result in results if result.success}
        cumulative = succeeded_before | run_successes
        run_failures = {result.pass_id for result in results if not result.success}
        attempt = ProcessingAttempt(
            target_key=target.key,
            timestamp=self._clock(),
            forced=force,
            requested_passes=working_ids,
            pass_results=results,
            successful_passes=sorted(cumulative),
            failed_passes=sorted(run_failures - cumulative),
            not_attempted_passes=sorted(not_attempted),
            completeness=final_completeness,
            overall_confidence=record.overall_confidence,
            qualification_score=record.qualification_score,
        )
        status = derive_status(target.key, [*history, attempt], by_id.keys())
        attempt = attempt.model_copy(
            update={"next_retry_passes": status.next_retry_passes if status else []}
        )

        self._persist(target, attempt)

        duration_ms = (time.perf_counter() - started) * 1000
        self._metrics.gauge(
            "pipeline.run.completeness", final_completeness, tags={"forced": force}
        )
        self._metrics.timing("pipeline.run.duration", duration_ms, tags={"forced": force})
        logger.info(
            "prospecting.run.completed",
            extra={
                "target_key": target.key,
                "attempt_id": attempt.attempt_id,
                "successful_passes": attempt.successful_passes,
                "failed_passes": attempt.failed_passes,
                "next_retry_passes": attempt.next_retry_passes,
                "completeness": final_completeness,
                "overall_confidence": record.overall_confidence,
                "qualification_score": record.qualification_score,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return PipelineOutcome(attempt=attempt, record=record)

    def rebuild_record(
        self,
        target: Target,
        history: Sequence[ProcessingAttempt] | None = None,
    ) -> ProspectRecord | None:
        """Reconstruct a record from the attempt history alone."""
        attempts = list(history) if history is not None else self._store.get_history(target)
        if not attempts:
            return None
        entries = self._seed_entries(attempts)
        resolved = confidence.resolve(entries)
        record = ProspectRecord(target=target, created_at=attempts[0].timestamp)
        record = self._apply_to_record(record, target, entries, resolved)
        record.updated_at = attempts[-1].timestamp
        return record

    def _working_set(
        self,
        by_id: Mapping[int, PassSpec],
        previous_attempt: ProcessingAttempt | None,
        succeeded_before: set[int],
        *,
        force: bool,
        requested: list[int] | None,
    ) -> list[int]:
        if requested is not None:
            return list(requested)
        if force:
            return sorted(by_id)
        if previous_attempt is not None:
            candidates = [
                pass_id for pass_id in previous_attempt.next_retry_passes if pass_id in by_id
            ]
        else:
            candidates = list(by_id)
        return sorted(pass_id for pass_id in set(candidates) if pass_id not in succeeded_before)

    def _execute(
        self,
        spec: PassSpec,
        target: Target,
        resolved: Mapping[ProspectField, ResolvedField],
    ) -> PassResult:
        started_at = self._clock()
        started = time.perf_counter()

        missing = spec.missing_dependencies(resolved.keys())
        if missing:
            return self._finish(
                spec,
                started,
                started_at,
                errors=[missing_dependency_error(missing[0].value)],
            )
        if not self._rate_limiter.try_acquire(spec.source_id):
            return self._finish(
                spec, started, started_at, errors=[PassErrorCode.RATE_LIMITED.value]
            )

        aggregate = MappingProxyType(
            {field: item.resolved_value for field, item in resolved.items()}
        )
        future = _start_adapter_call(spec, target, aggregate)
        try:
            outcome = future.result(timeout=spec.timeout)
        except FutureTimeoutError:
            return self._finish(spec, started, started_at, errors=[PassErrorCode.TIMEOUT.value])
        except SourceUnavailableError as exc:
            return self._finish(
                spec, started, started_at, errors=[source_unavailable_error(str(exc))]
            )
        except Exception as exc:
            logger.warning(
                "prospecting.pass.adapter_error",
                extra={"pass_id": spec.id, "source_id": spec.source_id, "target_key": target.key},
                exc_info=True,
            )
            return self._finish(
                spec,
                started,
                started_at,
                errors=[source_unavailable_error(f"{type(exc).__name__}: {exc}")],
            )

        if not isinstance(outcome, AdapterResult):
            return self._finish(
                spec,
                started,
                started_at,
                errors=[source_unavailable_error("adapter returned an invalid result")],
            )
        if not outcome.success:
            errors = list(outcome.errors) or [source_unavailable_error()]
            return self._finish(spec, started, started_at, errors=errors)

        accepted, quarantined = coerce_fields(outcome.fields)
        if quarantined:
            logger.warning(
                "prospecting.pass.quarantined_fields",
                extra={
                    "pass_id": spec.id,
                    "source_id": spec.source_id,
                    "fields": sorted(quarantined),
                },
            )
        if not accepted:
            return self._finish(
                spec,
                started,
                started_at,
                errors=[PassErrorCode.NO_DATA_FOUND.value],
                quarantined=quarantined,
            )
        return self._finish(
            spec, started, started_at, fields=accepted, quarantined=quarantined
        )

    def _finish(
        self,
        spec: PassSpec,
        started: float,
        started_at: datetime,
        *,
        fields: dict[ProspectField, Any] | None = None,
        errors: list[str] | None = None,
        quarantined: dict[str, Any] | None = None,
    ) -> PassResult:
        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        success = not errors
        result = PassResult(
            pass_id=spec.id,
            pass_name=spec.name,
            source_id=spec.source_id,
            success=success,
            fields_extracted=fields or {},
            errors=errors or [],
            duration_ms=duration_ms,
            quarantined_fields=quarantined or {},
            started_at=started_at,
        )
        outcome = "success" if success else _error_code(result.errors[0])
        tags = {"pass": spec.name, "source": spec.source_id, "outcome": outcome}
        self._metrics.timing("pipeline.pass.duration", duration_ms, tags=tags)
        self._metrics.increment("pipeline.pass.outcome", tags=tags)
        log = logger.info if success else logger.warning
        log(
            "prospecting.pass.completed",
            extra={
                "pass_id": spec.id,
                "pass_name": spec.name,
                "source_id": spec.source_id,
                "outcome": outcome,
                "fields": sorted(item.value for item in result.fields_extracted),
                "errors": result.errors,
                "duration_ms": duration_ms,
            },
        )
        return result

    def _seed_entries(self, history: Sequence[ProcessingAttempt]) -> list[ConfidenceEntry]:
        entries: list[ConfidenceEntry] = []
        for attempt in history:
            for result in attempt.pass_results:
                if result.success:
                    entries = confidence.supersede(entries, self._entries_for(result))
        return entries

    def _entries_for(self, result: PassResult) -> list[ConfidenceEntry]:
        weight = self._config.confidence_for(result.source_id)
        return [
            ConfidenceEntry(
                field=field,
                value=value,
                confidence=weight,
                source=result.source_id,
                pass_id=result.pass_id,
                observed_at=result.started_at,
            )
            for field, value in result.fields_extracted.items()
        ]

    def _apply_to_record(
        self,
        record: ProspectRecord | None,
        target: Target,
        entries: list[ConfidenceEntry],
        resolved: dict[ProspectField, ResolvedField],
    ) -> ProspectRecord:
        if record is None:
            record = ProspectRecord(target=target)
        record.target = target
        record.entries = list(entries)
        record.resolved_fields = resolved
        record.overall_confidence = confidence.overall_confidence(resolved)
        record.review_flags = confidence.review_flags(
            resolved, reliability_threshold=self._config.pipeline_reliability_threshold
        )
        record.data_sources = sorted({entry.source for entry in entries})
        breakdown = self._scorer.breakdown(record)
        record.qualification_breakdown = breakdown
        record.qualification_score = breakdown.total
        record.updated_at = self._clock()
        return record

    def _persist(self, target: Target, attempt: ProcessingAttempt) -> None:
        try:
            self._store.record_attempt(target, attempt)
        except AttemptPersistenceError:
            logger.error(
                "prospecting.attempt.persist_failed",
                extra={"target_key": target.key, "attempt_id": attempt.attempt_id},
            )
            raise
        except Exception as exc:
            logger.exception(
                "prospecting.attempt.persist_failed",
                extra={"target_key": target.key, "attempt_id": attempt.attempt_id},
            )
            raise AttemptPersistenceError(
                f"Failed to persist attempt for {target.key}: {exc}", code="E_ATTEMPT_WRITE"
            ) from exc


def _start_adapter_call(
    spec: PassSpec, target: Target, aggregate: Mapping[ProspectField, Any]
) -> Future:
    """Run one adapter call on its own daemon thread.

    The deadline covers the call itself; a hung adapter holds only its own
    thread and never delays the passes after it.
    """
    future: Future = Future()

    def _invoke() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(spec.adapter(target, aggregate))
        except Exception as exc:
            future.set_exception(exc)

    threading.Thread(
        target=_invoke, name=f"prospect-adapter-{spec.source_id}", daemon=True
    ).start()
    return future


def _historical_successes(history: Sequence[ProcessingAttempt]) -> set[int]:
    succeeded: set[int] = set()
    for attempt in history:
        succeeded.update(attempt.successful_passes)
        succeeded.update(result.pass_id for result in attempt.pass_results if result.success)
    return succeeded


def _error_code(error: str) -> str:
    if error.startswith("missing dependency"):
        return PassErrorCode.MISSING_DEPENDENCY.value
    return error.split(":", 1)[0].strip() or PassErrorCode.SOURCE_UNAVAILABLE.value
