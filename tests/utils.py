"""Test helpers for building pipelines over scripted source adapters."""

from __future__ import annotations

import time
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

from app.config import Settings
from app.models.prospect import ConfidenceEntry, ProspectField, Target
from app.services.prospecting.attempt_store import AttemptStore, InMemoryAttemptStore
from app.services.prospecting.coordinator import PassPipelineCoordinator
from app.services.prospecting.errors import SourceUnavailableError
from app.services.prospecting.passes import AdapterResult, PassSpec
from app.services.prospecting.qualification import QualificationScorer
from app.services.prospecting.rate_limiter import RateLimiter, SourceBudget
from tests.helpers.metrics_stub import StubMetrics

BASE_TIME = datetime(2025, 1, 6, 15, 0, tzinfo=timezone.utc)

MAPS_FIELDS = {
    "place_id": "ChIJ-acme-denver",
    "phone": "(303) 555-0100",
    "address": "123 Main St, Denver, CO 80202",
    "industry": "professional_services",
    "rating": 4.6,
}


def make_target(name: str = "Acme Plumbing LLC", city: str = "Denver", state: str = "CO") -> Target:
    return Target(name=name, city=city, state=state)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": None,
        "attempt_log_dir": None,
        "pipeline_completeness_threshold": 0.8,
        "pipeline_required_fields": ["phone", "website", "address", "industry", "rating"],
        "pipeline_reliability_threshold": 70.0,
        "pipeline_max_workers": 4,
        "pipeline_early_stop": True,
        "metrics_disable": True,
    }
    values.update(overrides)
    return Settings(**values)


class StubAdapter:
    """Scripted source adapter that records every invocation."""

    def __init__(
        self,
        fields: Mapping[str, Any] | None = None,
        *,
        result: AdapterResult | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self._fields = dict(fields or {})
        self._result = result
        self._error = error
        self._delay = delay
        self._lock = Lock()
        self.calls: list[tuple[Target, dict[ProspectField, Any]]] = []

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def __call__(self, target: Target, aggregate: Mapping[ProspectField, Any]) -> AdapterResult:
        with self._lock:
            self.calls.append((target, dict(aggregate)))
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        if self._result is not None:
            return self._result
        return AdapterResult.ok(self._fields)


def unavailable(reason: str = "invalid credentials") -> StubAdapter:
    return StubAdapter(error=SourceUnavailableError(reason))


def make_spec(
    pass_id: int,
    adapter: StubAdapter,
    *,
    source_id: str | None = None,
    depends_on: set[ProspectField] | None = None,
    timeout: float = 5.0,
) -> PassSpec:
    return PassSpec(
        id=pass_id,
        name=f"pass_{pass_id}",
        source_id=source_id or f"source_{pass_id}",
        adapter=adapter,
        depends_on_fields=frozenset(depends_on or ()),
        timeout=timeout,
    )


def make_coordinator(
    *,
    store: AttemptStore | None = None,
    rate_limiter: RateLimiter | None = None,
    settings: Settings | None = None,
    metrics: StubMetrics | None = None,
    scorer: QualificationScorer | None = None,
) -> PassPipelineCoordinator:
    return PassPipelineCoordinator(
        rate_limiter or RateLimiter(default_budget=SourceBudget(max_calls=1000, window_seconds=3600)),
        store or InMemoryAttemptStore(),
        scorer or QualificationScorer(),
        config=settings or make_settings(),
        metrics=metrics or StubMetrics(),
    )


def entry(
    field: ProspectField,
    value: Any,
    confidence: float,
    *,
    source: str,
    pass_id: int,
    minutes: int = 0,
) -> ConfidenceEntry:
    return ConfidenceEntry(
        field=field,
        value=value,
        confidence=confidence,
        source=source,
        pass_id=pass_id,
        observed_at=BASE_TIME + timedelta(minutes=minutes),
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
