"""Per-source call budgets shared by every pipeline in the process."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock

from app.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceBudget:
    """Fixed-window budget for one external source."""

    max_calls: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_calls < 0:
            raise ValueError("max_calls must be >= 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


@dataclass(frozen=True)
class BudgetUsage:
    """Snapshot of a source's current window."""

    source_id: str
    calls: int
    max_calls: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(self.max_calls - self.calls, 0)


class _Bucket:
    def __init__(self, budget: SourceBudget) -> None:
        self.budget = budget
        self.count = 0
        self.reset_at: float | None = None
        self.lock = Lock()

    def roll(self, now: float) -> None:
        if self.reset_at is None or now >= self.reset_at:
            self.count = 0
            self.reset_at = now + self.budget.window_seconds


class RateLimiter:
    """Fixed-window call counter per source id.

    Budgets are advisory and held in memory only; they reset with the process.
    ``try_acquire`` performs the check and the record under the source's lock so
    concurrent pipelines cannot overrun a budget.
    """

    def __init__(
        self,
        budgets: Mapping[str, SourceBudget] | None = None,
        *,
        default_budget: SourceBudget | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._budgets = dict(budgets or {})
        self._default_budget = default_budget or SourceBudget(max_calls=50, window_seconds=3600)
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._registry_lock = Lock()

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> RateLimiter:
        config = config or settings
        budgets = {}
        for source_id in config.source_budgets:
            max_calls, window_seconds = config.budget_for(source_id)
            budgets[source_id] = SourceBudget(max_calls=max_calls, window_seconds=window_seconds)
        default_budget = SourceBudget(
            max_calls=config.source_default_max_calls,
            window_seconds=config.source_default_window_seconds,
        )
        return cls(budgets, default_budget=default_budget)

    def can_call(self, source_id: str) -> bool:
        """Return True when the source still has budget in its current window."""
        bucket = self._bucket(source_id)
        with bucket.lock:
            bucket.roll(self._clock())
            return bucket.count < bucket.budget.max_calls

    def record_call(self, source_id: str) -> None:
        """Count one call against the source's current window."""
        bucket = self._bucket(source_id)
        with bucket.lock:
            bucket.roll(self._clock())
            bucket.count += 1

    def try_acquire(self, source_id: str) -> bool:
        """Atomically check the budget and record the call when allowed."""
        bucket = self._bucket(source_id)
        with bucket.lock:
            bucket.roll(self._clock())
            if bucket.count >= bucket.budget.max_calls:
                logger.info(
                    "rate_limiter.exhausted",
                    extra={
                        "source_id": source_id,
                        "calls": bucket.count,
                        "max_calls": bucket.budget.max_calls,
                    },
                )
                return False
            bucket.count += 1
            return True

    def usage(self, source_id: str) -> BudgetUsage:
        bucket = self._bucket(source_id)
        with bucket.lock:
            bucket.roll(self._clock())
            return BudgetUsage(
                source_id=source_id,
                calls=bucket.count,
                max_calls=bucket.budget.max_calls,
                reset_at=bucket.reset_at or 0.0,
            )

    def reset(self) -> None:
        with self._registry_lock:
            self._buckets.clear()

    def _bucket(self, source_id: str) -> _Bucket:
        with self._registry_lock:
            bucket = self._buckets.get(source_id)
            if bucket is None:
                budget = self._budgets.get(source_id, self._default_budget)
                bucket = _Bucket(budget)
                self._buckets[source_id] = bucket
            return bucket
