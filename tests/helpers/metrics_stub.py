from __future__ import annotations

from typing import Any


class StubMetrics:
    """Captures every emitted sample, in order, for assertions."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def timing(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("timing", metric, value, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._record("counter", metric, value, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("gauge", metric, value, tags)

    @property
    def timing_calls(self) -> list[dict[str, Any]]:
        return self._of_kind("timing")

    @property
    def increment_calls(self) -> list[dict[str, Any]]:
        return self._of_kind("counter")

    @property
    def gauge_calls(self) -> list[dict[str, Any]]:
        return self._of_kind("gauge")

    def outcomes(self, metric: str = "pipeline.pass.outcome") -> list[str]:
        """Outcome tags of a counter, in emission order."""
        return [call["tags"].get("outcome") for call in self.increment_calls if call["metric"] == metric]

    def _record(self, kind: str, metric: str, value: float, tags: dict[str, Any] | None) -> None:
        self.calls.append({"kind": kind, "metric": metric, "value": value, "tags": dict(tags or {})})

    def _of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["kind"] == kind]
