"""Declarative pass plan and the source adapter contract."""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.config import settings
from app.models.prospect import ProspectField, Target
from app.services.prospecting.errors import InvalidPassPlanError


@dataclass(frozen=True)
class AdapterResult:
    """What a source adapter hands back to the coordinator."""

    success: bool
    fields: Mapping[str, Any] = field(default_factory=dict)
    errors: tuple[str, ...] = ()

    @classmethod
    def ok(cls, fields: Mapping[str, Any]) -> AdapterResult:
        return cls(success=True, fields=dict(fields))

    @classmethod
    def failed(cls, *errors: str) -> AdapterResult:
        return cls(success=False, errors=tuple(errors))


class SourceAdapter(Protocol):
    """Callable wrapping one external source.

    Receives the target and the resolved values gathered so far. Hard failures
    may raise ``SourceUnavailableError`` or return ``AdapterResult.failed``.
    """

    def __call__(self, target: Target, aggregate: Mapping[ProspectField, Any]) -> AdapterResult:
        ...


@dataclass(frozen=True)
class PassSpec:
    id: int
    name: str
    source_id: str
    adapter: SourceAdapter
    depends_on_fields: frozenset[ProspectField] = frozenset()
    timeout: float = 30.0

    def missing_dependencies(self, present: Collection[ProspectField]) -> list[ProspectField]:
        return sorted(
            (item for item in self.depends_on_fields if item not in present),
            key=lambda item: item.value,
        )


# (id, name, source_id, depends_on_fields)
DEFAULT_PASS_PLAN: tuple[tuple[int, str, str, frozenset[ProspectField]], ...] = (
    (1, "maps_lookup", "google_maps", frozenset()),
    (2, "web_verification", "web_search", frozenset()),
    (3, "review_mining", "google_reviews", frozenset({ProspectField.PLACE_ID})),
    (4, "registry_lookup", "registry", frozenset()),
    (5, "competitor_research", "competitor_research", frozenset({ProspectField.INDUSTRY})),
)


def default_pass_specs(
    adapters: Mapping[str, SourceAdapter],
    *,
    timeout: float | None = None,
) -> list[PassSpec]:
    """Build the standard five-pass plan from adapters keyed by source id."""
    resolved_timeout = timeout if timeout is not None else settings.pipeline_default_timeout_seconds
    missing = [source_id for _, _, source_id, _ in DEFAULT_PASS_PLAN if source_id not in adapters]
    if missing:
        raise InvalidPassPlanError(f"No adapter registered for source(s): {', '.join(missing)}")
    return [
        PassSpec(
            id=pass_id,
            name=name,
            source_id=source_id,
            adapter=adapters[source_id],
            depends_on_fields=depends_on,
            timeout=resolved_timeout,
        )
        for pass_id, name, source_id, depends_on in DEFAULT_PASS_PLAN
    ]


def validate_pass_specs(pass_specs: Iterable[PassSpec]) -> list[PassSpec]:
    """Return specs ordered by id, rejecting duplicate ids and bad timeouts."""
    ordered = sorted(pass_specs, key=lambda spec: spec.id)
    seen: set[int] = set()
    for spec in ordered:
        if spec.id in seen:
            raise InvalidPassPlanError(f"Duplicate pass id: {spec.id}")
        if spec.timeout <= 0:
            raise InvalidPassPlanError(f"Pass {spec.id} timeout must be positive")
        seen.add(spec.id)
    return ordered


def completeness(
    present: Collection[ProspectField],
    required: Iterable[ProspectField],
) -> float:
    """Fraction of required fields already populated (0 when none are defined)."""
    required_set = set(required)
    if not required_set:
        return 0.0
    filled = sum(1 for item in required_set if item in present)
    return round(filled / len(required_set), 4)


def parse_required_fields(names: Iterable[str]) -> list[ProspectField]:
    fields: list[ProspectField] = []
    for name in names:
        try:
            fields.append(ProspectField(name))
        except ValueError as exc:
            raise InvalidPassPlanError(f"Unknown required field: {name}") from exc
    return fields
