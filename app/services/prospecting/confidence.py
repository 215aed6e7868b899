"""Deterministic confidence fusion across source observations.

Every observation of a field is a ``ConfidenceEntry``. ``resolve`` groups them
per field and produces one ``ResolvedField``:

* one entry keeps its own confidence;
* several entries agreeing on a value are cross-verified:
  ``min(95, mean(confidence) + 5 * (distinct_sources - 1))``;
* disagreeing entries mark the field conflicted. The winning value belongs to
  the highest-confidence entry; equal confidences go to the lowest pass id,
  i.e. the pass that ran first.

The module performs no I/O and the output depends only on the entry set, so
calling ``resolve`` twice yields identical results.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any
from urllib.parse import urlparse

from app.models.prospect import (
    ConfidenceEntry,
    ConflictingValue,
    ProspectField,
    ResolvedField,
)

CORROBORATION_BONUS = 5.0
CORROBORATION_CAP = 95.0
MAX_CONFIDENCE = 100.0


def resolve(entries: Iterable[ConfidenceEntry]) -> dict[ProspectField, ResolvedField]:
    """Fuse all observations into one resolved value per field."""
    grouped: dict[ProspectField, list[ConfidenceEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.field, []).append(entry)

    resolved: dict[ProspectField, ResolvedField] = {}
    for field in sorted(grouped, key=lambda item: item.value):
        ordered = sorted(grouped[field], key=_entry_order)
        resolved[field] = _resolve_field(field, ordered)
    return resolved


def overall_confidence(resolved: Mapping[ProspectField, ResolvedField]) -> float:
    """Arithmetic mean of resolved field confidences (0 when nothing resolved)."""
    if not resolved:
        return 0.0
    total = sum(item.confidence for item in resolved.values())
    return round(total / len(resolved), 2)


def review_flags(
    resolved: Mapping[ProspectField, ResolvedField],
    *,
    reliability_threshold: float,
) -> list[ProspectField]:
    """Fields a human should double-check: conflicted or below the threshold."""
    flagged = [
        field
        for field, item in resolved.items()
        if item.conflicted or item.confidence < reliability_threshold
    ]
    return sorted(flagged, key=lambda item: item.value)


def supersede(
    existing: Sequence[ConfidenceEntry],
    incoming: Sequence[ConfidenceEntry],
) -> list[ConfidenceEntry]:
    """Merge observations, letting a newer run of a pass replace its older values."""
    replaced = {(entry.pass_id, entry.field) for entry in incoming}
    kept = [entry for entry in existing if (entry.pass_id, entry.field) not in replaced]
    return sorted([*kept, *incoming], key=_entry_order)


def values_match(field: ProspectField, left: Any, right: Any) -> bool:
    return comparison_key(field, left) == comparison_key(field, right)


def comparison_key(field: ProspectField, value: Any) -> Any:
    """Field-aware normalization used to decide whether two values agree."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (list, tuple, set)):
        return tuple(sorted(_normalize_text(str(item)) for item in value))
    text = str(value)
    if field is ProspectField.PHONE:
        digits = re.sub(r"\D", "", text)
        if len(digits) == 11 and digits.startswith("1"):
            digits = digits[1:]
        return digits
    if field is ProspectField.WEBSITE:
        return _normalize_host(text)
    if field is ProspectField.EMAIL:
        return text.strip().lower()
    return _normalize_text(text)


def _resolve_field(field: ProspectField, ordered: list[ConfidenceEntry]) -> ResolvedField:
    last_verified = max(entry.observed_at for entry in ordered)
    if len(ordered) == 1:
        entry = ordered[0]
        return ResolvedField(
            field=field,
            resolved_value=entry.value,
            confidence=_bounded(entry.confidence),
            contributing_sources=[entry.source],
            conflicted=False,
            conflicting_values=[],
            last_verified=last_verified,
        )

    winner = _pick_winner(ordered)
    winner_key = comparison_key(field, winner.value)
    agreeing = [entry for entry in ordered if comparison_key(field, entry.value) == winner_key]
    conflicted = len(agreeing) != len(ordered)

    return ResolvedField(
        field=field,
        resolved_value=winner.value,
        confidence=_cross_verified(agreeing),
        contributing_sources=_dedupe_preserve_order(entry.source for entry in ordered),
        conflicted=conflicted,
        conflicting_values=_conflicting_values(field, ordered) if conflicted else [],
        last_verified=last_verified,
    )


def _pick_winner(ordered: Sequence[ConfidenceEntry]) -> ConfidenceEntry:
    # ordered is ascending by pass id, so the first maximum is the earliest pass.
    winner = ordered[0]
    for entry in ordered[1:]:
        if entry.confidence > winner.confidence:
            winner = entry
    return winner


def _cross_verified(agreeing: Sequence[ConfidenceEntry]) -> float:
    if len(agreeing) == 1:
        return _bounded(agreeing[0].confidence)
    average = sum(entry.confidence for entry in agreeing) / len(agreeing)
    sources = len({entry.source for entry in agreeing})
    boosted = average + CORROBORATION_BONUS * (sources - 1)
    return _bounded(min(CORROBORATION_CAP, boosted))


def _conflicting_values(field: ProspectField, ordered: Sequence[ConfidenceEntry]) -> list[ConflictingValue]:
    seen: set[tuple[Any, str, float]] = set()
    values: list[ConflictingValue] = []
    for entry in ordered:
        marker = (comparison_key(field, entry.value), entry.source, entry.confidence)
        if marker in seen:
            continue
        seen.add(marker)
        values.append(
            ConflictingValue(
                value=entry.value,
                source=entry.source,
                confidence=entry.confidence,
                pass_id=entry.pass_id,
            )
        )
    return values


def _entry_order(entry: ConfidenceEntry) -> tuple[int, Any, str]:
    return (entry.pass_id, entry.observed_at, entry.source)


def _bounded(value: float) -> float:
    return round(max(0.0, min(MAX_CONFIDENCE, value)), 2)


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def _normalize_text(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip().casefold()


def _normalize_host(value: str) -> str:
    candidate = value.strip()
    if not candidate:
        return ""
    parsed = urlparse(candidate if "//" in candidate else f"https://{candidate}")
    host = (parsed.netloc or parsed.path).lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    path = parsed.path.rstrip("/") if parsed.netloc else ""
    return f"{host}{path}"
