"""Rubric-based qualification scoring for fused prospect records."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from app.config import settings
from app.models.prospect import ProspectField, ProspectRecord, QualificationBreakdown
from app.services.prospecting.errors import RubricError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


@dataclass(frozen=True)
class BusinessSizeRule:
    max_points: int = 20
    ideal_min_employees: int = 5
    ideal_max_employees: int = 25
    partial_ratio: float = 0.6


@dataclass(frozen=True)
class DigitalPresenceRule:
    max_points: int = 25
    website: int = 8
    google_business: int = 6
    social_media: int = 6
    online_reviews: int = 5


@dataclass(frozen=True)
class LocationRule:
    max_points: int = 15
    target_cities: frozenset[str] = frozenset(
        {"denver", "colorado springs", "aurora", "fort collins", "boulder"}
    )
    target_states: frozenset[str] = frozenset({"co", "colorado"})
    state_ratio: float = 0.7


@dataclass(frozen=True)
class IndustryRule:
    max_points: int = 10
    high_value: frozenset[str] = frozenset({"professional_services", "healthcare", "real_estate"})
    other_ratio: float = 0.8


@dataclass(frozen=True)
class RevenueRule:
    max_points: int = 10
    ideal_min: float = 250_000
    ideal_max: float = 2_000_000
    partial_floor: float = 100_000
    partial_ratio: float = 0.6


@dataclass(frozen=True)
class CompetitiveGapRule:
    max_points: int = 20
    baseline_ratio: float = 0.5
    points_per_gap: int = 2


@dataclass(frozen=True)
class QualificationRubric:
    version: str = "builtin"
    sha256: str | None = None
    business_size: BusinessSizeRule = field(default_factory=BusinessSizeRule)
    digital_presence: DigitalPresenceRule = field(default_factory=DigitalPresenceRule)
    location: LocationRule = field(default_factory=LocationRule)
    industry: IndustryRule = field(default_factory=IndustryRule)
    revenue: RevenueRule = field(default_factory=RevenueRule)
    competitive_gap: CompetitiveGapRule = field(default_factory=CompetitiveGapRule)


class QualificationScorer:
    """Pure function of a ProspectRecord's resolved fields into a 0-100 score."""

    def __init__(self, rubric: QualificationRubric | None = None) -> None:
        self.rubric = rubric or QualificationRubric()

    def score(self, record: ProspectRecord) -> int:
        return self.breakdown(record).total

    def breakdown(self, record: ProspectRecord) -> QualificationBreakdown:
        rubric = self.rubric
        # Each factor stays within [0, max_points] whatever the rubric weights.
        return QualificationBreakdown(
            business_size=_bounded(self._business_size(record), rubric.business_size),
            digital_presence=_bounded(self._digital_presence(record), rubric.digital_presence),
            location=_bounded(self._location(record), rubric.location),
            industry=_bounded(self._industry(record), rubric.industry),
            revenue=_bounded(self._revenue(record), rubric.revenue),
            competitive_gap=_bounded(self._competitive_gap(record), rubric.competitive_gap),
        )

    def _business_size(self, record: ProspectRecord) -> int:
        rule = self.rubric.business_size
        employees = record.value(ProspectField.EMPLOYEE_COUNT)
        if not isinstance(employees, int) or employees <= 0:
            return 0
        if rule.ideal_min_employees <= employees <= rule.ideal_max_employees:
            return rule.max_points
        return _scaled(rule.max_points, rule.partial_ratio)

    def _digital_presence(self, record: ProspectRecord) -> int:
        rule = self.rubric.digital_presence
        points = 0
        if record.value(ProspectField.HAS_WEBSITE) or record.has(ProspectField.WEBSITE):
            points += rule.website
        if record.value(ProspectField.HAS_GOOGLE_BUSINESS) or record.has(ProspectField.PLACE_ID):
            points += rule.google_business
        if record.value(ProspectField.HAS_SOCIAL_MEDIA):
            points += rule.social_media
        review_count = record.value(ProspectField.REVIEW_COUNT) or 0
        if record.value(ProspectField.HAS_ONLINE_REVIEWS) or review_count > 0:
            points += rule.online_reviews
        return points

    def _location(self, record: ProspectRecord) -> int:
        rule = self.rubric.location
        city = record.value(ProspectField.CITY) or record.target.city
        state = record.value(ProspectField.STATE) or record.target.state
        if city and _casefold(city) in rule.target_cities:
            return rule.max_points
        if state and _casefold(state) in rule.target_states:
            return _scaled(rule.max_points, rule.state_ratio)
        return 0

    def _industry(self, record: ProspectRecord) -> int:
        rule = self.rubric.industry
        industry = record.value(ProspectField.INDUSTRY)
        if not industry:
            return 0
        if _industry_key(industry) in {_industry_key(item) for item in rule.high_value}:
            return rule.max_points
        return _scaled(rule.max_points, rule.other_ratio)

    def _revenue(self, record: ProspectRecord) -> int:
        rule = self.rubric.revenue
        revenue = record.value(ProspectField.ESTIMATED_REVENUE)
        if revenue is None:
            return 0
        if rule.ideal_min <= revenue <= rule.ideal_max:
            return rule.max_points
        if revenue > rule.partial_floor:
            return _scaled(rule.max_points, rule.partial_ratio)
        return 0

    def _competitive_gap(self, record: ProspectRecord) -> int:
        rule = self.rubric.competitive_gap
        gaps = record.value(ProspectField.COMPETITIVE_GAPS) or []
        return _scaled(rule.max_points, rule.baseline_ratio) + rule.points_per_gap * len(gaps)


def load_rubric(path: str | Path | None = None) -> QualificationRubric:
    """Parse a YAML rubric, recording its version and sha256."""
    resolved = _resolve_path(Path(path or settings.qualification_rubric_path))
    if not resolved.exists():
        raise RubricError(f"Rubric missing at {resolved}", code="RUBRIC_MISSING")
    blob = resolved.read_bytes()
    try:
        raw = yaml.safe_load(blob.decode("utf-8"))
    except yaml.YAMLError as exc:
        raise RubricError(f"Unable to parse rubric: {exc}", code="RUBRIC_INVALID") from exc
    if not isinstance(raw, Mapping):
        raise RubricError("Rubric must be a mapping", code="RUBRIC_INVALID")

    version = str(raw.get("version") or "").strip()
    if not version:
        raise RubricError("Rubric missing version", code="RUBRIC_INVALID")
    factors = raw.get("factors") or {}
    if not isinstance(factors, Mapping):
        raise RubricError("Rubric factors must be a mapping", code="RUBRIC_INVALID")

    try:
        rubric = QualificationRubric(
            version=version,
            sha256=hashlib.sha256(blob).hexdigest(),
            business_size=_build_rule(BusinessSizeRule, factors.get("business_size")),
            digital_presence=_build_rule(DigitalPresenceRule, factors.get("digital_presence")),
            location=_build_rule(LocationRule, factors.get("location")),
            industry=_build_rule(IndustryRule, factors.get("industry")),
            revenue=_build_rule(RevenueRule, factors.get("revenue")),
            competitive_gap=_build_rule(CompetitiveGapRule, factors.get("competitive_gap")),
        )
    except (TypeError, ValueError) as exc:
        raise RubricError(f"Invalid rubric factor: {exc}", code="RUBRIC_INVALID") from exc

    max_total = sum(
        getattr(rubric, name).max_points
        for name in (
            "business_size",
            "digital_presence",
            "location",
            "industry",
            "revenue",
            "competitive_gap",
        )
    )
    logger.info(
        "qualification.rubric.loaded",
        extra={"version": rubric.version, "sha256": rubric.sha256, "max_total": max_total},
    )
    return rubric


def _build_rule(rule_cls: type, raw: Any) -> Any:
    if raw is None:
        return rule_cls()
    if not isinstance(raw, Mapping):
        raise RubricError(f"Rubric factor for {rule_cls.__name__} must be a mapping", code="RUBRIC_INVALID")
    defaults = rule_cls()
    values: dict[str, Any] = {}
    for key, value in raw.items():
        if not hasattr(defaults, key):
            raise RubricError(f"Unknown rubric key {key!r}", code="RUBRIC_INVALID")
        current = getattr(defaults, key)
        if isinstance(current, frozenset):
            values[key] = frozenset(_casefold(str(item)) for item in value or [])
        elif isinstance(current, int) and not isinstance(current, bool):
            values[key] = int(value)
        elif isinstance(current, float):
            values[key] = float(value)
        else:
            values[key] = value
    for key, value in values.items():
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
            raise RubricError(f"{rule_cls.__name__}.{key} must be >= 0", code="RUBRIC_INVALID")
    return rule_cls(**values)


def _resolve_path(path: Path) -> Path:
    if path.is_absolute() or path.exists():
        return path
    return PROJECT_ROOT / path


def _bounded(points: int, rule: Any) -> int:
    return max(0, min(points, rule.max_points))


def _scaled(max_points: int, ratio: float) -> int:
    return int(round(max_points * max(0.0, min(ratio, 1.0))))


def _casefold(value: str) -> str:
    return " ".join(value.split()).casefold()


def _industry_key(value: str) -> str:
    return "_".join(value.replace("-", " ").split()).casefold()
