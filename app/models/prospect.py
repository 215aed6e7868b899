"""Domain models for prospect research records."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from pydantic.config import ConfigDict

# Corporate suffixes dropped when normalizing business names.
_CORPORATE_SUFFIXES = {
    "inc",
    "incorporated",
    "corp",
    "corporation",
    "co",
    "company",
    "ltd",
    "limited",
    "llc",
    "llp",
    "pllc",
    "pc",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(value: str) -> str:
    """Create a deterministic slug for keying persisted state."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value.strip().lower())
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-")
    return cleaned


def normalize_business_name(value: str) -> str:
    """Casefold, strip punctuation and drop trailing corporate suffixes."""
    tokens = re.sub(r"[^\w\s]", " ", value.casefold()).split()
    while len(tokens) > 1 and tokens[-1] in _CORPORATE_SUFFIXES:
        tokens.pop()
    return " ".join(tokens)


class Target(BaseModel):
    """Identity of the business being researched."""

    name: str = Field(..., min_length=1)
    city: str | None = None
    state: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def normalized_name(self) -> str:
        return normalize_business_name(self.name)

    @property
    def key(self) -> str:
        parts = [self.normalized_name]
        if self.city:
            parts.append(self.city.strip())
        if self.state:
            parts.append(self.state.strip())
        return slugify(" ".join(parts)) or "unknown"

    @property
    def location(self) -> str | None:
        parts = [part.strip() for part in (self.city, self.state) if part and part.strip()]
        return ", ".join(parts) or None

    @classmethod
    def parse(cls, name: str, location: str | None = None) -> Target:
        """Build a target from a name and an optional "City, ST" string."""
        city: str | None = None
        state: str | None = None
        if location:
            parts = [part.strip() for part in location.split(",") if part.strip()]
            if parts:
                city = parts[0]
            if len(parts) > 1:
                state = parts[1]
        return cls(name=name.strip(), city=city, state=state)


class ProspectField(str, Enum):
    """Closed set of fields a source adapter may contribute."""

    PLACE_ID = "place_id"
    PHONE = "phone"
    EMAIL = "email"
    WEBSITE = "website"
    ADDRESS = "address"
    CITY = "city"
    STATE = "state"
    ZIP_CODE = "zip_code"
    INDUSTRY = "industry"
    BUSINESS_STATUS = "business_status"
    EMPLOYEE_COUNT = "employee_count"
    ESTIMATED_REVENUE = "estimated_revenue"
    RATING = "rating"
    REVIEW_COUNT = "review_count"
    HAS_WEBSITE = "has_website"
    HAS_GOOGLE_BUSINESS = "has_google_business"
    HAS_SOCIAL_MEDIA = "has_social_media"
    HAS_ONLINE_REVIEWS = "has_online_reviews"
    OWNER_NAME = "owner_name"
    DECISION_MAKER = "decision_maker"
    REGISTRY_FILING_NUMBER = "registry_filing_number"
    REGISTRY_ENTITY_STATUS = "registry_entity_status"
    REVIEW_INSIGHTS = "review_insights"
    PAIN_POINTS = "pain_points"
    COMPETITOR_COUNT = "competitor_count"
    COMPETITIVE_GAPS = "competitive_gaps"


FIELD_TYPES: dict[ProspectField, Any] = {
    ProspectField.PLACE_ID: str,
    ProspectField.PHONE: str,
    ProspectField.EMAIL: str,
    ProspectField.WEBSITE: str,
    ProspectField.ADDRESS: str,
    ProspectField.CITY: str,
    ProspectField.STATE: str,
    ProspectField.ZIP_CODE: str,
    ProspectField.INDUSTRY: str,
    ProspectField.BUSINESS_STATUS: str,
    ProspectField.EMPLOYEE_COUNT: int,
    ProspectField.ESTIMATED_REVENUE: float,
    ProspectField.RATING: float,
    ProspectField.REVIEW_COUNT: int,
    ProspectField.HAS_WEBSITE: bool,
    ProspectField.HAS_GOOGLE_BUSINESS: bool,
    ProspectField.HAS_SOCIAL_MEDIA: bool,
    ProspectField.HAS_ONLINE_REVIEWS: bool,
    ProspectField.OWNER_NAME: str,
    ProspectField.DECISION_MAKER: str,
    ProspectField.REGISTRY_FILING_NUMBER: str,
    ProspectField.REGISTRY_ENTITY_STATUS: str,
    ProspectField.REVIEW_INSIGHTS: list[str],
    ProspectField.PAIN_POINTS: list[str],
    ProspectField.COMPETITOR_COUNT: int,
    ProspectField.COMPETITIVE_GAPS: list[str],
}

_FIELD_ADAPTERS: dict[ProspectField, TypeAdapter] = {
    field: TypeAdapter(field_type) for field, field_type in FIELD_TYPES.items()
}


def coerce_fields(raw: Mapping[str, Any] | None) -> tuple[dict[ProspectField, Any], dict[str, Any]]:
    """Validate adapter output against the field schema.

    Returns ``(accepted, quarantined)``. Unknown names and values that cannot be
    coerced to the declared type are quarantined; empty values are dropped.
    """
    accepted: dict[ProspectField, Any] = {}
    quarantined: dict[str, Any] = {}
    for name, value in (raw or {}).items():
        if _is_empty(value):
            continue
        try:
            field = ProspectField(str(name))
        except ValueError:
            quarantined[str(name)] = value
            continue
        try:
            coerced = _FIELD_ADAPTERS[field].validate_python(value)
        except ValidationError:
            quarantined[str(name)] = value
            continue
        if isinstance(coerced, str):
            coerced = coerced.strip()
        if _is_empty(coerced):
            continue
        accepted[field] = coerced
    return accepted, quarantined


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


class PipelineStage(str, Enum):
    """Sales pipeline position tag carried on every record."""

    COLD = "cold"
    CONTACTED = "contacted"
    INTERESTED = "interested"
    QUALIFIED = "qualified"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"
    FROZEN = "frozen"


class ConfidenceEntry(BaseModel):
    """One observation of a field value from one source."""

    field: ProspectField
    value: Any
    confidence: float = Field(..., ge=0, le=100)
    source: str
    pass_id: int
    observed_at: datetime

    model_config = ConfigDict(frozen=True, extra="forbid")


class ConflictingValue(BaseModel):
    """A distinct value reported for a conflicted field."""

    value: Any
    source: str
    confidence: float
    pass_id: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class ResolvedField(BaseModel):
    """Fused outcome for one field."""

    field: ProspectField
    resolved_value: Any
    confidence: float = Field(..., ge=0, le=100)
    contributing_sources: list[str] = Field(default_factory=list)
    conflicted: bool = False
    conflicting_values: list[ConflictingValue] = Field(default_factory=list)
    last_verified: datetime

    model_config = ConfigDict(frozen=True, extra="forbid")


class QualificationBreakdown(BaseModel):
    """Per-factor points behind a qualification score."""

    business_size: int = 0
    digital_presence: int = 0
    location: int = 0
    industry: int = 0
    revenue: int = 0
    competitive_gap: int = 0

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def total(self) -> int:
        points = (
            self.business_size
            + self.digital_presence
            + self.location
            + self.industry
            + self.revenue
            + self.competitive_gap
        )
        return max(0, min(points, 100))


class ProspectRecord(BaseModel):
    """Aggregate research record for one target, updated after every run."""

    target: Target
    resolved_fields: dict[ProspectField, ResolvedField] = Field(default_factory=dict)
    entries: list[ConfidenceEntry] = Field(default_factory=list)
    overall_confidence: float = 0.0
    qualification_score: int = Field(default=0, ge=0, le=100)
    qualification_breakdown: QualificationBreakdown = Field(default_factory=QualificationBreakdown)
    pipeline_stage: PipelineStage = PipelineStage.COLD
    review_flags: list[ProspectField] = Field(default_factory=list)
    data_sources: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def target_key(self) -> str:
        return self.target.key

    def value(self, field: ProspectField) -> Any:
        """Return the resolved value for a field, or None when absent."""
        resolved = self.resolved_fields.get(field)
        return resolved.resolved_value if resolved else None

    def has(self, field: ProspectField) -> bool:
        return field in self.resolved_fields
