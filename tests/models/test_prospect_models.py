from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.models.attempt import PassResult, ProcessingAttempt
from app.models.prospect import (
    ProspectField,
    ProspectRecord,
    Target,
    coerce_fields,
    normalize_business_name,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Acme Plumbing, LLC", "acme plumbing"),
        ("  ACME   Plumbing Inc. ", "acme plumbing"),
        ("Smith & Sons Co", "smith sons"),
        ("Company", "company"),
    ],
)
def test_normalize_business_name(raw, expected):
    assert normalize_business_name(raw) == expected


def test_target_key_ignores_suffix_and_case():
    first = Target(name="Acme Plumbing LLC", city="Denver", state="CO")
    second = Target(name="ACME PLUMBING", city="denver", state="co")

    assert first.key == second.key == "acme-plumbing-denver-co"


def test_target_parse_location():
    target = Target.parse("  Peak Roofing ", "Colorado Springs, CO")

    assert target == Target(name="Peak Roofing", city="Colorado Springs", state="CO")
    assert target.location == "Colorado Springs, CO"
    assert Target.parse("Peak Roofing").location is None


def test_target_is_frozen_and_rejects_blank_name():
    target = Target(name="Acme")
    with pytest.raises(ValidationError):
        target.name = "Other"
    with pytest.raises(ValidationError):
        Target(name="")


def test_coerce_fields_accepts_known_and_quarantines_the_rest():
    accepted, quarantined = coerce_fields(
        {
            "phone": " 303-555-0100 ",
            "review_count": "42",
            "rating": "excellent",
            "website": "",
            "shoe_size": 11,
            "competitive_gaps": ["no booking"],
        }
    )

    assert accepted == {
        ProspectField.PHONE: "303-555-0100",
        ProspectField.REVIEW_COUNT: 42,
        ProspectField.COMPETITIVE_GAPS: ["no booking"],
    }
    assert quarantined == {"rating": "excellent", "shoe_size": 11}


def test_record_accessors():
    record = ProspectRecord(target=Target(name="Acme"))

    assert record.target_key == "acme"
    assert record.value(ProspectField.PHONE) is None
    assert record.has(ProspectField.PHONE) is False
    assert record.qualification_score == 0


def test_attempt_result_lookup():
    result = PassResult(pass_id=2, pass_name="web_verification", source_id="web_search", success=False)
    attempt = ProcessingAttempt(target_key="acme", pass_results=[result], failed_passes=[2])

    assert attempt.executed_passes == [2]
    assert attempt.result_for(2) is result
    assert attempt.result_for(3) is None
