from __future__ import annotations

from app.models.prospect import ProspectField
from app.services.prospecting import confidence
from tests.utils import entry


def test_corroborating_sources_boost_confidence():
    entries = [
        entry(ProspectField.PHONE, "(303) 555-0100", 85, source="google_maps", pass_id=1),
        entry(ProspectField.PHONE, "303-555-0100", 75, source="web_search", pass_id=2),
    ]

    resolved = confidence.resolve(entries)[ProspectField.PHONE]

    assert resolved.confidence == 85
    assert resolved.conflicted is False
    assert resolved.conflicting_values == []
    assert resolved.contributing_sources == ["google_maps", "web_search"]
    assert resolved.resolved_value == "(303) 555-0100"


def test_corroboration_is_capped_at_95():
    entries = [
        entry(ProspectField.WEBSITE, "https://www.acme.com", 95, source="google_maps", pass_id=1),
        entry(ProspectField.WEBSITE, "acme.com/", 90, source="web_search", pass_id=2),
        entry(ProspectField.WEBSITE, "http://acme.com", 90, source="registry", pass_id=4),
    ]

    resolved = confidence.resolve(entries)[ProspectField.WEBSITE]

    assert resolved.confidence == 95
    assert resolved.conflicted is False


def test_single_entry_keeps_its_confidence():
    resolved = confidence.resolve(
        [entry(ProspectField.RATING, 4.6, 65, source="google_reviews", pass_id=3)]
    )[ProspectField.RATING]

    assert resolved.confidence == 65
    assert resolved.contributing_sources == ["google_reviews"]


def test_same_source_repeated_gets_no_bonus():
    entries = [
        entry(ProspectField.INDUSTRY, "Healthcare", 70, source="registry", pass_id=4),
        entry(ProspectField.INDUSTRY, "healthcare", 80, source="registry", pass_id=5),
    ]

    resolved = confidence.resolve(entries)[ProspectField.INDUSTRY]

    assert resolved.confidence == 75
    assert resolved.contributing_sources == ["registry"]


def test_conflict_tie_goes_to_earliest_pass():
    entries = [
        entry(ProspectField.PHONE, "303-555-0199", 70, source="source_b", pass_id=2),
        entry(ProspectField.PHONE, "303-555-0100", 70, source="source_a", pass_id=1),
    ]

    resolved = confidence.resolve(entries)[ProspectField.PHONE]

    assert resolved.resolved_value == "303-555-0100"
    assert resolved.conflicted is True
    assert len(resolved.conflicting_values) == 2
    assert [item.source for item in resolved.conflicting_values] == ["source_a", "source_b"]
    assert resolved.confidence == 70


def test_conflict_prefers_higher_confidence_over_pass_order():
    entries = [
        entry(ProspectField.ADDRESS, "1 Old Rd", 65, source="google_reviews", pass_id=3),
        entry(ProspectField.ADDRESS, "123 Main St", 85, source="google_maps", pass_id=5),
    ]

    resolved = confidence.resolve(entries)[ProspectField.ADDRESS]

    assert resolved.resolved_value == "123 Main St"
    assert resolved.conflicted is True
    assert resolved.confidence == 85


def test_resolve_is_idempotent():
    entries = [
        entry(ProspectField.PHONE, "303-555-0100", 85, source="google_maps", pass_id=1),
        entry(ProspectField.PHONE, "303-555-0199", 75, source="web_search", pass_id=2, minutes=3),
        entry(ProspectField.REVIEW_INSIGHTS, ["Fast", "friendly"], 65, source="google_reviews", pass_id=3),
    ]

    first = confidence.resolve(entries)
    second = confidence.resolve(list(entries))

    assert [item.model_dump_json() for item in first.values()] == [
        item.model_dump_json() for item in second.values()
    ]
    assert list(first) == list(second)


def test_resolve_is_independent_of_input_order():
    entries = [
        entry(ProspectField.PHONE, "303-555-0100", 70, source="a", pass_id=1),
        entry(ProspectField.PHONE, "303-555-0199", 70, source="b", pass_id=2),
        entry(ProspectField.RATING, 4.5, 65, source="c", pass_id=3),
    ]

    forward = confidence.resolve(entries)
    backward = confidence.resolve(list(reversed(entries)))

    assert {key: value.model_dump_json() for key, value in forward.items()} == {
        key: value.model_dump_json() for key, value in backward.items()
    }


def test_overall_confidence_is_mean_and_zero_when_empty():
    resolved = confidence.resolve(
        [
            entry(ProspectField.PHONE, "303-555-0100", 85, source="google_maps", pass_id=1),
            entry(ProspectField.RATING, 4.6, 65, source="google_reviews", pass_id=3),
        ]
    )

    assert confidence.overall_confidence(resolved) == 75
    assert confidence.overall_confidence({}) == 0.0


def test_review_flags_include_conflicts_and_low_confidence():
    resolved = confidence.resolve(
        [
            entry(ProspectField.PHONE, "303-555-0100", 85, source="google_maps", pass_id=1),
            entry(ProspectField.PHONE, "303-555-0199", 75, source="web_search", pass_id=2),
            entry(ProspectField.RATING, 4.6, 65, source="google_reviews", pass_id=3),
            entry(ProspectField.ADDRESS, "123 Main St", 85, source="google_maps", pass_id=1),
        ]
    )

    flags = confidence.review_flags(resolved, reliability_threshold=70)

    assert flags == [ProspectField.PHONE, ProspectField.RATING]


def test_supersede_replaces_earlier_run_of_same_pass():
    old = [
        entry(ProspectField.PHONE, "303-555-0100", 85, source="google_maps", pass_id=1),
        entry(ProspectField.RATING, 4.1, 85, source="google_maps", pass_id=1),
    ]
    new = [entry(ProspectField.PHONE, "303-555-0111", 85, source="google_maps", pass_id=1, minutes=30)]

    merged = confidence.supersede(old, new)

    phones = [item.value for item in merged if item.field is ProspectField.PHONE]
    assert phones == ["303-555-0111"]
    assert any(item.field is ProspectField.RATING for item in merged)


def test_comparison_key_normalizes_by_field():
    assert confidence.values_match(ProspectField.PHONE, "+1 (303) 555-0100", "303.555.0100")
    assert confidence.values_match(ProspectField.WEBSITE, "https://www.Acme.com/", "acme.com")
    assert confidence.values_match(ProspectField.OWNER_NAME, "Jane  Doe", "jane doe")
    assert confidence.values_match(ProspectField.PAIN_POINTS, ["b", "A"], ["a", "B"])
    assert confidence.values_match(ProspectField.RATING, 4, 4.0)
    assert not confidence.values_match(ProspectField.PHONE, "303-555-0100", "303-555-0199")
