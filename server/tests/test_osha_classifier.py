from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from app.recordkeeping.models.osha import ClassificationOverride, ClassificationResult
from app.recordkeeping.services.osha_classifier import (
    classify,
    derive_illness_type,
    determine_classification,
    resolve_log_year,
)


def test_fatality_takes_precedence_over_every_other_outcome(intake_factory):
    result = classify(
        intake_factory(fatal=True, days_away_from_work=4, days_on_restriction=2, treatment="hospitalized")
    )
    assert result.recordable is True
    assert result.classification == "FATALITY"
    assert result.source == "computed"


def test_days_away_beats_restriction_and_transfer(intake_factory):
    result = classify(intake_factory(days_away_from_work=1, days_on_restriction=5, days_on_transfer=5))
    assert result.classification == "DAYS_AWAY"


def test_restriction_beats_transfer(intake_factory):
    assert determine_classification(intake_factory(days_on_restriction=1, days_on_transfer=9)) == "RESTRICTED_WORK"
    assert determine_classification(intake_factory(days_on_transfer=2)) == "JOB_TRANSFER"


@pytest.mark.parametrize(
    "fields",
    [
        {"treatment": "medical"},
        {"treatment": "emergency_room"},
        {"loss_of_consciousness": True},
        {"diagnosed_by_professional": True},
        {"injury_category": "hearing loss", "standard_threshold_shift": True},
    ],
)
def test_other_recordable_criteria(intake_factory, fields):
    assert classify(intake_factory(**fields)).classification == "OTHER_RECORDABLE"


def test_first_aid_only_is_not_recordable(intake_factory):
    result = classify(intake_factory(treatment="first_aid"))
    assert result.recordable is False
    assert result.classification == "NOT_RECORDABLE"
    assert result.event_type is None
    assert result.illness_type is None


def test_hearing_loss_without_threshold_shift_is_not_recordable(intake_factory):
    result = classify(intake_factory(injury_category="hearing_loss"))
    assert result.classification == "NOT_RECORDABLE"


def test_recordable_flag_always_matches_classification(intake_factory):
    samples = [
        intake_factory(),
        intake_factory(fatal=True),
        intake_factory(days_on_transfer=3),
        intake_factory(treatment="first_aid"),
        intake_factory(diagnosed_by_professional=True, injury_category="asthma"),
    ]
    for intake in samples:
        result = classify(intake)
        assert result.recordable is (result.classification != "NOT_RECORDABLE")


def test_classification_is_deterministic(intake_factory):
    intake = intake_factory(days_on_restriction=2, injury_category="dermatitis")
    assert classify(intake) == classify(intake.model_copy(deep=True))


def test_injury_has_no_illness_type(intake_factory):
    result = classify(intake_factory(treatment="medical", injury_category="laceration"))
    assert result.event_type == "INJURY"
    assert result.illness_type is None


@pytest.mark.parametrize(
    "category, expected",
    [
        ("Dermatitis", "SKIN_DISORDER"),
        ("asthma", "RESPIRATORY_CONDITION"),
        ("lead-poisoning", "POISONING"),
        ("heat stress", "ALL_OTHER_ILLNESSES"),
    ],
)
def test_illness_types_follow_the_narrative_category(intake_factory, category, expected):
    result = classify(intake_factory(injury_category=category, diagnosed_by_professional=True))
    assert result.event_type == "ILLNESS"
    assert result.illness_type == expected


def test_hearing_loss_requires_threshold_shift_for_its_own_column(intake_factory):
    assert derive_illness_type(intake_factory(injury_category="hearing_loss")) == "ALL_OTHER_ILLNESSES"
    result = classify(intake_factory(injury_category="hearing_loss", standard_threshold_shift=True))
    assert result.illness_type == "HEARING_LOSS"


def test_log_year_defaults_to_occurrence_year(intake_factory):
    intake = intake_factory(occurred_at=datetime(2023, 12, 31, 23, 0, tzinfo=timezone.utc))
    assert resolve_log_year(intake) == 2023
    assert resolve_log_year(intake.model_copy(update={"log_year_override": 2024})) == 2024


def test_override_is_echoed_verbatim(intake_factory):
    intake = intake_factory(
        treatment="first_aid",
        override=ClassificationOverride(
            recordable=True,
            classification="RESTRICTED_WORK",
            event_type="ILLNESS",
            illness_type="POISONING",
        ),
    )
    result = classify(intake)
    assert result.source == "override"
    assert result.recordable is True
    assert result.classification == "RESTRICTED_WORK"
    assert result.event_type == "ILLNESS"
    assert result.illness_type == "POISONING"
    assert result.log_year == 2024


def test_not_recordable_override_suppresses_a_computed_case(intake_factory):
    result = classify(
        intake_factory(days_away_from_work=3, override=ClassificationOverride(recordable=False))
    )
    assert result.source == "override"
    assert result.recordable is False
    assert result.classification == "NOT_RECORDABLE"


def test_override_and_computed_results_share_one_shape(intake_factory):
    computed = classify(intake_factory(fatal=True))
    overridden = classify(
        intake_factory(override=ClassificationOverride(recordable=True, classification="FATALITY"))
    )
    assert set(computed.model_dump()) == set(overridden.model_dump())

    adapter = TypeAdapter(ClassificationResult)
    assert adapter.validate_python(overridden.model_dump()) == overridden
    assert adapter.validate_python(computed.model_dump()) == computed


@pytest.mark.parametrize(
    "payload, conflicting",
    [
        ({"recordable": True}, "recordable, classification"),
        ({"recordable": True, "classification": "NOT_RECORDABLE"}, "recordable, classification"),
        ({"recordable": False, "classification": "DAYS_AWAY"}, "recordable, classification"),
        (
            {"recordable": True, "classification": "DAYS_AWAY", "event_type": "INJURY", "illness_type": "POISONING"},
            "event_type, illness_type",
        ),
    ],
)
def test_inconsistent_override_is_rejected(payload, conflicting):
    with pytest.raises(ValidationError, match=f"Conflicting override fields \\({conflicting}\\)") as excinfo:
        ClassificationOverride.model_validate(payload)

    error = excinfo.value.errors()[0]
    assert error["type"] == "override_conflict"
    assert error["ctx"]["fields"] == conflicting.split(", ")
