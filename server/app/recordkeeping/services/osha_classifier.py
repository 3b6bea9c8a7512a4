"""
OSHA recordability rules engine.

Pure and total: every valid IncidentInput yields exactly one
ClassificationResult. "Not recordable" is an ordinary outcome, never an
error. Operator overrides are validated when the override model is built,
so an inconsistent override can never reach classify().

Decision precedence (first match wins):
    fatality > days away > restricted work > job transfer
    > other recordable criteria > not recordable
"""

from typing import Optional

from ..models.osha import (
    ClassificationResult,
    ComputedClassification,
    IncidentInput,
    OshaClassification,
    OshaEventType,
    OshaIllnessType,
    OverrideClassification,
)

# Ordered treatment levels; anything above first aid is "medical treatment".
TREATMENT_LEVELS: dict[str, int] = {
    "none": 0,
    "first_aid": 1,
    "medical": 2,
    "emergency_room": 3,
    "hospitalized": 4,
}
MINOR_TREATMENT_THRESHOLD = TREATMENT_LEVELS["first_aid"]

# Narrative categories that describe an illness rather than an injury.
_ILLNESS_CATEGORIES: dict[str, OshaIllnessType] = {
    "skin_disorder": "SKIN_DISORDER",
    "dermatitis": "SKIN_DISORDER",
    "rash": "SKIN_DISORDER",
    "eczema": "SKIN_DISORDER",
    "chemical_burn_skin": "SKIN_DISORDER",
    "respiratory": "RESPIRATORY_CONDITION",
    "respiratory_condition": "RESPIRATORY_CONDITION",
    "asthma": "RESPIRATORY_CONDITION",
    "pneumonitis": "RESPIRATORY_CONDITION",
    "silicosis": "RESPIRATORY_CONDITION",
    "inhalation": "RESPIRATORY_CONDITION",
    "poisoning": "POISONING",
    "lead_poisoning": "POISONING",
    "carbon_monoxide": "POISONING",
    "toxic_exposure": "POISONING",
    "hearing_loss": "HEARING_LOSS",
    "noise_induced_hearing_loss": "HEARING_LOSS",
    "illness": "ALL_OTHER_ILLNESSES",
    "other_illness": "ALL_OTHER_ILLNESSES",
    "infection": "ALL_OTHER_ILLNESSES",
    "heat_stress": "ALL_OTHER_ILLNESSES",
    "heat_illness": "ALL_OTHER_ILLNESSES",
    "frostbite": "ALL_OTHER_ILLNESSES",
    "musculoskeletal_disorder": "ALL_OTHER_ILLNESSES",
    "repetitive_strain": "ALL_OTHER_ILLNESSES",
    "infectious_disease": "ALL_OTHER_ILLNESSES",
}


def _normalize_category(category: Optional[str]) -> str:
    if not category:
        return ""
    return category.strip().lower().replace("-", "_").replace(" ", "_")


def derive_event_type(incident: IncidentInput) -> OshaEventType:
    """ILLNESS when the narrative category names an illness, INJURY otherwise."""
    if _normalize_category(incident.injury_category) in _ILLNESS_CATEGORIES:
        return "ILLNESS"
    return "INJURY"


def derive_illness_type(incident: IncidentInput) -> OshaIllnessType:
    """Secondary decision table, only meaningful for illnesses."""
    illness_type = _ILLNESS_CATEGORIES.get(
        _normalize_category(incident.injury_category), "ALL_OTHER_ILLNESSES"
    )
    # Hearing loss only counts as such after a standard threshold shift.
    if illness_type == "HEARING_LOSS" and not incident.standard_threshold_shift:
        return "ALL_OTHER_ILLNESSES"
    return illness_type


def _is_hearing_loss_case(incident: IncidentInput) -> bool:
    category = _ILLNESS_CATEGORIES.get(_normalize_category(incident.injury_category))
    return category == "HEARING_LOSS" and incident.standard_threshold_shift


def meets_other_recordable_criteria(incident: IncidentInput) -> bool:
    """General recording criteria that apply even without lost time."""
    if TREATMENT_LEVELS[incident.treatment] > MINOR_TREATMENT_THRESHOLD:
        return True
    if incident.loss_of_consciousness:
        return True
    if incident.diagnosed_by_professional:
        return True
    return _is_hearing_loss_case(incident)


def determine_classification(incident: IncidentInput) -> OshaClassification:
    if incident.fatal:
        return "FATALITY"
    if incident.days_away_from_work > 0:
        return "DAYS_AWAY"
    if incident.days_on_restriction > 0:
        return "RESTRICTED_WORK"
    if incident.days_on_transfer > 0:
        return "JOB_TRANSFER"
    if meets_other_recordable_criteria(incident):
        return "OTHER_RECORDABLE"
    return "NOT_RECORDABLE"


def resolve_log_year(incident: IncidentInput) -> int:
    if incident.log_year_override is not None:
        return incident.log_year_override
    return incident.occurred_at.year


def classify(incident: IncidentInput) -> ClassificationResult:
    """Classify an incident, echoing an operator override when one is present."""
    log_year = resolve_log_year(incident)

    override = incident.override
    if override is not None:
        if not override.recordable:
            return OverrideClassification(
                recordable=False,
                classification="NOT_RECORDABLE",
                log_year=log_year,
            )
        # Event/illness type are descriptive; fill them from the narrative when omitted.
        event_type = override.event_type or derive_event_type(incident)
        illness_type = override.illness_type
        if event_type == "ILLNESS" and illness_type is None:
            illness_type = derive_illness_type(incident)
        return OverrideClassification(
            recordable=True,
            classification=override.classification,
            event_type=event_type,
            illness_type=illness_type,
            log_year=log_year,
        )

    classification = determine_classification(incident)
    if classification == "NOT_RECORDABLE":
        return ComputedClassification(
            recordable=False,
            classification=classification,
            log_year=log_year,
        )

    event_type = derive_event_type(incident)
    return ComputedClassification(
        recordable=True,
        classification=classification,
        event_type=event_type,
        illness_type=derive_illness_type(incident) if event_type == "ILLNESS" else None,
        log_year=log_year,
    )
