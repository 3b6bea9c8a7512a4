"""Pydantic models for OSHA-style injury and illness recordkeeping."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, model_validator
from pydantic_core import PydanticCustomError


# Type aliases
OshaClassification = Literal[
    "FATALITY",
    "DAYS_AWAY",
    "RESTRICTED_WORK",
    "JOB_TRANSFER",
    "OTHER_RECORDABLE",
    "NOT_RECORDABLE",
]
OshaEventType = Literal["INJURY", "ILLNESS"]
OshaIllnessType = Literal[
    "SKIN_DISORDER",
    "RESPIRATORY_CONDITION",
    "POISONING",
    "HEARING_LOSS",
    "ALL_OTHER_ILLNESSES",
]
TreatmentLevel = Literal["none", "first_aid", "medical", "emergency_room", "hospitalized"]
IncidentKind = Literal["original", "correction"]
ClassificationSource = Literal["computed", "override"]
CertificationAction = Literal["certified", "posted", "correction_opened", "archived"]

LogYear = Annotated[int, Field(ge=1971, le=9999)]


# ===========================================
# Classification Models
# ===========================================

class ClassificationOverride(BaseModel):
    """Operator judgment call that replaces the computed classification."""
    recordable: bool
    classification: Optional[OshaClassification] = None
    event_type: Optional[OshaEventType] = None
    illness_type: Optional[OshaIllnessType] = None

    @model_validator(mode="after")
    def _check_consistency(self):
        conflicts: list[str] = []
        if self.recordable and self.classification in (None, "NOT_RECORDABLE"):
            conflicts = ["recordable", "classification"]
            reason = "a recordable override needs a recordable classification"
        elif not self.recordable and self.classification not in (None, "NOT_RECORDABLE"):
            conflicts = ["recordable", "classification"]
            reason = f"classification {self.classification} contradicts recordable=false"
        elif self.illness_type is not None and self.event_type != "ILLNESS":
            conflicts = ["event_type", "illness_type"]
            reason = "illness_type is only valid when event_type is ILLNESS"
        elif not self.recordable and self.event_type is not None:
            conflicts = ["recordable", "event_type"]
            reason = "a not-recordable override cannot carry an event_type"
        if conflicts:
            raise PydanticCustomError(
                "override_conflict",
                f"Conflicting override fields ({', '.join(conflicts)}): {reason}",
                {"fields": conflicts},
            )
        return self


class IncidentInput(BaseModel):
    """Incident attributes supplied by intake; the classifier's only input."""
    occurred_at: datetime
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=255)
    severity: int = Field(3, ge=1, le=5)
    injury_category: Optional[str] = Field(None, max_length=100)  # laceration, dermatitis, asthma, ...
    body_part_affected: Optional[str] = Field(None, max_length=100)
    nature_of_injury: Optional[str] = Field(None, max_length=255)
    fatal: bool = False
    treatment: TreatmentLevel = "none"
    loss_of_consciousness: bool = False
    diagnosed_by_professional: bool = False
    standard_threshold_shift: bool = False
    days_away_from_work: int = Field(0, ge=0)
    days_on_restriction: int = Field(0, ge=0)
    days_on_transfer: int = Field(0, ge=0)
    privacy_case: bool = False
    log_year_override: Optional[LogYear] = None  # late-discovered illnesses go in the diagnosis year
    override: Optional[ClassificationOverride] = None


class _ClassificationFields(BaseModel):
    recordable: bool
    classification: OshaClassification
    event_type: Optional[OshaEventType] = None
    illness_type: Optional[OshaIllnessType] = None
    log_year: int


class ComputedClassification(_ClassificationFields):
    """Classification derived by the rules engine."""
    source: Literal["computed"] = "computed"


class OverrideClassification(_ClassificationFields):
    """Classification echoed from an operator override."""
    source: Literal["override"] = "override"


ClassificationResult = Annotated[
    Union[ComputedClassification, OverrideClassification],
    Field(discriminator="source"),
]


# ===========================================
# Incident Models
# ===========================================

class IncidentRecord(IncidentInput):
    """An incident row as stored, including engine-owned fields."""
    id: UUID
    org_id: UUID
    kind: IncidentKind = "original"
    corrects_incident_id: Optional[UUID] = None
    log_year: Optional[int] = None
    recordable: bool = False
    classification: Optional[OshaClassification] = None
    event_type: Optional[OshaEventType] = None
    illness_type: Optional[OshaIllnessType] = None
    classification_source: Optional[ClassificationSource] = None
    classified_at: Optional[datetime] = None
    case_report_completed_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_input(self) -> IncidentInput:
        return IncidentInput.model_validate(
            self.model_dump(include=set(IncidentInput.model_fields))
        )


class ReclassifyRequest(BaseModel):
    """Re-run classification, optionally with an operator override or a new log year."""
    override: Optional[ClassificationOverride] = None
    clear_override: bool = False
    log_year: Optional[LogYear] = None


class IncidentResponse(BaseModel):
    """Response model for an incident with its classification."""
    incident: IncidentRecord
    log_years_recomputed: list[int] = []


# ===========================================
# Aggregate Models
# ===========================================

class OshaCounts(BaseModel):
    """Counts that make up the annual summary."""
    total_deaths: int = 0
    total_days_away: int = 0
    total_restricted: int = 0
    total_transfer: int = 0
    total_other_recordable: int = 0
    total_injuries: int = 0
    total_skin_disorders: int = 0
    total_respiratory_conditions: int = 0
    total_poisonings: int = 0
    total_hearing_loss: int = 0
    total_other_illnesses: int = 0
    total_recordable: int = 0
    total_days_away_from_work: int = 0
    total_days_restricted_or_transferred: int = 0

    @property
    def dart_cases(self) -> int:
        return self.total_days_away + self.total_restricted + self.total_transfer


class OshaRates(BaseModel):
    """Rates per 200,000 exposure hours, kept exact."""
    trir: Decimal = Decimal(0)
    dart_rate: Decimal = Decimal(0)
    ltir: Decimal = Decimal(0)
    severity_rate: Decimal = Decimal(0)


COUNT_FIELDS = tuple(OshaCounts.model_fields)
RATE_FIELDS = tuple(OshaRates.model_fields)


class OshaLogRecord(OshaCounts):
    """One annual log per (organization, year), as stored."""
    id: UUID
    org_id: UUID
    year: int
    total_hours_worked: Decimal = Decimal(0)
    avg_employee_count: int = 0
    trir: Decimal = Decimal(0)
    dart_rate: Decimal = Decimal(0)
    ltir: Decimal = Decimal(0)
    severity_rate: Decimal = Decimal(0)
    certified_at: Optional[datetime] = None
    certified_by: Optional[str] = None
    certified_title: Optional[str] = None
    posted_at: Optional[datetime] = None
    posted_by: Optional[str] = None
    version: int = 1
    revision: int = 1
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def counts(self) -> OshaCounts:
        return OshaCounts.model_validate(self.model_dump(include=set(COUNT_FIELDS)))

    def rates(self) -> OshaRates:
        return OshaRates.model_validate(self.model_dump(include=set(RATE_FIELDS)))

    @property
    def is_certified(self) -> bool:
        return self.certified_at is not None

    @property
    def is_posted(self) -> bool:
        return self.posted_at is not None


class CertificationEvent(BaseModel):
    """An entry in the append-only certification trail."""
    id: Optional[UUID] = None
    org_id: UUID
    year: int
    revision: int
    action: CertificationAction
    actor: Optional[str] = None
    actor_title: Optional[str] = None
    details: dict[str, Any] = {}
    created_at: Optional[datetime] = None


# ===========================================
# Request Models
# ===========================================

class ExposureUpdate(BaseModel):
    """Exposure inputs entered on the annual summary form."""
    total_hours_worked: Decimal = Field(..., ge=0)
    avg_employee_count: int = Field(..., ge=0)


class CertifyRequest(BaseModel):
    certified_by: str = Field(..., min_length=1, max_length=255)
    certified_title: str = Field(..., min_length=1, max_length=255)


class PostRequest(BaseModel):
    posted_by: str = Field(..., min_length=1, max_length=255)


class ArchiveRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ===========================================
# Response Models
# ===========================================

class OshaRatesResponse(BaseModel):
    trir: float
    dart_rate: float
    ltir: float
    severity_rate: float


class OshaLogResponse(BaseModel):
    """Annual log as shown to the reporting surface."""
    id: UUID
    org_id: UUID
    year: int
    revision: int
    version: int
    state: str
    total_hours_worked: float
    avg_employee_count: int
    counts: OshaCounts
    rates: OshaRatesResponse
    certified_at: Optional[datetime] = None
    certified_by: Optional[str] = None
    certified_title: Optional[str] = None
    posted_at: Optional[datetime] = None
    posted_by: Optional[str] = None
    posting_window_start: date
    posting_window_end: date
    retention_expires_on: date
    archived_at: Optional[datetime] = None


class OshaLogListResponse(BaseModel):
    logs: list[OshaLogResponse]
    total: int


class Osha300Row(BaseModel):
    """One line of the Form 300 log."""
    case_number: int
    incident_id: UUID
    kind: IncidentKind
    case_title: str
    occurred_at: datetime
    location: Optional[str] = None
    classification: OshaClassification
    event_type: Optional[OshaEventType] = None
    illness_type: Optional[OshaIllnessType] = None
    days_away_from_work: int
    days_restricted_or_transferred: int
    body_part_affected: Optional[str] = None
    nature_of_injury: Optional[str] = None
    privacy_case: bool
    case_report_completed_at: Optional[datetime] = None


class Osha300LogResponse(BaseModel):
    org_id: UUID
    year: int
    rows: list[Osha300Row]
    total_days_away_from_work: int
    total_days_restricted_or_transferred: int


class PostingStatusResponse(BaseModel):
    year: int
    state: str
    window_start: date
    window_end: date
    window_open: bool
    posting_due: bool
    posting_overdue: bool
    certified_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None


class CertificationEventListResponse(BaseModel):
    events: list[CertificationEvent]
    total: int


class CorrectionResponse(BaseModel):
    """A correction entry and the reopened revision of its log."""
    incident: IncidentRecord
    log: OshaLogResponse


class OshaLogRevisionListResponse(BaseModel):
    """Snapshots of a year's log as it stood at each certification."""
    revisions: list[OshaLogResponse]
    total: int


class WorkflowStateMachineResponse(BaseModel):
    states: list[str]
    transitions: dict[str, list[str]]
