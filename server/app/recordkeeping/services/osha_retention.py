"""
Retention and correction guard.

Once a year's log is certified, the incidents counted in it are read-only.
The only way to amend a certified year is a correction entry: a new incident
of kind "correction" that supersedes the original and opens a new revision of
the log. Nothing here deletes rows; archival only stamps archived_at.
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from ...config import MINIMUM_RETENTION_YEARS
from ..errors import (
    ConcurrencyConflictError,
    LogAlreadyCertifiedError,
    RecordNotFoundError,
    StateConflictError,
)
from ..models.osha import CertificationEvent, IncidentInput, IncidentRecord, OshaLogRecord
from .osha_aggregator import recompute
from .osha_classifier import classify, resolve_log_year
from .osha_workflow import describe_log_state

logger = logging.getLogger(__name__)


def retention_expires_on(year: int, retention_years: int = MINIMUM_RETENTION_YEARS) -> date:
    """Last day the log and its source incidents must remain retrievable."""
    return date(year + max(retention_years, MINIMUM_RETENTION_YEARS), 12, 31)


def ensure_log_open(log: Optional[OshaLogRecord]) -> None:
    if log is not None and log.is_certified:
        raise LogAlreadyCertifiedError(log.year, log.certified_at, state=describe_log_state(log))


def ensure_incident_mutable(
    incident: IncidentRecord,
    current_log: Optional[OshaLogRecord],
    target_log: Optional[OshaLogRecord] = None,
) -> None:
    """Refuse classification writes that would touch a certified year."""
    ensure_log_open(current_log)
    ensure_log_open(target_log)
    if incident.locked_at is not None:
        # Counted in a certification that has since been reopened by a correction.
        raise LogAlreadyCertifiedError(
            incident.log_year,
            incident.locked_at,
            state={
                "incident_id": str(incident.id),
                "year": incident.log_year,
                "locked_at": incident.locked_at.isoformat(),
            },
            message=(
                f"Incident {incident.id} was counted in the certified {incident.log_year} log "
                "and can only be amended by a correction entry"
            ),
        )


async def record_correction(
    repo,
    org_id: UUID,
    correction: IncidentInput,
    acting_user_id: UUID,
    corrects_incident_id: Optional[UUID] = None,
) -> tuple[IncidentRecord, OshaLogRecord]:
    """Append a correction entry to a certified year and reopen its log.

    With ``corrects_incident_id`` the entry supersedes that incident, which
    stays in place unchanged. Without it the entry adds a case discovered
    after certification.

    A year already reopened by an earlier correction takes further
    corrections of its locked incidents into the same revision.
    """
    if not await repo.organization_exists(org_id):
        raise RecordNotFoundError(f"Organization {org_id} not found")

    original = None
    async with repo.transaction():
        if corrects_incident_id is not None:
            original = await repo.get_incident(org_id, corrects_incident_id, for_update=True)
            if original is None:
                raise RecordNotFoundError(f"Incident {corrects_incident_id} not found")
            if original.log_year is None:
                raise StateConflictError(
                    f"Incident {original.id} has never been classified",
                    state={"incident_id": str(original.id)},
                )
            newer = await repo.get_superseding_incident(original.id)
            if newer is not None:
                raise StateConflictError(
                    f"Incident {original.id} is already corrected by {newer.id}; correct the latest entry",
                    state={"incident_id": str(original.id), "superseded_by": str(newer.id)},
                )
            correction = correction.model_copy(update={"log_year_override": original.log_year})
        year = resolve_log_year(correction)

        log = await repo.get_log(org_id, year, for_update=True)
        reopened_earlier = (
            log is not None
            and not log.is_certified
            and log.revision > 1
            and original is not None
            and original.locked_at is not None
        )
        if log is None or not (log.is_certified or reopened_earlier):
            raise StateConflictError(
                f"Log for {year} is not certified; reclassify the incident instead of recording a correction",
                state=describe_log_state(log) if log else {"org_id": str(org_id), "year": year, "state": None},
            )

        if log.is_certified:
            reopened = await repo.open_revision(log.id, log.version)
            if reopened is None:
                raise ConcurrencyConflictError(f"Log for {year} changed while opening a correction; retry")
            details = {
                "previous_revision": log.revision,
                "previous_certified_at": log.certified_at.isoformat(),
            }
        else:
            reopened = log
            details = {"revision_already_open": True}

        entry = await repo.insert_incident(
            org_id, correction, kind="correction", corrects_incident_id=corrects_incident_id
        )
        entry = await repo.save_classification(
            entry.id, classify(correction), correction.override, correction.log_year_override
        )
        await repo.append_event(
            CertificationEvent(
                org_id=org_id,
                year=year,
                revision=reopened.revision,
                action="correction_opened",
                actor=str(acting_user_id),
                details={
                    "correction_incident_id": str(entry.id),
                    "corrects_incident_id": str(corrects_incident_id) if corrects_incident_id else None,
                    **details,
                },
            )
        )
        updated_log = await recompute(repo, org_id, year)

    logger.info(
        f"Recorded correction {entry.id} for org={org_id} year={year}; "
        f"log reopened as revision {updated_log.revision}"
    )
    return entry, updated_log


async def archive_incident(repo, org_id: UUID, incident_id: UUID) -> IncidentRecord:
    """Soft-archive an incident; it stays readable by id and stays counted."""
    incident = await repo.get_incident(org_id, incident_id)
    if incident is None:
        raise RecordNotFoundError(f"Incident {incident_id} not found")
    archived = await repo.archive_incident(incident_id)
    logger.info(f"Archived incident {incident_id} org={org_id}")
    return archived


async def archive_log(
    repo,
    org_id: UUID,
    year: int,
    acting_user_id: UUID,
    reason: Optional[str] = None,
) -> OshaLogRecord:
    """Soft-archive an annual log; the row and its trail are kept."""
    async with repo.transaction():
        log = await repo.get_log(org_id, year, for_update=True)
        if log is None:
            raise RecordNotFoundError(f"Log for {year} not found")
        if log.archived_at is not None:
            return log
        archived = await repo.archive_log(log.id)
        await repo.append_event(
            CertificationEvent(
                org_id=org_id,
                year=year,
                revision=archived.revision,
                action="archived",
                actor=str(acting_user_id),
                details={"reason": reason} if reason else {},
            )
        )
    logger.info(f"Archived OSHA log org={org_id} year={year}")
    return archived
