"""Incident-level entry points: intake registration and reclassification.

Each call classifies, writes the classification fields in one statement and
recomputes every affected log inside the same transaction, so a log-year
move updates both years or neither.
"""

import logging
from typing import Optional
from uuid import UUID

from ..errors import RecordNotFoundError
from ..models.osha import ClassificationOverride, IncidentInput, IncidentRecord
from .osha_aggregator import recompute
from .osha_classifier import classify
from .osha_retention import ensure_incident_mutable, ensure_log_open

logger = logging.getLogger(__name__)


async def _lock_logs(repo, org_id: UUID, years: list[int]) -> dict:
    # Fixed (ascending) lock order keeps two-year moves deadlock-free.
    return {year: await repo.get_log(org_id, year, for_update=True) for year in sorted(years)}


async def register_incident(repo, org_id: UUID, intake: IncidentInput) -> tuple[IncidentRecord, list[int]]:
    """Store an intake-supplied incident, classify it and update its log."""
    if not await repo.organization_exists(org_id):
        raise RecordNotFoundError(f"Organization {org_id} not found")

    result = classify(intake)
    async with repo.transaction():
        logs = await _lock_logs(repo, org_id, [result.log_year])
        ensure_log_open(logs[result.log_year])

        incident = await repo.insert_incident(org_id, intake)
        incident = await repo.save_classification(
            incident.id, result, intake.override, intake.log_year_override
        )
        await recompute(repo, org_id, result.log_year)

    logger.info(
        f"Registered incident {incident.id} org={org_id} "
        f"classification={incident.classification} log_year={incident.log_year}"
    )
    return incident, [result.log_year]


async def _apply_classification(
    repo,
    org_id: UUID,
    incident: IncidentRecord,
    intake: IncidentInput,
) -> tuple[IncidentRecord, list[int]]:
    result = classify(intake)
    old_year = incident.log_year
    years = sorted({year for year in (old_year, result.log_year) if year is not None})

    logs = await _lock_logs(repo, org_id, years)
    ensure_incident_mutable(
        incident,
        logs.get(old_year) if old_year is not None else None,
        logs.get(result.log_year) if result.log_year != old_year else None,
    )

    updated = await repo.save_classification(
        incident.id, result, intake.override, intake.log_year_override
    )
    for year in years:
        await recompute(repo, org_id, year)

    if old_year is not None and old_year != result.log_year:
        logger.info(f"Moved incident {incident.id} from log year {old_year} to {result.log_year}")
    return updated, years


async def reclassify_incident(
    repo,
    org_id: UUID,
    incident_id: UUID,
    override: Optional[ClassificationOverride] = None,
    clear_override: bool = False,
    log_year: Optional[int] = None,
) -> tuple[IncidentRecord, list[int]]:
    """Re-run classification, optionally applying an operator override or a new log year."""
    async with repo.transaction():
        incident = await repo.get_incident(org_id, incident_id, for_update=True)
        if incident is None:
            raise RecordNotFoundError(f"Incident {incident_id} not found")

        updates = {}
        if clear_override:
            updates["override"] = None
        if override is not None:
            updates["override"] = override
        if log_year is not None:
            updates["log_year_override"] = log_year
        intake = incident.to_input().model_copy(update=updates)

        return await _apply_classification(repo, org_id, incident, intake)


async def update_incident_intake(
    repo,
    org_id: UUID,
    incident_id: UUID,
    intake: IncidentInput,
) -> tuple[IncidentRecord, list[int]]:
    """Replace intake-owned fields and reclassify in one step."""
    async with repo.transaction():
        incident = await repo.get_incident(org_id, incident_id, for_update=True)
        if incident is None:
            raise RecordNotFoundError(f"Incident {incident_id} not found")

        # Guard before touching the row; the classification write re-checks both years.
        current_log = None
        if incident.log_year is not None:
            current_log = await repo.get_log(org_id, incident.log_year)
        ensure_incident_mutable(incident, current_log)
        await repo.update_incident_intake(incident_id, intake)
        return await _apply_classification(repo, org_id, incident, intake)
