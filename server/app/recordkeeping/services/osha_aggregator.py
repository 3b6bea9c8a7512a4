"""
Annual log aggregation.

The log is a materialized view over the organization's counted incidents for
a year plus the two exposure inputs. Recomputing reads everything again and
swaps the result in with the version token read at the start; nothing is
maintained incrementally.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable, Union
from uuid import UUID

from ..errors import (
    ConcurrencyConflictError,
    CorrectionRequiredError,
    LogAlreadyCertifiedError,
    RecordkeepingValidationError,
    RecordNotFoundError,
)
from ..models.osha import COUNT_FIELDS, IncidentRecord, OshaCounts, OshaLogRecord, OshaRates
from .osha_rates import calculate_rates
from .osha_workflow import describe_log_state

logger = logging.getLogger(__name__)

MAX_RECOMPUTE_ATTEMPTS = 2

_CLASSIFICATION_COUNTERS = {
    "FATALITY": "total_deaths",
    "DAYS_AWAY": "total_days_away",
    "RESTRICTED_WORK": "total_restricted",
    "JOB_TRANSFER": "total_transfer",
    "OTHER_RECORDABLE": "total_other_recordable",
}

_ILLNESS_COUNTERS = {
    "SKIN_DISORDER": "total_skin_disorders",
    "RESPIRATORY_CONDITION": "total_respiratory_conditions",
    "POISONING": "total_poisonings",
    "HEARING_LOSS": "total_hearing_loss",
    "ALL_OTHER_ILLNESSES": "total_other_illnesses",
}


def summarize(incidents: Iterable[IncidentRecord]) -> OshaCounts:
    """Single pass over the recordable incidents of one log."""
    totals = dict.fromkeys(COUNT_FIELDS, 0)
    for incident in incidents:
        if not incident.recordable:
            continue
        totals["total_recordable"] += 1

        counter = _CLASSIFICATION_COUNTERS.get(incident.classification)
        if counter:
            totals[counter] += 1

        if incident.event_type == "INJURY":
            totals["total_injuries"] += 1
        elif incident.event_type == "ILLNESS" and incident.illness_type:
            totals[_ILLNESS_COUNTERS[incident.illness_type]] += 1

        totals["total_days_away_from_work"] += incident.days_away_from_work
        totals["total_days_restricted_or_transferred"] += (
            incident.days_on_restriction + incident.days_on_transfer
        )
    return OshaCounts(**totals)


def _refuse_if_certified(log: OshaLogRecord) -> None:
    if log.is_certified:
        raise CorrectionRequiredError(log.year, log.certified_at, state=describe_log_state(log))


async def _recompute_once(repo, org_id: UUID, year: int):
    log = await repo.get_log(org_id, year)
    if log is not None:
        _refuse_if_certified(log)
    elif not await repo.organization_exists(org_id):
        raise RecordNotFoundError(f"Organization {org_id} not found")

    incidents = await repo.list_counted_incidents(org_id, year)
    counts = summarize(incidents)
    hours = log.total_hours_worked if log is not None else Decimal(0)
    rates = calculate_rates(counts, hours)

    if log is None:
        return await repo.insert_log(org_id, year, counts, rates, hours, 0)
    if log.counts() == counts and log.rates() == rates:
        return log
    return await repo.update_log_computed(log.id, log.version, counts, rates)


async def recompute(repo, org_id: UUID, year: int) -> OshaLogRecord:
    """Rebuild the computed fields of one (organization, year) log."""
    for attempt in range(1, MAX_RECOMPUTE_ATTEMPTS + 1):
        log = await _recompute_once(repo, org_id, year)
        if log is not None:
            logger.debug(
                f"Recomputed OSHA log org={org_id} year={year} "
                f"recordable={log.total_recordable} version={log.version}"
            )
            return log
        logger.warning(
            f"OSHA log org={org_id} year={year} changed during recompute "
            f"(attempt {attempt}/{MAX_RECOMPUTE_ATTEMPTS})"
        )
        # A certification that won the race surfaces as a correction-required error.
        current = await repo.get_log(org_id, year)
        if current is not None:
            _refuse_if_certified(current)

    raise ConcurrencyConflictError(
        f"Log for {year} was modified concurrently; recompute did not complete"
    )


def _coerce_hours(total_hours_worked: Union[Decimal, int, float, str]) -> Decimal:
    try:
        hours = Decimal(str(total_hours_worked))
    except (InvalidOperation, ValueError) as exc:
        raise RecordkeepingValidationError(
            f"total_hours_worked is not a number: {total_hours_worked!r}",
            fields=["total_hours_worked"],
        ) from exc
    if not hours.is_finite() or hours < 0:
        raise RecordkeepingValidationError(
            "total_hours_worked must be zero or greater",
            fields=["total_hours_worked"],
        )
    return hours


async def update_exposure(
    repo,
    org_id: UUID,
    year: int,
    total_hours_worked: Union[Decimal, int, float, str],
    avg_employee_count: int,
) -> OshaLogRecord:
    """Save the exposure inputs for a year and recalculate its rates."""
    hours = _coerce_hours(total_hours_worked)
    if avg_employee_count is None or avg_employee_count < 0:
        raise RecordkeepingValidationError(
            "avg_employee_count must be zero or greater",
            fields=["avg_employee_count"],
        )
    if not await repo.organization_exists(org_id):
        raise RecordNotFoundError(f"Organization {org_id} not found")

    for attempt in range(1, MAX_RECOMPUTE_ATTEMPTS + 1):
        async with repo.transaction():
            log = await repo.get_log(org_id, year, for_update=True)
            if log is None:
                saved = await repo.insert_log(
                    org_id, year, OshaCounts(), OshaRates(), hours, avg_employee_count
                )
            else:
                if log.is_certified:
                    raise LogAlreadyCertifiedError(year, log.certified_at, state=describe_log_state(log))
                saved = await repo.update_log_exposure(log.id, log.version, hours, avg_employee_count)
            if saved is not None:
                log = await recompute(repo, org_id, year)

        if saved is not None:
            logger.info(
                f"Updated exposure org={org_id} year={year} hours={hours} employees={avg_employee_count}"
            )
            return log
        logger.warning(
            f"OSHA log org={org_id} year={year} changed while saving exposure "
            f"(attempt {attempt}/{MAX_RECOMPUTE_ATTEMPTS})"
        )

    raise ConcurrencyConflictError(f"Log for {year} changed while saving exposure; retry")
