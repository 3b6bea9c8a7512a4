"""Certification and posting state machine for the annual log.

OPEN -> CERTIFIED -> POSTED, no backward transitions. A certified log is only
ever amended through a correction entry, which opens a new revision.
"""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from ..errors import (
    ConcurrencyConflictError,
    LogAlreadyCertifiedError,
    RecordkeepingValidationError,
    RecordNotFoundError,
    StateConflictError,
)
from ..models.osha import CertificationEvent, OshaLogRecord, PostingStatusResponse

logger = logging.getLogger(__name__)


class LogState(str, Enum):
    OPEN = "open"
    CERTIFIED = "certified"
    POSTED = "posted"


class WorkflowTransitionError(StateConflictError):
    """Raised when an invalid workflow transition is requested."""

    code = "invalid_transition"


_ALLOWED_TRANSITIONS: dict[LogState, tuple[LogState, ...]] = {
    LogState.OPEN: (LogState.CERTIFIED,),
    LogState.CERTIFIED: (LogState.POSTED,),
    LogState.POSTED: (),
}

# Form 300A posting period, relative to the year after the log year.
POSTING_WINDOW_START = (2, 1)
POSTING_WINDOW_END = (4, 30)


def _coerce_state(value: str | LogState) -> LogState:
    if isinstance(value, LogState):
        return value
    try:
        return LogState(value)
    except ValueError as exc:
        raise WorkflowTransitionError(f"Unknown log state '{value}'") from exc


def all_states() -> list[str]:
    return [state.value for state in LogState]


def state_machine_map() -> dict[str, list[str]]:
    return {
        source.value: [target.value for target in targets]
        for source, targets in _ALLOWED_TRANSITIONS.items()
    }


def validate_transition(
    state_from: str | LogState,
    state_to: str | LogState,
    *,
    state: Optional[dict[str, Any]] = None,
) -> None:
    source = _coerce_state(state_from)
    target = _coerce_state(state_to)

    allowed_targets = _ALLOWED_TRANSITIONS[source]
    if target not in allowed_targets:
        allowed_str = ", ".join(t.value for t in allowed_targets) or "none"
        raise WorkflowTransitionError(
            f"Invalid log transition '{source.value}' -> '{target.value}'. "
            f"Allowed targets: {allowed_str}.",
            state=state,
        )


def log_state(log: OshaLogRecord) -> LogState:
    if log.posted_at is not None:
        return LogState.POSTED
    if log.certified_at is not None:
        return LogState.CERTIFIED
    return LogState.OPEN


def describe_log_state(log: OshaLogRecord) -> dict[str, Any]:
    """Current workflow state, attached to state-conflict errors."""
    return {
        "org_id": str(log.org_id),
        "year": log.year,
        "revision": log.revision,
        "state": log_state(log).value,
        "certified_at": log.certified_at.isoformat() if log.certified_at else None,
        "certified_by": log.certified_by,
        "certified_title": log.certified_title,
        "posted_at": log.posted_at.isoformat() if log.posted_at else None,
        "posted_by": log.posted_by,
    }


def posting_window(year: int) -> tuple[date, date]:
    """Feb 1 - Apr 30 of the year following the log year."""
    return (
        date(year + 1, *POSTING_WINDOW_START),
        date(year + 1, *POSTING_WINDOW_END),
    )


def posting_status(log: OshaLogRecord, today: Optional[date] = None) -> PostingStatusResponse:
    today = today or date.today()
    start, end = posting_window(log.year)
    window_open = start <= today <= end
    return PostingStatusResponse(
        year=log.year,
        state=log_state(log).value,
        window_start=start,
        window_end=end,
        window_open=window_open,
        posting_due=window_open and not log.is_posted,
        posting_overdue=today > end and not log.is_posted,
        certified_at=log.certified_at,
        posted_at=log.posted_at,
    )


def _require_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise RecordkeepingValidationError(f"{field} is required", fields=[field])
    return cleaned


async def certify_log(
    repo,
    org_id: UUID,
    year: int,
    certified_by: str,
    certified_title: str,
) -> OshaLogRecord:
    """Sign off the annual log and freeze the incidents counted in it."""
    certified_by = _require_text(certified_by, "certified_by")
    certified_title = _require_text(certified_title, "certified_title")

    if not await repo.organization_exists(org_id):
        raise RecordNotFoundError(f"Organization {org_id} not found")

    async with repo.transaction():
        log = await repo.get_log(org_id, year, for_update=True)
        if log is None:
            raise StateConflictError(
                f"Log for {year} has never been aggregated; recompute it before certifying",
                state={"org_id": str(org_id), "year": year, "state": None},
            )
        if log.is_certified:
            raise LogAlreadyCertifiedError(year, log.certified_at, state=describe_log_state(log))
        validate_transition(log_state(log), LogState.CERTIFIED, state=describe_log_state(log))

        certified = await repo.mark_certified(log.id, log.version, certified_by, certified_title)
        if certified is None:
            raise ConcurrencyConflictError(f"Log for {year} changed while certifying; retry")

        locked = await repo.lock_year_incidents(org_id, year)
        await repo.insert_revision_snapshot(certified)
        await repo.append_event(
            CertificationEvent(
                org_id=org_id,
                year=year,
                revision=certified.revision,
                action="certified",
                actor=certified_by,
                actor_title=certified_title,
                details={
                    "certified_at": certified.certified_at.isoformat(),
                    "total_recordable": certified.total_recordable,
                    "incidents_locked": locked,
                },
            )
        )

    logger.info(
        f"Certified OSHA log org={org_id} year={year} revision={certified.revision} by {certified_by}"
    )
    return certified


async def post_log(repo, org_id: UUID, year: int, posted_by: str) -> OshaLogRecord:
    """Record that the certified summary has been posted for the workforce."""
    posted_by = _require_text(posted_by, "posted_by")

    if not await repo.organization_exists(org_id):
        raise RecordNotFoundError(f"Organization {org_id} not found")

    async with repo.transaction():
        log = await repo.get_log(org_id, year, for_update=True)
        if log is None:
            raise StateConflictError(
                f"Log for {year} does not exist; it must be aggregated and certified before posting",
                state={"org_id": str(org_id), "year": year, "state": None},
            )
        state = log_state(log)
        if state == LogState.OPEN:
            raise WorkflowTransitionError(
                f"Log for {year} must be certified before it can be posted",
                state=describe_log_state(log),
            )
        validate_transition(state, LogState.POSTED, state=describe_log_state(log))

        posted = await repo.mark_posted(log.id, log.version, posted_by)
        if posted is None:
            raise ConcurrencyConflictError(f"Log for {year} changed while posting; retry")

        await repo.append_event(
            CertificationEvent(
                org_id=org_id,
                year=year,
                revision=posted.revision,
                action="posted",
                actor=posted_by,
                details={
                    "posted_at": posted.posted_at.isoformat(),
                    "certified_at": posted.certified_at.isoformat(),
                },
            )
        )

    logger.info(f"Posted OSHA 300A summary org={org_id} year={year} revision={posted.revision}")
    return posted
