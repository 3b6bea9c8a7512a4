"""Recordkeeping engine exceptions.

Every error raised by the engine is deterministic and raised before any write
(or inside a transaction that is rolled back), so callers can show the exact
reason to the user.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence


class RecordkeepingError(Exception):
    """Base class for all recordkeeping engine errors."""

    code = "recordkeeping_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


class RecordkeepingValidationError(RecordkeepingError, ValueError):
    """Malformed or internally inconsistent input."""

    code = "validation_error"

    def __init__(self, message: str, fields: Sequence[str] = ()):
        super().__init__(message)
        self.fields = list(fields)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["fields"] = self.fields
        return detail


class StateConflictError(RecordkeepingError):
    """The requested operation is not allowed in the log's current state."""

    code = "state_conflict"

    def __init__(self, message: str, state: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.state = state or {}

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["state"] = self.state
        return detail


class LogAlreadyCertifiedError(StateConflictError):
    """A write targeted data that is frozen by a certified log."""

    code = "log_already_certified"

    def __init__(
        self,
        year: int,
        certified_at: Optional[datetime],
        state: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
    ):
        certified_on = certified_at.date().isoformat() if certified_at else "unknown date"
        super().__init__(
            message or f"Log for {year} already certified on {certified_on}",
            state=state,
        )
        self.year = year
        self.certified_at = certified_at


class CorrectionRequiredError(LogAlreadyCertifiedError):
    """Raised by the aggregator when asked to overwrite a certified log."""

    code = "correction_required"

    def __init__(self, year: int, certified_at: Optional[datetime], state: Optional[dict[str, Any]] = None):
        certified_on = certified_at.date().isoformat() if certified_at else "unknown date"
        super().__init__(
            year,
            certified_at,
            state=state,
            message=(
                f"Log for {year} already certified on {certified_on}; "
                "record a correction entry instead of recomputing"
            ),
        )


class ConcurrencyConflictError(RecordkeepingError):
    """Another writer updated the same log while this one was computing."""

    code = "concurrency_conflict"


class RecordNotFoundError(RecordkeepingError):
    """The organization, incident or log does not exist."""

    code = "not_found"
