"""asyncpg persistence for incidents, annual logs and the certification trail.

Every write to osha_logs is conditional on the caller's version token
(``WHERE id = $1 AND version = $2``); a ``None`` return means another writer
got there first.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from uuid import UUID

import asyncpg

from ..models.osha import (
    COUNT_FIELDS,
    CertificationEvent,
    ClassificationOverride,
    ClassificationResult,
    IncidentInput,
    IncidentRecord,
    OshaCounts,
    OshaLogRecord,
    OshaRates,
)

logger = logging.getLogger(__name__)

_INTAKE_COLUMNS = (
    "occurred_at",
    "title",
    "description",
    "location",
    "severity",
    "injury_category",
    "body_part_affected",
    "nature_of_injury",
    "fatal",
    "treatment",
    "loss_of_consciousness",
    "diagnosed_by_professional",
    "standard_threshold_shift",
    "days_away_from_work",
    "days_on_restriction",
    "days_on_transfer",
    "privacy_case",
    "log_year_override",
)

# Recordable incidents of a year that no correction entry supersedes.
_COUNTED_INCIDENTS_QUERY = """
    SELECT i.*
    FROM osha_incidents i
    WHERE i.org_id = $1
      AND i.log_year = $2
      AND i.recordable = true
      AND NOT EXISTS (
          SELECT 1 FROM osha_incidents c
          WHERE c.corrects_incident_id = i.id
      )
    ORDER BY i.occurred_at ASC, i.created_at ASC
"""


def _parse_jsonb(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse JSON column: {e}")
            return default
    return value


def _row_to_incident(row: asyncpg.Record) -> IncidentRecord:
    data = dict(row)
    override = _parse_jsonb(data.pop("classification_override", None))
    data["override"] = ClassificationOverride.model_validate(override) if override else None
    return IncidentRecord.model_validate(data)


def _row_to_log(row: asyncpg.Record) -> OshaLogRecord:
    return OshaLogRecord.model_validate(dict(row))


def _row_to_event(row: asyncpg.Record) -> CertificationEvent:
    data = dict(row)
    data["details"] = _parse_jsonb(data.get("details"), {})
    return CertificationEvent.model_validate(data)


def _log_snapshot(log: OshaLogRecord) -> str:
    return log.model_dump_json()


class OshaRepository:
    """SQL for the recordkeeping tables, bound to one connection."""

    def __init__(self, conn):
        self.conn = conn

    def transaction(self):
        return self.conn.transaction()

    # ----- organizations -----

    async def organization_exists(self, org_id: UUID) -> bool:
        found = await self.conn.fetchval("SELECT 1 FROM organizations WHERE id = $1", org_id)
        return found is not None

    async def organization_name(self, org_id: UUID) -> Optional[str]:
        return await self.conn.fetchval("SELECT name FROM organizations WHERE id = $1", org_id)

    # ----- incidents -----

    async def get_incident(self, org_id: UUID, incident_id: UUID, for_update: bool = False) -> Optional[IncidentRecord]:
        lock = " FOR UPDATE" if for_update else ""
        row = await self.conn.fetchrow(
            f"SELECT * FROM osha_incidents WHERE id = $1 AND org_id = $2{lock}",
            incident_id,
            org_id,
        )
        return _row_to_incident(row) if row else None

    async def insert_incident(
        self,
        org_id: UUID,
        intake: IncidentInput,
        kind: str = "original",
        corrects_incident_id: Optional[UUID] = None,
    ) -> IncidentRecord:
        values = [getattr(intake, column) for column in _INTAKE_COLUMNS]
        columns = ", ".join(_INTAKE_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(5, len(_INTAKE_COLUMNS) + 5))
        row = await self.conn.fetchrow(
            f"""
            INSERT INTO osha_incidents (
                org_id, kind, corrects_incident_id, classification_override, {columns}
            )
            VALUES ($1, $2, $3, $4, {placeholders})
            RETURNING *
            """,
            org_id,
            kind,
            corrects_incident_id,
            intake.override.model_dump_json() if intake.override else None,
            *values,
        )
        return _row_to_incident(row)

    async def update_incident_intake(self, incident_id: UUID, intake: IncidentInput) -> IncidentRecord:
        """Replace the intake-owned columns; classification columns are untouched."""
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(_INTAKE_COLUMNS, start=3)
        )
        row = await self.conn.fetchrow(
            f"""
            UPDATE osha_incidents
            SET classification_override = $2, {assignments}, updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            incident_id,
            intake.override.model_dump_json() if intake.override else None,
            *[getattr(intake, column) for column in _INTAKE_COLUMNS],
        )
        return _row_to_incident(row)

    async def get_superseding_incident(self, incident_id: UUID) -> Optional[IncidentRecord]:
        row = await self.conn.fetchrow(
            "SELECT * FROM osha_incidents WHERE corrects_incident_id = $1 ORDER BY created_at DESC LIMIT 1",
            incident_id,
        )
        return _row_to_incident(row) if row else None

    async def save_classification(
        self,
        incident_id: UUID,
        result: ClassificationResult,
        override: Optional[ClassificationOverride],
        log_year_override: Optional[int],
    ) -> IncidentRecord:
        """Write every classification field in one statement."""
        row = await self.conn.fetchrow(
            """
            UPDATE osha_incidents
            SET recordable = $2,
                classification = $3,
                event_type = $4,
                illness_type = $5,
                log_year = $6,
                classification_source = $7,
                classification_override = $8,
                log_year_override = $9,
                classified_at = NOW(),
                case_report_completed_at = CASE
                    WHEN $2 THEN COALESCE(case_report_completed_at, NOW())
                    ELSE NULL
                END,
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            incident_id,
            result.recordable,
            result.classification,
            result.event_type,
            result.illness_type,
            result.log_year,
            result.source,
            override.model_dump_json() if override else None,
            log_year_override,
        )
        return _row_to_incident(row)

    async def list_counted_incidents(self, org_id: UUID, year: int) -> list[IncidentRecord]:
        rows = await self.conn.fetch(_COUNTED_INCIDENTS_QUERY, org_id, year)
        return [_row_to_incident(row) for row in rows]

    async def lock_year_incidents(self, org_id: UUID, year: int) -> int:
        result = await self.conn.execute(
            """
            UPDATE osha_incidents
            SET locked_at = NOW()
            WHERE org_id = $1 AND log_year = $2 AND locked_at IS NULL
            """,
            org_id,
            year,
        )
        return int(result.split()[-1]) if result else 0

    async def archive_incident(self, incident_id: UUID) -> IncidentRecord:
        row = await self.conn.fetchrow(
            """
            UPDATE osha_incidents
            SET archived_at = COALESCE(archived_at, NOW()), updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            incident_id,
        )
        return _row_to_incident(row)

    # ----- annual logs -----

    async def get_log(self, org_id: UUID, year: int, for_update: bool = False) -> Optional[OshaLogRecord]:
        lock = " FOR UPDATE" if for_update else ""
        row = await self.conn.fetchrow(
            f"SELECT * FROM osha_logs WHERE org_id = $1 AND year = $2{lock}",
            org_id,
            year,
        )
        return _row_to_log(row) if row else None

    async def list_logs(self, org_id: UUID) -> list[OshaLogRecord]:
        rows = await self.conn.fetch(
            "SELECT * FROM osha_logs WHERE org_id = $1 ORDER BY year DESC",
            org_id,
        )
        return [_row_to_log(row) for row in rows]

    async def insert_log(
        self,
        org_id: UUID,
        year: int,
        counts: OshaCounts,
        rates: OshaRates,
        total_hours_worked,
        avg_employee_count: int,
    ) -> Optional[OshaLogRecord]:
        count_columns = ", ".join(COUNT_FIELDS)
        count_placeholders = ", ".join(f"${i}" for i in range(9, len(COUNT_FIELDS) + 9))
        row = await self.conn.fetchrow(
            f"""
            INSERT INTO osha_logs (
                org_id, year, total_hours_worked, avg_employee_count,
                trir, dart_rate, ltir, severity_rate, {count_columns}
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, {count_placeholders})
            ON CONFLICT (org_id, year) DO NOTHING
            RETURNING *
            """,
            org_id,
            year,
            total_hours_worked,
            avg_employee_count,
            rates.trir,
            rates.dart_rate,
            rates.ltir,
            rates.severity_rate,
            *[getattr(counts, field) for field in COUNT_FIELDS],
        )
        return _row_to_log(row) if row else None

    async def update_log_computed(
        self,
        log_id: UUID,
        expected_version: int,
        counts: OshaCounts,
        rates: OshaRates,
    ) -> Optional[OshaLogRecord]:
        assignments = ", ".join(
            f"{field} = ${i}" for i, field in enumerate(COUNT_FIELDS, start=7)
        )
        row = await self.conn.fetchrow(
            f"""
            UPDATE osha_logs
            SET trir = $3, dart_rate = $4, ltir = $5, severity_rate = $6,
                {assignments},
                version = version + 1,
                updated_at = NOW()
            WHERE id = $1 AND version = $2 AND certified_at IS NULL
            RETURNING *
            """,
            log_id,
            expected_version,
            rates.trir,
            rates.dart_rate,
            rates.ltir,
            rates.severity_rate,
            *[getattr(counts, field) for field in COUNT_FIELDS],
        )
        return _row_to_log(row) if row else None

    async def update_log_exposure(
        self,
        log_id: UUID,
        expected_version: int,
        total_hours_worked,
        avg_employee_count: int,
    ) -> Optional[OshaLogRecord]:
        row = await self.conn.fetchrow(
            """
            UPDATE osha_logs
            SET total_hours_worked = $3, avg_employee_count = $4,
                version = version + 1, updated_at = NOW()
            WHERE id = $1 AND version = $2 AND certified_at IS NULL
            RETURNING *
            """,
            log_id,
            expected_version,
            total_hours_worked,
            avg_employee_count,
        )
        return _row_to_log(row) if row else None

    async def mark_certified(
        self,
        log_id: UUID,
        expected_version: int,
        certified_by: str,
        certified_title: str,
    ) -> Optional[OshaLogRecord]:
        row = await self.conn.fetchrow(
            """
            UPDATE osha_logs
            SET certified_at = NOW(), certified_by = $3, certified_title = $4,
                version = version + 1, updated_at = NOW()
            WHERE id = $1 AND version = $2 AND certified_at IS NULL
            RETURNING *
            """,
            log_id,
            expected_version,
            certified_by,
            certified_title,
        )
        return _row_to_log(row) if row else None

    async def mark_posted(self, log_id: UUID, expected_version: int, posted_by: str) -> Optional[OshaLogRecord]:
        row = await self.conn.fetchrow(
            """
            UPDATE osha_logs
            SET posted_at = NOW(), posted_by = $3,
                version = version + 1, updated_at = NOW()
            WHERE id = $1 AND version = $2
              AND certified_at IS NOT NULL AND posted_at IS NULL
            RETURNING *
            """,
            log_id,
            expected_version,
            posted_by,
        )
        return _row_to_log(row) if row else None

    async def open_revision(self, log_id: UUID, expected_version: int) -> Optional[OshaLogRecord]:
        """Start a new, uncertified revision of a certified log."""
        row = await self.conn.fetchrow(
            """
            UPDATE osha_logs
            SET revision = revision + 1,
                certified_at = NULL, certified_by = NULL, certified_title = NULL,
                posted_at = NULL, posted_by = NULL,
                version = version + 1, updated_at = NOW()
            WHERE id = $1 AND version = $2 AND certified_at IS NOT NULL
            RETURNING *
            """,
            log_id,
            expected_version,
        )
        return _row_to_log(row) if row else None

    async def archive_log(self, log_id: UUID) -> OshaLogRecord:
        row = await self.conn.fetchrow(
            """
            UPDATE osha_logs
            SET archived_at = COALESCE(archived_at, NOW()), updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            log_id,
        )
        return _row_to_log(row)

    # ----- append-only trail -----

    async def insert_revision_snapshot(self, log: OshaLogRecord) -> None:
        await self.conn.execute(
            """
            INSERT INTO osha_log_revisions (log_id, org_id, year, revision, snapshot)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (org_id, year, revision) DO NOTHING
            """,
            log.id,
            log.org_id,
            log.year,
            log.revision,
            _log_snapshot(log),
        )

    async def list_revision_snapshots(self, org_id: UUID, year: int) -> list[OshaLogRecord]:
        rows = await self.conn.fetch(
            """
            SELECT snapshot FROM osha_log_revisions
            WHERE org_id = $1 AND year = $2
            ORDER BY revision ASC
            """,
            org_id,
            year,
        )
        return [OshaLogRecord.model_validate(_parse_jsonb(row["snapshot"], {})) for row in rows]

    async def append_event(self, event: CertificationEvent) -> CertificationEvent:
        row = await self.conn.fetchrow(
            """
            INSERT INTO osha_certification_events
                (org_id, year, revision, action, actor, actor_title, details)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            event.org_id,
            event.year,
            event.revision,
            event.action,
            event.actor,
            event.actor_title,
            json.dumps(event.details, default=str),
        )
        return _row_to_event(row)

    async def list_events(self, org_id: UUID, year: int) -> list[CertificationEvent]:
        rows = await self.conn.fetch(
            """
            SELECT * FROM osha_certification_events
            WHERE org_id = $1 AND year = $2
            ORDER BY created_at ASC, id ASC
            """,
            org_id,
            year,
        )
        return [_row_to_event(row) for row in rows]
