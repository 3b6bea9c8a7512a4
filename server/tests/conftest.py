import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from app.recordkeeping.models.osha import (
    COUNT_FIELDS,
    CertificationEvent,
    IncidentInput,
    IncidentRecord,
    OshaLogRecord,
)


class InMemoryOshaRepository:
    """Dict-backed stand-in for OshaRepository with the same write guards."""

    def __init__(self):
        self.organizations: dict = {}
        self.incidents: dict = {}
        self.logs: dict = {}
        self.revisions: list[OshaLogRecord] = []
        self.events: list[CertificationEvent] = []
        self.conflicting_writes = 0
        self.racing_inserts = 0
        self.log_writes = 0
        self._clock = datetime(2025, 2, 10, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add_organization(self, name: str = "Acme"):
        org_id = uuid4()
        self.organizations[org_id] = name
        return org_id

    @asynccontextmanager
    async def transaction(self):
        state = copy.deepcopy((self.incidents, self.logs, self.revisions, self.events))
        try:
            yield
        except BaseException:
            self.incidents, self.logs, self.revisions, self.events = state
            raise

    # ----- organizations -----

    async def organization_exists(self, org_id) -> bool:
        return org_id in self.organizations

    async def organization_name(self, org_id):
        return self.organizations.get(org_id)

    # ----- incidents -----

    async def get_incident(self, org_id, incident_id, for_update=False):
        incident = self.incidents.get(incident_id)
        if incident is None or incident.org_id != org_id:
            return None
        return incident.model_copy(deep=True)

    async def insert_incident(self, org_id, intake, kind="original", corrects_incident_id=None):
        now = self.now()
        incident = IncidentRecord.model_validate({
            **intake.model_dump(),
            "id": uuid4(),
            "org_id": org_id,
            "kind": kind,
            "corrects_incident_id": corrects_incident_id,
            "created_at": now,
            "updated_at": now,
        })
        self.incidents[incident.id] = incident
        return incident.model_copy(deep=True)

    async def update_incident_intake(self, incident_id, intake):
        updates = {field: getattr(intake, field) for field in IncidentInput.model_fields}
        updates["updated_at"] = self.now()
        self.incidents[incident_id] = self.incidents[incident_id].model_copy(update=updates)
        return self.incidents[incident_id].model_copy(deep=True)

    async def get_superseding_incident(self, incident_id):
        newer = [i for i in self.incidents.values() if i.corrects_incident_id == incident_id]
        if not newer:
            return None
        return max(newer, key=lambda i: i.created_at).model_copy(deep=True)

    async def save_classification(self, incident_id, result, override, log_year_override):
        current = self.incidents[incident_id]
        now = self.now()
        if result.recordable:
            completed_at = current.case_report_completed_at or now
        else:
            completed_at = None
        self.incidents[incident_id] = current.model_copy(update={
            "recordable": result.recordable,
            "classification": result.classification,
            "event_type": result.event_type,
            "illness_type": result.illness_type,
            "log_year": result.log_year,
            "classification_source": result.source,
            "override": override,
            "log_year_override": log_year_override,
            "classified_at": now,
            "case_report_completed_at": completed_at,
            "updated_at": now,
        })
        return self.incidents[incident_id].model_copy(deep=True)

    async def list_counted_incidents(self, org_id, year):
        superseded = {
            i.corrects_incident_id for i in self.incidents.values() if i.corrects_incident_id
        }
        counted = [
            i for i in self.incidents.values()
            if i.org_id == org_id and i.log_year == year and i.recordable and i.id not in superseded
        ]
        counted.sort(key=lambda i: (i.occurred_at, i.created_at))
        return [i.model_copy(deep=True) for i in counted]

    async def lock_year_incidents(self, org_id, year):
        locked = 0
        now = self.now()
        for incident_id, incident in list(self.incidents.items()):
            if incident.org_id == org_id and incident.log_year == year and incident.locked_at is None:
                self.incidents[incident_id] = incident.model_copy(update={"locked_at": now})
                locked += 1
        return locked

    async def archive_incident(self, incident_id):
        incident = self.incidents[incident_id]
        if incident.archived_at is None:
            self.incidents[incident_id] = incident.model_copy(update={"archived_at": self.now()})
        return self.incidents[incident_id].model_copy(deep=True)

    # ----- annual logs -----

    def _log_by_id(self, log_id):
        for key, log in self.logs.items():
            if log.id == log_id:
                return key, log
        raise KeyError(log_id)

    async def get_log(self, org_id, year, for_update=False):
        log = self.logs.get((org_id, year))
        return log.model_copy(deep=True) if log else None

    async def list_logs(self, org_id):
        logs = [log for (org, _), log in self.logs.items() if org == org_id]
        return [log.model_copy(deep=True) for log in sorted(logs, key=lambda log: log.year, reverse=True)]

    async def insert_log(self, org_id, year, counts, rates, total_hours_worked, avg_employee_count):
        if (org_id, year) in self.logs:
            return None
        if self.racing_inserts > 0:
            # Another writer created the row first.
            self.racing_inserts -= 1
            await self.insert_log(org_id, year, counts, rates, Decimal(0), 0)
            return None
        now = self.now()
        log = OshaLogRecord(
            id=uuid4(),
            org_id=org_id,
            year=year,
            total_hours_worked=Decimal(total_hours_worked),
            avg_employee_count=avg_employee_count,
            created_at=now,
            updated_at=now,
            **counts.model_dump(),
            **rates.model_dump(),
        )
        self.logs[(org_id, year)] = log
        self.log_writes += 1
        return log.model_copy(deep=True)

    def _compare_and_swap(self, log_id, expected_version, allowed, updates):
        key, log = self._log_by_id(log_id)
        if self.conflicting_writes > 0:
            # Another writer got in first.
            self.conflicting_writes -= 1
            self.logs[key] = log.model_copy(update={"version": log.version + 1})
            return None
        if log.version != expected_version or not allowed(log):
            return None
        self.logs[key] = log.model_copy(
            update={**updates, "version": log.version + 1, "updated_at": self.now()}
        )
        self.log_writes += 1
        return self.logs[key].model_copy(deep=True)

    async def update_log_computed(self, log_id, expected_version, counts, rates):
        return self._compare_and_swap(
            log_id,
            expected_version,
            lambda log: log.certified_at is None,
            {**counts.model_dump(), **rates.model_dump()},
        )

    async def update_log_exposure(self, log_id, expected_version, total_hours_worked, avg_employee_count):
        return self._compare_and_swap(
            log_id,
            expected_version,
            lambda log: log.certified_at is None,
            {"total_hours_worked": Decimal(total_hours_worked), "avg_employee_count": avg_employee_count},
        )

    async def mark_certified(self, log_id, expected_version, certified_by, certified_title):
        return self._compare_and_swap(
            log_id,
            expected_version,
            lambda log: log.certified_at is None,
            {"certified_at": self.now(), "certified_by": certified_by, "certified_title": certified_title},
        )

    async def mark_posted(self, log_id, expected_version, posted_by):
        return self._compare_and_swap(
            log_id,
            expected_version,
            lambda log: log.certified_at is not None and log.posted_at is None,
            {"posted_at": self.now(), "posted_by": posted_by},
        )

    async def open_revision(self, log_id, expected_version):
        _, log = self._log_by_id(log_id)
        return self._compare_and_swap(
            log_id,
            expected_version,
            lambda current: current.certified_at is not None,
            {
                "revision": log.revision + 1,
                "certified_at": None,
                "certified_by": None,
                "certified_title": None,
                "posted_at": None,
                "posted_by": None,
            },
        )

    async def archive_log(self, log_id):
        key, log = self._log_by_id(log_id)
        if log.archived_at is None:
            self.logs[key] = log.model_copy(update={"archived_at": self.now()})
        return self.logs[key].model_copy(deep=True)

    # ----- append-only trail -----

    async def insert_revision_snapshot(self, log):
        for existing in self.revisions:
            if (existing.org_id, existing.year, existing.revision) == (log.org_id, log.year, log.revision):
                return None
        self.revisions.append(log.model_copy(deep=True))
        return None

    async def list_revision_snapshots(self, org_id, year):
        return sorted(
            (r.model_copy(deep=True) for r in self.revisions if r.org_id == org_id and r.year == year),
            key=lambda r: r.revision,
        )

    async def append_event(self, event):
        stored = event.model_copy(update={"id": uuid4(), "created_at": self.now()})
        self.events.append(stored)
        return stored

    async def list_events(self, org_id, year):
        return [e for e in self.events if e.org_id == org_id and e.year == year]

    def counts_of(self, org_id, year) -> dict:
        log = self.logs[(org_id, year)]
        return {field: getattr(log, field) for field in COUNT_FIELDS}


def make_intake(**overrides) -> IncidentInput:
    data = {
        "occurred_at": datetime(2024, 6, 3, 14, 30, tzinfo=timezone.utc),
        "title": "Slipped on wet floor",
        "location": "Warehouse B",
        "injury_category": "sprain",
        "body_part_affected": "ankle",
        "nature_of_injury": "sprain",
    }
    data.update(overrides)
    return IncidentInput.model_validate(data)


@pytest.fixture
def repo():
    return InMemoryOshaRepository()


@pytest.fixture
def org_id(repo):
    return repo.add_organization("Acme")


@pytest.fixture
def intake_factory():
    return make_intake
