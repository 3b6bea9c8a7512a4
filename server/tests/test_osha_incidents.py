import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from app.recordkeeping.errors import ConcurrencyConflictError, RecordNotFoundError
from app.recordkeeping.models.osha import ClassificationOverride
from app.recordkeeping.services.osha_aggregator import recompute
from app.recordkeeping.services.osha_incidents import (
    reclassify_incident,
    register_incident,
    update_incident_intake,
)


def test_register_incident_classifies_and_recomputes(repo, org_id, intake_factory):
    asyncio.run(_run_register_test(repo, org_id, intake_factory))


async def _run_register_test(repo, org_id, intake_factory):
    incident, years = await register_incident(repo, org_id, intake_factory(days_away_from_work=3))

    assert years == [2024]
    assert incident.recordable is True
    assert incident.classification == "DAYS_AWAY"
    assert incident.event_type == "INJURY"
    assert incident.classification_source == "computed"
    assert incident.log_year == 2024
    assert incident.classified_at is not None
    assert incident.case_report_completed_at is not None

    log = await repo.get_log(org_id, 2024)
    assert log.total_days_away == 1
    assert log.total_days_away_from_work == 3


def test_not_recordable_incident_has_no_case_report(repo, org_id, intake_factory):
    incident, _ = asyncio.run(register_incident(repo, org_id, intake_factory(treatment="first_aid")))
    assert incident.recordable is False
    assert incident.case_report_completed_at is None
    assert incident.classified_at is not None


def test_register_for_unknown_organization_is_not_found(repo, intake_factory):
    with pytest.raises(RecordNotFoundError):
        asyncio.run(register_incident(repo, uuid4(), intake_factory()))


def test_failed_recompute_rolls_back_the_incident(repo, org_id, intake_factory):
    asyncio.run(_run_rollback_test(repo, org_id, intake_factory))


async def _run_rollback_test(repo, org_id, intake_factory):
    await recompute(repo, org_id, 2024)
    repo.conflicting_writes = 2
    with pytest.raises(ConcurrencyConflictError):
        await register_incident(repo, org_id, intake_factory(fatal=True))

    assert repo.incidents == {}
    assert (await repo.get_log(org_id, 2024)).total_deaths == 0


def test_override_then_clear_override(repo, org_id, intake_factory):
    asyncio.run(_run_override_test(repo, org_id, intake_factory))


async def _run_override_test(repo, org_id, intake_factory):
    incident, _ = await register_incident(repo, org_id, intake_factory(treatment="first_aid"))

    overridden, years = await reclassify_incident(
        repo,
        org_id,
        incident.id,
        override=ClassificationOverride(recordable=True, classification="OTHER_RECORDABLE"),
    )
    assert years == [2024]
    assert overridden.classification_source == "override"
    assert overridden.classification == "OTHER_RECORDABLE"
    assert overridden.event_type == "INJURY"
    assert overridden.override.classification == "OTHER_RECORDABLE"
    assert (await repo.get_log(org_id, 2024)).total_other_recordable == 1

    cleared, _ = await reclassify_incident(repo, org_id, incident.id, clear_override=True)
    assert cleared.classification_source == "computed"
    assert cleared.classification == "NOT_RECORDABLE"
    assert cleared.override is None
    assert (await repo.get_log(org_id, 2024)).total_recordable == 0


def test_log_year_move_updates_both_years(repo, org_id, intake_factory):
    asyncio.run(_run_move_test(repo, org_id, intake_factory))


async def _run_move_test(repo, org_id, intake_factory):
    incident, _ = await register_incident(
        repo,
        org_id,
        intake_factory(
            injury_category="silicosis",
            diagnosed_by_professional=True,
            occurred_at=datetime(2023, 11, 20, tzinfo=timezone.utc),
        ),
    )
    assert (await repo.get_log(org_id, 2023)).total_respiratory_conditions == 1

    moved, years = await reclassify_incident(repo, org_id, incident.id, log_year=2024)
    assert years == [2023, 2024]
    assert moved.log_year == 2024
    assert moved.log_year_override == 2024
    assert (await repo.get_log(org_id, 2023)).total_recordable == 0
    assert (await repo.get_log(org_id, 2024)).total_respiratory_conditions == 1


def test_update_intake_reclassifies(repo, org_id, intake_factory):
    asyncio.run(_run_update_intake_test(repo, org_id, intake_factory))


async def _run_update_intake_test(repo, org_id, intake_factory):
    incident, _ = await register_incident(repo, org_id, intake_factory(treatment="medical"))
    updated, years = await update_incident_intake(
        repo, org_id, incident.id, intake_factory(treatment="medical", days_on_transfer=5)
    )
    assert years == [2024]
    assert updated.classification == "JOB_TRANSFER"
    assert updated.days_on_transfer == 5

    log = await repo.get_log(org_id, 2024)
    assert log.total_transfer == 1
    assert log.total_other_recordable == 0
    assert log.total_days_restricted_or_transferred == 5


def test_reclassify_unknown_incident_is_not_found(repo, org_id):
    with pytest.raises(RecordNotFoundError):
        asyncio.run(reclassify_incident(repo, org_id, uuid4()))


def test_incidents_of_other_organizations_are_invisible(repo, org_id, intake_factory):
    asyncio.run(_run_isolation_test(repo, org_id, intake_factory))


async def _run_isolation_test(repo, org_id, intake_factory):
    other_org = repo.add_organization("Globex")
    incident, _ = await register_incident(repo, org_id, intake_factory(fatal=True))

    with pytest.raises(RecordNotFoundError):
        await reclassify_incident(repo, other_org, incident.id)
    assert await repo.get_log(other_org, 2024) is None
