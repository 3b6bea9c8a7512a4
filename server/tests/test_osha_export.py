import asyncio
import csv
import io
import sys
import types
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.recordkeeping.services.osha_aggregator import update_exposure
from app.recordkeeping.services.osha_export import (
    PRIVACY_CASE_LABEL,
    build_300_log,
    export_300_csv,
    export_300_pdf,
    export_300a_csv,
    export_300a_pdf,
    render_300_html,
    render_300a_html,
)
from app.recordkeeping.services.osha_incidents import register_incident
from app.recordkeeping.services.osha_workflow import certify_log


async def _seed(repo, org_id, intake_factory):
    await register_incident(
        repo,
        org_id,
        intake_factory(
            title="Needle stick",
            privacy_case=True,
            diagnosed_by_professional=True,
            injury_category="infection",
            occurred_at=datetime(2024, 8, 2, tzinfo=timezone.utc),
        ),
    )
    await register_incident(
        repo,
        org_id,
        intake_factory(
            title="Forklift collision",
            days_away_from_work=6,
            days_on_restriction=4,
            occurred_at=datetime(2024, 2, 14, tzinfo=timezone.utc),
        ),
    )
    await register_incident(repo, org_id, intake_factory(title="Paper cut", treatment="first_aid"))
    return await repo.list_counted_incidents(org_id, 2024)


def test_300_log_orders_cases_and_masks_privacy_cases(repo, org_id, intake_factory):
    incidents = asyncio.run(_seed(repo, org_id, intake_factory))
    log_300 = build_300_log(org_id, 2024, incidents)

    assert [row.case_number for row in log_300.rows] == [1, 2]
    assert [row.case_title for row in log_300.rows] == ["Forklift collision", PRIVACY_CASE_LABEL]
    assert log_300.rows[1].privacy_case is True
    assert log_300.rows[1].illness_type == "ALL_OTHER_ILLNESSES"
    assert log_300.total_days_away_from_work == 6
    assert log_300.total_days_restricted_or_transferred == 4


def test_300_csv_has_rows_and_totals(repo, org_id, intake_factory):
    incidents = asyncio.run(_seed(repo, org_id, intake_factory))
    content = export_300_csv(build_300_log(org_id, 2024, incidents))

    rows = list(csv.DictReader(io.StringIO(content)))
    assert len(rows) == 3
    assert rows[0]["classification"] == "Days Away"
    assert rows[0]["date_of_injury"] == "2024-02-14"
    assert rows[1]["case_title"] == PRIVACY_CASE_LABEL
    assert "Needle stick" not in content
    assert rows[2]["case_title"] == "TOTALS"
    assert rows[2]["days_away"] == "6"


def test_300a_csv_includes_rates_and_certification(repo, org_id, intake_factory):
    asyncio.run(_run_300a_test(repo, org_id, intake_factory))


async def _run_300a_test(repo, org_id, intake_factory):
    await _seed(repo, org_id, intake_factory)
    await update_exposure(repo, org_id, 2024, Decimal(300000), 150)
    log = await certify_log(repo, org_id, 2024, "Jordan Lee", "Plant Manager")

    content = export_300a_csv(log, establishment_name="Acme")
    values = dict(csv.reader(io.StringIO(content)))
    assert values["establishment"] == "Acme"
    assert values["state"] == "certified"
    assert values["total_recordable"] == "2"
    assert values["trir"] == "1.33"
    assert values["dart_rate"] == "0.67"
    assert values["certified_by"] == "Jordan Lee"
    assert values["certified_title"] == "Plant Manager"
    assert values["posted_at"] == ""
    assert values["retention"] == "Retain until 2029-12-31"


def _capture_weasyprint(monkeypatch) -> dict:
    captured: dict[str, str] = {}

    class DummyHTML:
        def __init__(self, string):
            captured["html"] = string

        def write_pdf(self):
            return b"%PDF-test"

    monkeypatch.setitem(sys.modules, "weasyprint", types.SimpleNamespace(HTML=DummyHTML))
    return captured


def test_300_html_masks_privacy_cases_and_escapes_values(repo, org_id, intake_factory):
    incidents = asyncio.run(_seed(repo, org_id, intake_factory))
    log_300 = build_300_log(org_id, 2024, incidents)

    rendered = render_300_html(log_300, establishment_name="<b>Acme</b> & Sons")

    assert "OSHA's Form 300" in rendered
    assert "size: letter landscape" in rendered
    assert "&lt;b&gt;Acme&lt;/b&gt; &amp; Sons" in rendered
    assert "<b>Acme</b>" not in rendered
    assert "Forklift collision" in rendered
    assert PRIVACY_CASE_LABEL in rendered
    assert "Needle stick" not in rendered
    assert "Paper cut" not in rendered
    assert "<td>TOTALS</td>" in rendered


def test_300a_html_before_certification_shows_no_rates_without_hours(repo, org_id, intake_factory):
    asyncio.run(_seed(repo, org_id, intake_factory))
    log = asyncio.run(repo.get_log(org_id, 2024))

    rendered = render_300a_html(log, establishment_name="Acme")

    assert "OSHA's Form 300A" in rendered
    assert "Not yet certified." in rendered
    assert "N/A" in rendered
    assert "Post from February 01, 2025 to April 30, 2025" in rendered
    assert "Retain until 2029-12-31" in rendered


def test_300a_pdf_renders_certified_summary(monkeypatch, repo, org_id, intake_factory):
    captured = _capture_weasyprint(monkeypatch)
    asyncio.run(_run_300a_pdf_test(repo, org_id, intake_factory, captured))


async def _run_300a_pdf_test(repo, org_id, intake_factory, captured):
    await _seed(repo, org_id, intake_factory)
    await update_exposure(repo, org_id, 2024, Decimal(300000), 150)
    log = await certify_log(repo, org_id, 2024, "Jordan <Lee>", "Plant Manager")

    pdf_bytes = await export_300a_pdf(log, establishment_name="Acme", retention_years=7)

    assert pdf_bytes == b"%PDF-test"
    rendered = captured["html"]
    assert "Signed: Jordan &lt;Lee&gt;" in rendered
    assert "Title: Plant Manager" in rendered
    assert "Not yet certified." not in rendered
    assert '<td class="value">1.33</td>' in rendered
    assert '<td class="value">300,000</td>' in rendered
    assert "Retain until 2031-12-31" in rendered


def test_300_pdf_uses_the_form_300_layout(monkeypatch, repo, org_id, intake_factory):
    captured = _capture_weasyprint(monkeypatch)
    incidents = asyncio.run(_seed(repo, org_id, intake_factory))

    pdf_bytes = asyncio.run(export_300_pdf(build_300_log(org_id, 2024, incidents), "Acme"))

    assert pdf_bytes == b"%PDF-test"
    assert "Log of Work-Related Injuries and Illnesses" in captured["html"]


def test_pdf_without_weasyprint_raises_runtime_error(monkeypatch, repo, org_id, intake_factory):
    monkeypatch.setitem(sys.modules, "weasyprint", None)
    incidents = asyncio.run(_seed(repo, org_id, intake_factory))

    with pytest.raises(RuntimeError, match="WeasyPrint is not installed"):
        asyncio.run(export_300_pdf(build_300_log(org_id, 2024, incidents)))
