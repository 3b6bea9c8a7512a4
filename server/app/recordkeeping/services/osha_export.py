"""Form 300 log and Form 300A summary views, CSV exports and PDF renderings."""

import asyncio
import csv
import html
import io
import logging
from datetime import date
from typing import Optional
from uuid import UUID

from ...config import MINIMUM_RETENTION_YEARS
from ..models.osha import IncidentRecord, Osha300LogResponse, Osha300Row, OshaLogRecord
from .osha_rates import present_rate
from .osha_retention import retention_expires_on
from .osha_workflow import log_state, posting_window

logger = logging.getLogger(__name__)

PRIVACY_CASE_LABEL = "Privacy Case"

CLASSIFICATION_LABELS = {
    "FATALITY": "Death",
    "DAYS_AWAY": "Days Away",
    "RESTRICTED_WORK": "Restricted",
    "JOB_TRANSFER": "Transfer",
    "OTHER_RECORDABLE": "Other",
    "NOT_RECORDABLE": "Not Recordable",
}


def build_300_log(org_id: UUID, year: int, incidents: list[IncidentRecord]) -> Osha300LogResponse:
    """Form 300 rows for the counted incidents, in order of occurrence."""
    rows = []
    for case_number, incident in enumerate(incidents, start=1):
        rows.append(
            Osha300Row(
                case_number=case_number,
                incident_id=incident.id,
                kind=incident.kind,
                case_title=PRIVACY_CASE_LABEL if incident.privacy_case else incident.title,
                occurred_at=incident.occurred_at,
                location=incident.location,
                classification=incident.classification,
                event_type=incident.event_type,
                illness_type=incident.illness_type,
                days_away_from_work=incident.days_away_from_work,
                days_restricted_or_transferred=incident.days_on_restriction + incident.days_on_transfer,
                body_part_affected=incident.body_part_affected,
                nature_of_injury=incident.nature_of_injury,
                privacy_case=incident.privacy_case,
                case_report_completed_at=incident.case_report_completed_at,
            )
        )
    return Osha300LogResponse(
        org_id=org_id,
        year=year,
        rows=rows,
        total_days_away_from_work=sum(row.days_away_from_work for row in rows),
        total_days_restricted_or_transferred=sum(row.days_restricted_or_transferred for row in rows),
    )


def export_300_csv(log_300: Osha300LogResponse) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=[
        'case_number', 'case_title', 'date_of_injury', 'where_occurred',
        'classification', 'event_type', 'illness_type', 'days_away',
        'days_restricted_or_transferred', 'body_part', 'nature_of_injury', 'entry_kind',
    ])
    writer.writeheader()
    for row in log_300.rows:
        writer.writerow({
            'case_number': row.case_number,
            'case_title': row.case_title,
            'date_of_injury': row.occurred_at.date().isoformat(),
            'where_occurred': row.location or '',
            'classification': CLASSIFICATION_LABELS[row.classification],
            'event_type': row.event_type or '',
            'illness_type': row.illness_type or '',
            'days_away': row.days_away_from_work,
            'days_restricted_or_transferred': row.days_restricted_or_transferred,
            'body_part': row.body_part_affected or '',
            'nature_of_injury': row.nature_of_injury or '',
            'entry_kind': row.kind,
        })
    writer.writerow({
        'case_title': 'TOTALS',
        'days_away': log_300.total_days_away_from_work,
        'days_restricted_or_transferred': log_300.total_days_restricted_or_transferred,
    })
    return output.getvalue()


def export_300a_csv(
    log: OshaLogRecord,
    establishment_name: Optional[str] = None,
    retention_years: int = MINIMUM_RETENTION_YEARS,
) -> str:
    """Annual summary as field/value pairs, including the certification block."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['field', 'value'])
    writer.writerow(['establishment', establishment_name or str(log.org_id)])
    writer.writerow(['year', log.year])
    writer.writerow(['revision', log.revision])
    writer.writerow(['state', log_state(log).value])
    writer.writerow(['total_hours_worked', log.total_hours_worked])
    writer.writerow(['avg_employee_count', log.avg_employee_count])
    for field in (
        'total_deaths', 'total_days_away', 'total_restricted', 'total_transfer',
        'total_other_recordable', 'total_recordable', 'total_days_away_from_work',
        'total_days_restricted_or_transferred', 'total_injuries', 'total_skin_disorders',
        'total_respiratory_conditions', 'total_poisonings', 'total_hearing_loss',
        'total_other_illnesses',
    ):
        writer.writerow([field, getattr(log, field)])
    for field in ('trir', 'dart_rate', 'ltir', 'severity_rate'):
        writer.writerow([field, f"{present_rate(getattr(log, field)):.2f}"])
    writer.writerow(['certified_by', log.certified_by or ''])
    writer.writerow(['certified_title', log.certified_title or ''])
    writer.writerow(['certified_at', log.certified_at.isoformat() if log.certified_at else ''])
    writer.writerow(['posted_by', log.posted_by or ''])
    writer.writerow(['posted_at', log.posted_at.isoformat() if log.posted_at else ''])
    writer.writerow(['retention', f"Retain until {retention_expires_on(log.year, retention_years).isoformat()}"])
    return output.getvalue()


# ===========================================
# PDF Renderings
# ===========================================

def _safe(value, default: str = "") -> str:
    """HTML-escape a value for safe embedding in templates."""
    return html.escape(str(value)) if value not in (None, "") else default


_FORM_CSS = """
    @page {
        size: letter;
        margin: 0.6in 0.7in;
    }
    body {
        font-family: 'Helvetica Neue', Helvetica, Arial, sans-serif;
        font-size: 9.5pt;
        color: #1a1a1a;
    }
    .header {
        background: #1f4e79;
        color: #fff;
        padding: 10px 14px;
        margin-bottom: 16px;
    }
    .header .form-title {
        font-size: 16pt;
        font-weight: bold;
    }
    .header .form-subtitle {
        font-size: 11pt;
    }
    .header .meta {
        float: right;
        text-align: right;
        font-size: 8.5pt;
        color: #c8dcff;
    }
    table {
        width: 100%;
        border-collapse: collapse;
    }
    th {
        background: #1f4e79;
        color: #fff;
        font-size: 7.5pt;
        text-align: left;
        padding: 4px;
    }
    td {
        font-size: 7.5pt;
        padding: 3px 4px;
        border-bottom: 1px solid #e5e7eb;
    }
    tr.totals td {
        font-weight: bold;
        border-top: 2px solid #222;
    }
    h2 {
        font-size: 11pt;
        margin: 14px 0 6px 0;
        border-bottom: 1px solid #b4b4b4;
        padding-bottom: 3px;
    }
    .summary td.value {
        font-weight: bold;
        width: 30%;
    }
    .certification {
        border: 1px solid #b4b4b4;
        background: #fafafa;
        padding: 10px;
        margin-top: 16px;
    }
    .footer {
        margin-top: 18px;
        font-size: 7pt;
        color: #787878;
    }
"""

_CERTIFICATION_STATEMENT = (
    "I certify that I have examined this document and that to the best of my knowledge "
    "the entries are true, accurate, and complete."
)


def render_300_html(log_300: Osha300LogResponse, establishment_name: Optional[str] = None) -> str:
    """Form 300 log as a landscape HTML page; privacy cases stay masked."""
    establishment = _safe(establishment_name, _safe(log_300.org_id))
    rows_html = "".join(
        f"""<tr>
            <td>{row.case_number}</td>
            <td>{_safe(row.case_title)}</td>
            <td>{row.occurred_at.strftime("%m/%d")}</td>
            <td>{_safe(row.location, "&mdash;")}</td>
            <td>{_safe(CLASSIFICATION_LABELS[row.classification])}</td>
            <td>{row.days_away_from_work}</td>
            <td>{row.days_restricted_or_transferred}</td>
            <td>{_safe(row.body_part_affected, "&mdash;")}</td>
            <td>{_safe(row.nature_of_injury, "&mdash;")}</td>
            <td>{_safe(row.illness_type or row.event_type, "&mdash;")}</td>
        </tr>"""
        for row in log_300.rows
    )

    return f"""<!DOCTYPE html>
<html><head><meta charset="UTF-8"><style>{_FORM_CSS}
    @page {{ size: letter landscape; }}
</style></head>
<body>
<div class="header">
    <div class="meta">Establishment: {establishment}<br>Year: {log_300.year}<br>29 CFR Part 1904</div>
    <div class="form-title">OSHA's Form 300</div>
    <div class="form-subtitle">Log of Work-Related Injuries and Illnesses</div>
</div>
<table>
    <thead><tr>
        <th>#</th><th>Case</th><th>Date</th><th>Where Occurred</th><th>Classification</th>
        <th>Days Away</th><th>Restricted + Transfer</th><th>Body Part</th>
        <th>Injury / Illness</th><th>Type</th>
    </tr></thead>
    <tbody>
        {rows_html}
        <tr class="totals">
            <td></td><td>TOTALS</td><td></td><td></td><td></td>
            <td>{log_300.total_days_away_from_work}</td>
            <td>{log_300.total_days_restricted_or_transferred}</td>
            <td></td><td></td><td></td>
        </tr>
    </tbody>
</table>
<div class="footer">
    Generated {date.today().strftime("%m/%d/%Y")} &middot; OSHA Form 300 &middot; 29 CFR 1904
</div>
</body></html>"""


def _summary_rows(pairs) -> str:
    return "".join(
        f'<tr><td>{_safe(label)}</td><td class="value">{_safe(value, "0")}</td></tr>'
        for label, value in pairs
    )


def render_300a_html(
    log: OshaLogRecord,
    establishment_name: Optional[str] = None,
    retention_years: int = MINIMUM_RETENTION_YEARS,
) -> str:
    """Form 300A annual summary, the page posted for the workforce."""
    has_hours = log.total_hours_worked > 0

    def rate(value) -> str:
        return f"{present_rate(value):.2f}" if has_hours else "N/A"

    establishment_html = _summary_rows([("Establishment name", establishment_name or log.org_id)])
    cases_html = _summary_rows([
        ("Total deaths", log.total_deaths),
        ("Cases with days away from work", log.total_days_away),
        ("Cases with job transfer or restriction", log.total_restricted + log.total_transfer),
        ("Other recordable cases", log.total_other_recordable),
        ("Total recordable cases", log.total_recordable),
    ])
    days_html = _summary_rows([
        ("Total days away from work", log.total_days_away_from_work),
        ("Total days of job transfer or restriction", log.total_days_restricted_or_transferred),
    ])
    types_html = _summary_rows([
        ("Injuries", log.total_injuries),
        ("Skin disorders", log.total_skin_disorders),
        ("Respiratory conditions", log.total_respiratory_conditions),
        ("Poisonings", log.total_poisonings),
        ("Hearing loss", log.total_hearing_loss),
        ("All other illnesses", log.total_other_illnesses),
    ])
    exposure_html = _summary_rows([
        ("Annual average number of employees", log.avg_employee_count),
        ("Total hours worked by all employees", f"{log.total_hours_worked:,}"),
    ])
    rates_html = _summary_rows([
        ("TRIR (Total Recordable Incident Rate)", rate(log.trir)),
        ("DART Rate (Days Away, Restricted, Transfer)", rate(log.dart_rate)),
        ("LTIR (Lost Time Incident Rate)", rate(log.ltir)),
        ("Severity Rate", rate(log.severity_rate)),
    ])

    if log.is_certified:
        certification_html = (
            f"Signed: {_safe(log.certified_by)} &nbsp;|&nbsp; "
            f"Title: {_safe(log.certified_title, '&mdash;')} &nbsp;|&nbsp; "
            f"Date: {log.certified_at.strftime('%m/%d/%Y')}"
        )
    else:
        certification_html = "Not yet certified."

    window_start, window_end = posting_window(log.year)
    retain_until = retention_expires_on(log.year, retention_years)

    return f"""<!DOCTYPE html>
<html><head><meta charset="UTF-8"><style>{_FORM_CSS}</style></head>
<body>
<div class="header">
    <div class="meta">Year: {log.year}<br>Revision: {log.revision}</div>
    <div class="form-title">OSHA's Form 300A</div>
    <div class="form-subtitle">Summary of Work-Related Injuries and Illnesses</div>
</div>

<h2>Establishment Information</h2>
<table class="summary">{establishment_html}</table>

<h2>Number of Cases</h2>
<table class="summary">{cases_html}</table>

<h2>Number of Days</h2>
<table class="summary">{days_html}</table>

<h2>Injury and Illness Types</h2>
<table class="summary">{types_html}</table>

<h2>Establishment Employment and Hours</h2>
<table class="summary">{exposure_html}</table>

<h2>Calculated Rates</h2>
<table class="summary">{rates_html}</table>

<div class="certification">
    <strong>Certification</strong>
    <p>{_CERTIFICATION_STATEMENT}</p>
    <p>{certification_html}</p>
</div>

<div class="footer">
    Generated {date.today().strftime("%m/%d/%Y")} &middot; OSHA Form 300A &middot; 29 CFR Part 1904
    &middot; Post from {window_start.strftime("%B %d, %Y")} to {window_end.strftime("%B %d, %Y")}
    &middot; Retain until {retain_until.isoformat()}
</div>
</body></html>"""


def _write_pdf(html_content: str) -> bytes:
    try:
        from weasyprint import HTML
    except ImportError as exc:
        raise RuntimeError("PDF generation is not available because WeasyPrint is not installed") from exc

    return HTML(string=html_content).write_pdf()


async def export_300_pdf(log_300: Osha300LogResponse, establishment_name: Optional[str] = None) -> bytes:
    html_content = render_300_html(log_300, establishment_name)
    pdf_bytes = await asyncio.to_thread(_write_pdf, html_content)
    logger.info(f"Rendered OSHA 300 PDF org={log_300.org_id} year={log_300.year} rows={len(log_300.rows)}")
    return pdf_bytes


async def export_300a_pdf(
    log: OshaLogRecord,
    establishment_name: Optional[str] = None,
    retention_years: int = MINIMUM_RETENTION_YEARS,
) -> bytes:
    html_content = render_300a_html(log, establishment_name, retention_years)
    pdf_bytes = await asyncio.to_thread(_write_pdf, html_content)
    logger.info(f"Rendered OSHA 300A PDF org={log.org_id} year={log.year} revision={log.revision}")
    return pdf_bytes
