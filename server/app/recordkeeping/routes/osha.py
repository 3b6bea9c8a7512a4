"""OSHA Recordkeeping API Routes.

Injury and illness recordkeeping for an organization:
- Incident intake, reclassification and correction entries
- Annual log (Form 300A) aggregation, exposure inputs and rates
- Certification and posting workflow
- Form 300 / 300A exports (CSV and PDF)
- Certified revision history and workflow introspection
"""

import io
import logging
from datetime import date
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import StreamingResponse

from ...config import get_settings
from ...core.models.auth import CurrentUser
from ...database import get_connection
from ..dependencies import certifier_for_org, reader_for_org, recordkeeper_for_org, require_log_reader
from ..errors import (
    ConcurrencyConflictError,
    RecordkeepingError,
    RecordkeepingValidationError,
    RecordNotFoundError,
    StateConflictError,
)
from ..models.osha import (
    ArchiveRequest,
    CertificationEventListResponse,
    CertifyRequest,
    CorrectionResponse,
    ExposureUpdate,
    IncidentInput,
    IncidentRecord,
    IncidentResponse,
    Osha300LogResponse,
    OshaLogListResponse,
    OshaLogRecord,
    OshaLogResponse,
    OshaLogRevisionListResponse,
    OshaRatesResponse,
    PostingStatusResponse,
    PostRequest,
    ReclassifyRequest,
    WorkflowStateMachineResponse,
)
from ..services.osha_aggregator import recompute, update_exposure
from ..services.osha_export import (
    build_300_log,
    export_300_csv,
    export_300_pdf,
    export_300a_csv,
    export_300a_pdf,
)
from ..services.osha_incidents import reclassify_incident, register_incident, update_incident_intake
from ..services.osha_rates import present_rate
from ..services.osha_repository import OshaRepository
from ..services.osha_retention import (
    archive_incident,
    archive_log,
    record_correction,
    retention_expires_on,
)
from ..services.osha_workflow import (
    all_states,
    certify_log,
    log_state,
    post_log,
    posting_status,
    posting_window,
    state_machine_map,
)

logger = logging.getLogger(__name__)

router = APIRouter()

YearPath = Annotated[int, Path(ge=1971, le=9999, description="Calendar year of the log")]


# ===========================================
# Helper Functions
# ===========================================

def _http_error(exc: RecordkeepingError) -> HTTPException:
    """Translate an engine error into an HTTPException with a structured detail."""
    if isinstance(exc, RecordNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, RecordkeepingValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, StateConflictError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ConcurrencyConflictError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=status_code, detail=exc.to_detail())


def log_to_response(log: OshaLogRecord) -> OshaLogResponse:
    window_start, window_end = posting_window(log.year)
    return OshaLogResponse(
        id=log.id,
        org_id=log.org_id,
        year=log.year,
        revision=log.revision,
        version=log.version,
        state=log_state(log).value,
        total_hours_worked=float(log.total_hours_worked),
        avg_employee_count=log.avg_employee_count,
        counts=log.counts(),
        rates=OshaRatesResponse(
            trir=present_rate(log.trir),
            dart_rate=present_rate(log.dart_rate),
            ltir=present_rate(log.ltir),
            severity_rate=present_rate(log.severity_rate),
        ),
        certified_at=log.certified_at,
        certified_by=log.certified_by,
        certified_title=log.certified_title,
        posted_at=log.posted_at,
        posted_by=log.posted_by,
        posting_window_start=window_start,
        posting_window_end=window_end,
        retention_expires_on=retention_expires_on(log.year, get_settings().retention_years),
        archived_at=log.archived_at,
    )


async def _require_log(repo: OshaRepository, org_id: UUID, year: int) -> OshaLogRecord:
    log = await repo.get_log(org_id, year)
    if log is None:
        raise RecordNotFoundError(f"Log for {year} not found")
    return log


def _csv_response(content: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(content.encode()),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def _pdf_response(pdf_bytes: bytes, filename: str) -> StreamingResponse:
    return StreamingResponse(
        io.BytesIO(pdf_bytes),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ===========================================
# Incidents
# ===========================================

@router.post(
    "/organizations/{org_id}/incidents",
    response_model=IncidentResponse,
    status_code=201,
)
async def create_incident(
    org_id: UUID,
    intake: IncidentInput,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Register an incident from intake; it is classified and its log recomputed."""
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        try:
            incident, years = await register_incident(repo, org_id, intake)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return IncidentResponse(incident=incident, log_years_recomputed=years)


@router.get("/organizations/{org_id}/incidents/{incident_id}", response_model=IncidentRecord)
async def get_incident(
    org_id: UUID,
    incident_id: UUID,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        incident = await OshaRepository(conn).get_incident(org_id, incident_id)

    if incident is None:
        raise _http_error(RecordNotFoundError(f"Incident {incident_id} not found"))
    return incident


@router.put("/organizations/{org_id}/incidents/{incident_id}", response_model=IncidentResponse)
async def update_incident(
    org_id: UUID,
    incident_id: UUID,
    intake: IncidentInput,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Replace the intake fields of an incident whose log is still open."""
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        try:
            incident, years = await update_incident_intake(repo, org_id, incident_id, intake)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return IncidentResponse(incident=incident, log_years_recomputed=years)


@router.post(
    "/organizations/{org_id}/incidents/{incident_id}/classify",
    response_model=IncidentResponse,
)
async def classify_incident(
    org_id: UUID,
    incident_id: UUID,
    request: ReclassifyRequest,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Re-run classification, optionally with an override or a different log year."""
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        try:
            incident, years = await reclassify_incident(
                repo,
                org_id,
                incident_id,
                override=request.override,
                clear_override=request.clear_override,
                log_year=request.log_year,
            )
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    logger.info(f"User {current_user.id} reclassified incident {incident_id}")
    return IncidentResponse(incident=incident, log_years_recomputed=years)


@router.post(
    "/organizations/{org_id}/incidents/{incident_id}/corrections",
    response_model=CorrectionResponse,
    status_code=201,
)
async def correct_incident(
    org_id: UUID,
    incident_id: UUID,
    correction: IncidentInput,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Supersede an incident counted in a certified log with a correction entry."""
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        try:
            entry, log = await record_correction(
                repo, org_id, correction, current_user.id, corrects_incident_id=incident_id
            )
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return CorrectionResponse(incident=entry, log=log_to_response(log))


@router.post(
    "/organizations/{org_id}/incidents/{incident_id}/archive",
    response_model=IncidentRecord,
)
async def archive_incident_endpoint(
    org_id: UUID,
    incident_id: UUID,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        try:
            return await archive_incident(OshaRepository(conn), org_id, incident_id)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc


# ===========================================
# Annual Logs
# ===========================================

@router.get("/organizations/{org_id}/logs", response_model=OshaLogListResponse)
async def list_logs(
    org_id: UUID,
    current_user: CurrentUser = Depends(reader_for_org),
):
    """Year-over-year logs, newest first."""
    async with get_connection() as conn:
        logs = await OshaRepository(conn).list_logs(org_id)

    return OshaLogListResponse(logs=[log_to_response(log) for log in logs], total=len(logs))


@router.get("/organizations/{org_id}/logs/{year}", response_model=OshaLogResponse)
async def get_log(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(reader_for_org),
):
    async with get_connection() as conn:
        try:
            log = await _require_log(OshaRepository(conn), org_id, year)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return log_to_response(log)


@router.put("/organizations/{org_id}/logs/{year}/exposure", response_model=OshaLogResponse)
async def set_exposure(
    org_id: UUID,
    request: ExposureUpdate,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Set total hours worked and average employee count, then recompute rates."""
    async with get_connection() as conn:
        try:
            log = await update_exposure(
                OshaRepository(conn),
                org_id,
                year,
                request.total_hours_worked,
                request.avg_employee_count,
            )
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return log_to_response(log)


@router.post("/organizations/{org_id}/logs/{year}/recompute", response_model=OshaLogResponse)
async def recompute_log(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        try:
            log = await recompute(OshaRepository(conn), org_id, year)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return log_to_response(log)


@router.post("/organizations/{org_id}/logs/{year}/certify", response_model=OshaLogResponse)
async def certify(
    org_id: UUID,
    request: CertifyRequest,
    year: YearPath,
    current_user: CurrentUser = Depends(certifier_for_org),
):
    """Executive sign-off of the annual summary."""
    async with get_connection() as conn:
        try:
            log = await certify_log(
                OshaRepository(conn),
                org_id,
                year,
                request.certified_by,
                request.certified_title,
            )
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    logger.info(f"User {current_user.id} certified log org={org_id} year={year}")
    return log_to_response(log)


@router.post("/organizations/{org_id}/logs/{year}/post", response_model=OshaLogResponse)
async def post(
    org_id: UUID,
    request: PostRequest,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        try:
            log = await post_log(OshaRepository(conn), org_id, year, request.posted_by)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return log_to_response(log)


@router.post("/organizations/{org_id}/logs/{year}/archive", response_model=OshaLogResponse)
async def archive(
    org_id: UUID,
    request: ArchiveRequest,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        try:
            log = await archive_log(
                OshaRepository(conn), org_id, year, current_user.id, reason=request.reason
            )
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return log_to_response(log)


@router.post(
    "/organizations/{org_id}/logs/{year}/corrections",
    response_model=CorrectionResponse,
    status_code=201,
)
async def add_late_case(
    org_id: UUID,
    correction: IncidentInput,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Add a case discovered after the year's log was certified."""
    correction = correction.model_copy(update={"log_year_override": year})
    async with get_connection() as conn:
        try:
            entry, log = await record_correction(
                OshaRepository(conn), org_id, correction, current_user.id
            )
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return CorrectionResponse(incident=entry, log=log_to_response(log))


# ===========================================
# Reporting
# ===========================================

@router.get("/organizations/{org_id}/logs/{year}/incidents", response_model=Osha300LogResponse)
async def get_300_log(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    """Form 300 rows for the year, with privacy cases masked."""
    async with get_connection() as conn:
        incidents = await OshaRepository(conn).list_counted_incidents(org_id, year)

    return build_300_log(org_id, year, incidents)


@router.get(
    "/organizations/{org_id}/logs/{year}/events",
    response_model=CertificationEventListResponse,
)
async def list_certification_events(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(reader_for_org),
):
    async with get_connection() as conn:
        events = await OshaRepository(conn).list_events(org_id, year)

    return CertificationEventListResponse(events=events, total=len(events))


@router.get(
    "/organizations/{org_id}/logs/{year}/revisions",
    response_model=OshaLogRevisionListResponse,
)
async def list_log_revisions(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(reader_for_org),
):
    """The log as it stood at each certification, oldest revision first."""
    async with get_connection() as conn:
        snapshots = await OshaRepository(conn).list_revision_snapshots(org_id, year)

    return OshaLogRevisionListResponse(
        revisions=[log_to_response(snapshot) for snapshot in snapshots],
        total=len(snapshots),
    )


@router.get(
    "/organizations/{org_id}/logs/{year}/posting-status",
    response_model=PostingStatusResponse,
)
async def get_posting_status(
    org_id: UUID,
    year: YearPath,
    as_of: Optional[date] = Query(None, description="Evaluate the posting window on this date"),
    current_user: CurrentUser = Depends(reader_for_org),
):
    async with get_connection() as conn:
        try:
            log = await _require_log(OshaRepository(conn), org_id, year)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc

    return posting_status(log, today=as_of)


@router.get("/organizations/{org_id}/logs/{year}/export/300.csv")
async def export_300(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        incidents = await OshaRepository(conn).list_counted_incidents(org_id, year)

    content = export_300_csv(build_300_log(org_id, year, incidents))
    return _csv_response(content, f"osha_300_{year}.csv")


@router.get("/organizations/{org_id}/logs/{year}/export/300a.csv")
async def export_300a(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(reader_for_org),
):
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        try:
            log = await _require_log(repo, org_id, year)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc
        establishment = await repo.organization_name(org_id)

    content = export_300a_csv(
        log,
        establishment_name=establishment,
        retention_years=get_settings().retention_years,
    )
    return _csv_response(content, f"osha_300a_{year}.csv")


@router.get("/organizations/{org_id}/logs/{year}/export/300.pdf")
async def export_300_pdf_endpoint(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(recordkeeper_for_org),
):
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        incidents = await repo.list_counted_incidents(org_id, year)
        establishment = await repo.organization_name(org_id)

    try:
        pdf_bytes = await export_300_pdf(build_300_log(org_id, year, incidents), establishment)
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return _pdf_response(pdf_bytes, f"osha_300_{year}.pdf")


@router.get("/organizations/{org_id}/logs/{year}/export/300a.pdf")
async def export_300a_pdf_endpoint(
    org_id: UUID,
    year: YearPath,
    current_user: CurrentUser = Depends(reader_for_org),
):
    """Form 300A summary for posting, with the certification block."""
    async with get_connection() as conn:
        repo = OshaRepository(conn)
        try:
            log = await _require_log(repo, org_id, year)
        except RecordkeepingError as exc:
            raise _http_error(exc) from exc
        establishment = await repo.organization_name(org_id)

    try:
        pdf_bytes = await export_300a_pdf(
            log,
            establishment_name=establishment,
            retention_years=get_settings().retention_years,
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return _pdf_response(pdf_bytes, f"osha_300a_{year}.pdf")


# ===========================================
# Workflow
# ===========================================

@router.get("/workflow/state-machine", response_model=WorkflowStateMachineResponse)
async def get_workflow_state_machine(
    current_user: CurrentUser = Depends(require_log_reader),
):
    """Log states and the transitions allowed between them."""
    return WorkflowStateMachineResponse(states=all_states(), transitions=state_machine_map())
