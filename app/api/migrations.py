from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import (
    get_db,
    get_migration_jobs_service,
    get_org_id,
    get_source_client_factory,
    get_task_dispatcher,
)
from app.logging import get_logger
from app.models.migration import MigrationSource
from app.schemas.migrations import (
    CancelRead,
    DryRunRead,
    DryRunRequest,
    ExecuteAccepted,
    ExecuteRequest,
    MigrationProgressRead,
    MigrationReportRead,
    PreflightRead,
    PreflightRequest,
)
from app.services.migrations.clients.base import SourceCredentials
from app.services.migrations.dry_run import run_dry_run
from app.services.migrations.errors import MigrationValidationError
from app.services.migrations.preflight import run_preflight
from app.services.migrations.report import MigrationReport, report_or_progress

logger = get_logger(__name__)

router = APIRouter(prefix="/migrations", tags=["migrations"])


def _parse_source(source: str) -> MigrationSource:
    try:
        return MigrationSource(source.lower())
    except ValueError as exc:
        raise MigrationValidationError(f"Unsupported migration source: {source}") from exc


@router.post("/{source}/preflight", response_model=PreflightRead)
def preflight(
    source: str,
    payload: PreflightRequest,
    org_id=Depends(get_org_id),
    db: Session = Depends(get_db),
    client_factory=Depends(get_source_client_factory),
):
    migration_source = _parse_source(source)
    api_key = (payload.api_key or "").strip() or None
    access_token = (payload.access_token or "").strip() or None
    if not api_key and not access_token:
        raise MigrationValidationError("API key or access token required")

    credentials = SourceCredentials(api_key=api_key, access_token=access_token)
    client = client_factory(source=migration_source, credentials=credentials, org_id=org_id)
    try:
        result = run_preflight(db, org_id, migration_source, credentials, client)
    finally:
        client.close()
    return PreflightRead.model_validate(result.to_dict())


@router.post("/{source}/dry-run", response_model=DryRunRead)
def dry_run(
    source: str,
    payload: DryRunRequest,
    org_id=Depends(get_org_id),
    db: Session = Depends(get_db),
    jobs=Depends(get_migration_jobs_service),
    client_factory=Depends(get_source_client_factory),
):
    migration_source = _parse_source(source)
    job = jobs.get_for_org(db, payload.job_id, org_id, migration_source)
    credentials = jobs.load_credentials(db, job)
    options = payload.options.model_dump() if payload.options else None
    client = client_factory(source=migration_source, credentials=credentials, org_id=org_id)
    try:
        result = run_dry_run(db, job, client, options)
    finally:
        client.close()
    return DryRunRead.model_validate(result.to_dict())


@router.post("/{source}/execute", response_model=ExecuteAccepted, status_code=status.HTTP_202_ACCEPTED)
def execute(
    source: str,
    payload: ExecuteRequest,
    org_id=Depends(get_org_id),
    db: Session = Depends(get_db),
    jobs=Depends(get_migration_jobs_service),
    dispatch=Depends(get_task_dispatcher),
):
    migration_source = _parse_source(source)
    job = jobs.get_for_org(db, payload.job_id, org_id, migration_source)
    running = jobs.begin_execution(db, job)
    try:
        dispatch(str(running.id))
    except Exception as exc:
        logger.exception("migration_dispatch_failed job_id=%s", running.id)
        jobs.mark_failed(db, running, f"Could not queue execution: {exc}")
        raise HTTPException(status_code=503, detail="Migration worker unavailable") from exc
    return ExecuteAccepted(
        job_id=running.id,
        stage=running.stage.value,
        resumed_from_job_id=running.resumed_from_job_id,
    )


@router.post("/{job_id}/cancel", response_model=CancelRead)
def cancel(
    job_id: str,
    org_id=Depends(get_org_id),
    db: Session = Depends(get_db),
    jobs=Depends(get_migration_jobs_service),
):
    job = jobs.get_for_org(db, job_id, org_id)
    job = jobs.request_cancel(db, job)
    return CancelRead(job_id=job.id, stage=job.stage.value, cancel_requested=bool(job.cancel_requested))


@router.get("/{job_id}/report", response_model=MigrationReportRead | MigrationProgressRead)
def report(
    job_id: str,
    org_id=Depends(get_org_id),
    db: Session = Depends(get_db),
    jobs=Depends(get_migration_jobs_service),
):
    job = jobs.get_for_org(db, job_id, org_id)
    view = report_or_progress(db, job)
    if isinstance(view, MigrationReport):
        return MigrationReportRead.model_validate(view.to_dict())
    return MigrationProgressRead.model_validate(view.to_dict())
