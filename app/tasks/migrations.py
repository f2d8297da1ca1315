import time

from sqlalchemy.exc import SQLAlchemyError

from app.celery_app import celery_app
from app.container import container
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job
from app.models.migration import MigrationJob, MigrationStage
from app.services.common import coerce_uuid
from app.services.migrations.executor import execute_job
from app.services.migrations.jobs import MigrationJobs

logger = get_logger(__name__)


def _mark_unexpected_failure(session, job_id: str, exc: Exception) -> None:
    try:
        job = session.get(MigrationJob, coerce_uuid(job_id))
        if job is not None and not job.is_terminal:
            MigrationJobs.mark_failed(session, job, f"Unexpected error: {exc}")
    except SQLAlchemyError:
        session.rollback()
        logger.exception("migration_job_fail_mark_error job_id=%s", job_id)


# No time limit: an import runs until its checkpoint covers the dataset.
@celery_app.task(name="app.tasks.migrations.run_migration_job")
def run_migration_job(job_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger.info("MIGRATION_JOB_START job_id=%s", job_id)
    try:
        job = session.get(MigrationJob, coerce_uuid(job_id))
        if job is None or job.stage != MigrationStage.executing:
            status = "skipped"
            logger.info(
                "migration_job_skipped job_id=%s stage=%s",
                job_id,
                job.stage.value if job else None,
            )
            return
        credentials = MigrationJobs.load_credentials(session, job)
        client = container.source_client(source=job.source, credentials=credentials, org_id=job.org_id)
        try:
            execute_job(session, job, client)
        finally:
            client.close()
        status = job.stage.value
    except Exception as exc:
        status = "error"
        session.rollback()
        _mark_unexpected_failure(session, job_id, exc)
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("migration_job", status, duration)
