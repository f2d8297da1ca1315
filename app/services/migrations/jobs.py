"""Migration job lifecycle.

Stages advance only on explicit operator actions:

    pending -> preflight -> dry_run (optional) -> executing -> completed
                                                            -> failed
                                                            -> cancelled

Terminal jobs are kept for audit and reporting and are never mutated again.
A failed or cancelled import continues as a *new* job seeded with the old
job's checkpoint.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timedelta

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.migration import (
    EXECUTION_LOCK_ACTIVE,
    TERMINAL_STAGES,
    MigrationCredential,
    MigrationErrorKind,
    MigrationJob,
    MigrationJobError,
    MigrationSource,
    MigrationStage,
)
from app.services.common import coerce_uuid, ensure_utc, utcnow
from app.services.migrations.clients.base import ENTITY_TYPES, SourceCredentials
from app.services.migrations.errors import JobConflictError

logger = get_logger(__name__)

MAX_WARNINGS = 200
MAX_ERROR_MESSAGE = 1000

ALLOWED_TRANSITIONS: dict[MigrationStage, frozenset[MigrationStage]] = {
    MigrationStage.pending: frozenset(
        {MigrationStage.preflight, MigrationStage.failed, MigrationStage.cancelled}
    ),
    MigrationStage.preflight: frozenset(
        {MigrationStage.dry_run, MigrationStage.executing, MigrationStage.failed, MigrationStage.cancelled}
    ),
    MigrationStage.dry_run: frozenset(
        {MigrationStage.dry_run, MigrationStage.executing, MigrationStage.failed, MigrationStage.cancelled}
    ),
    MigrationStage.executing: frozenset(
        {MigrationStage.completed, MigrationStage.failed, MigrationStage.cancelled}
    ),
    MigrationStage.completed: frozenset(),
    MigrationStage.failed: frozenset(),
    MigrationStage.cancelled: frozenset(),
}

OUTCOMES = ("created", "updated", "skipped", "failed")


def empty_counts() -> dict:
    counts: dict = {f"{entity}_total": 0 for entity in ENTITY_TYPES}
    counts.update({outcome: 0 for outcome in OUTCOMES})
    counts["entities"] = {entity: {outcome: 0 for outcome in OUTCOMES} for entity in ENTITY_TYPES}
    return counts


def skipped_entities(options: dict | None) -> set[str]:
    options = options or {}
    return {entity for entity in ENTITY_TYPES if options.get(f"skip_{entity}")}


def is_stale(job: MigrationJob, now: datetime | None = None, stale_after_minutes: int | None = None) -> bool:
    """An executing job whose last sign of life is older than the stale window."""
    if job.stage != MigrationStage.executing:
        return False
    minutes = settings.migration_stale_after_minutes if stale_after_minutes is None else stale_after_minutes
    last_seen = ensure_utc(job.last_checkpoint_at) or ensure_utc(job.started_at)
    if last_seen is None:
        return True
    return (now or utcnow()) - last_seen > timedelta(minutes=minutes)


class MigrationJobs:
    @staticmethod
    def store_credentials(
        db: Session, org_id: uuid.UUID, source: MigrationSource, credentials: SourceCredentials
    ) -> MigrationCredential:
        credential = MigrationCredential(
            org_id=org_id,
            source=source,
            api_key=credentials.api_key,
            access_token=credentials.access_token,
        )
        db.add(credential)
        db.flush()
        return credential

    @staticmethod
    def load_credentials(db: Session, job: MigrationJob) -> SourceCredentials:
        credential = db.get(MigrationCredential, job.credentials_ref)
        if credential is None:
            raise HTTPException(status_code=404, detail="Migration credentials not found")
        return SourceCredentials(api_key=credential.api_key, access_token=credential.access_token)

    @staticmethod
    def create(
        db: Session,
        org_id: uuid.UUID,
        source: MigrationSource,
        credentials: SourceCredentials,
        options: dict | None = None,
    ) -> MigrationJob:
        credential = MigrationJobs.store_credentials(db, org_id, source, credentials)
        job = MigrationJob(
            org_id=org_id,
            source=source,
            credentials_ref=credential.id,
            stage=MigrationStage.pending,
            checkpoint={},
            counts=empty_counts(),
            warnings=[],
            options=dict(options or {}),
            cancel_requested=False,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        logger.info(
            "migration_job_created job_id=%s org_id=%s source=%s credential=%s",
            job.id,
            org_id,
            source.value,
            credentials.masked(),
        )
        return job

    @staticmethod
    def get(db: Session, job_id) -> MigrationJob:
        job = db.get(MigrationJob, coerce_uuid(job_id))
        if not job:
            raise HTTPException(status_code=404, detail="Migration job not found")
        return job

    @staticmethod
    def get_for_org(db: Session, job_id, org_id: uuid.UUID, source: MigrationSource | None = None) -> MigrationJob:
        job = MigrationJobs.get(db, job_id)
        # Other tenants' jobs are reported as missing, not forbidden.
        if job.org_id != org_id:
            raise HTTPException(status_code=404, detail="Migration job not found")
        if source is not None and job.source != source:
            raise HTTPException(status_code=400, detail=f"Job {job.id} belongs to source {job.source.value}")
        return job

    @staticmethod
    def transition(job: MigrationJob, stage: MigrationStage) -> None:
        """Move ``job`` to ``stage`` without committing."""
        if stage not in ALLOWED_TRANSITIONS[job.stage]:
            raise JobConflictError(f"Cannot move job {job.id} from {job.stage.value} to {stage.value}")
        job.stage = stage
        if stage in TERMINAL_STAGES:
            job.execution_lock = None
            job.completed_at = utcnow()

    @staticmethod
    def add_warnings(job: MigrationJob, messages: list[str]) -> None:
        if not messages:
            return
        current = list(job.warnings or [])
        room = MAX_WARNINGS - len(current)
        if room < len(messages):
            logger.info(
                "migration_warnings_capped job_id=%s dropped=%s",
                job.id,
                len(messages) - max(room, 0),
            )
        if room > 0:
            job.warnings = current + list(messages[:room])

    @staticmethod
    def add_warning(job: MigrationJob, message: str) -> None:
        MigrationJobs.add_warnings(job, [message])

    @staticmethod
    def record_error(
        db: Session,
        job: MigrationJob,
        kind: MigrationErrorKind,
        message: str,
        entity_type: str | None = None,
        source_id: str | None = None,
        page: int | None = None,
    ) -> MigrationJobError:
        """Stage an error row in the current transaction."""
        error = MigrationJobError(
            job_id=job.id,
            stage=job.stage,
            entity_type=entity_type,
            source_id=source_id[:200] if source_id else None,
            kind=kind,
            message=message[:MAX_ERROR_MESSAGE],
            page=page,
        )
        db.add(error)
        return error

    @staticmethod
    def mark_failed(db: Session, job: MigrationJob, message: str) -> MigrationJob:
        if job.is_terminal:
            return job
        MigrationJobs.transition(job, MigrationStage.failed)
        job.error = message[:MAX_ERROR_MESSAGE]
        MigrationJobs.record_error(db, job, MigrationErrorKind.fatal, message)
        db.commit()
        db.refresh(job)
        logger.error("migration_job_failed job_id=%s error=%s", job.id, job.error)
        return job

    @staticmethod
    def request_cancel(db: Session, job: MigrationJob) -> MigrationJob:
        """Cancel now when nothing runs; otherwise flag it for the next batch boundary."""
        if job.is_terminal:
            raise JobConflictError(f"Job {job.id} is already {job.stage.value}")
        if job.stage == MigrationStage.executing:
            job.cancel_requested = True
            logger.info("migration_cancel_requested job_id=%s", job.id)
        else:
            MigrationJobs.transition(job, MigrationStage.cancelled)
            logger.info("migration_job_cancelled job_id=%s stage=pre_execution", job.id)
        db.commit()
        db.refresh(job)
        return job

    @staticmethod
    def _active_execution(db: Session, job: MigrationJob) -> MigrationJob | None:
        return (
            db.query(MigrationJob)
            .filter(MigrationJob.org_id == job.org_id)
            .filter(MigrationJob.source == job.source)
            .filter(MigrationJob.execution_lock == EXECUTION_LOCK_ACTIVE)
            .filter(MigrationJob.id != job.id)
            .first()
        )

    @staticmethod
    def _acquire(db: Session, job: MigrationJob, now: datetime, stale_after_minutes: int | None) -> None:
        other = MigrationJobs._active_execution(db, job)
        if other is not None:
            if not is_stale(other, now, stale_after_minutes):
                raise JobConflictError(
                    f"Job {other.id} is already executing for {job.source.value}; wait for it or cancel it"
                )
            logger.warning("migration_stale_job_superseded job_id=%s superseded_by=%s", other.id, job.id)
            MigrationJobs.transition(other, MigrationStage.failed)
            other.error = f"Execution stalled; superseded by job {job.id}"
            MigrationJobs.record_error(db, other, MigrationErrorKind.fatal, other.error)
            db.flush()

        if job.stage != MigrationStage.executing:
            MigrationJobs.transition(job, MigrationStage.executing)
            job.started_at = now
        job.execution_lock = EXECUTION_LOCK_ACTIVE
        job.cancel_requested = False
        job.last_checkpoint_at = now
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise JobConflictError(
                f"Another execution for {job.source.value} started concurrently"
            ) from exc
        db.refresh(job)

    @staticmethod
    def _resume_as_new_job(db: Session, previous: MigrationJob) -> MigrationJob:
        job = MigrationJob(
            org_id=previous.org_id,
            source=previous.source,
            credentials_ref=previous.credentials_ref,
            # Lands in dry_run so the normal dry_run -> executing transition applies.
            stage=MigrationStage.dry_run,
            checkpoint=copy.deepcopy(previous.checkpoint or {}),
            counts=copy.deepcopy(previous.counts or empty_counts()),
            warnings=[],
            options=dict(previous.options or {}),
            preflight_summary=previous.preflight_summary,
            dry_run_summary=previous.dry_run_summary,
            cancel_requested=False,
            resumed_from_job_id=previous.id,
        )
        db.add(job)
        db.flush()
        logger.info("migration_job_resumed_as_new job_id=%s previous_job_id=%s", job.id, previous.id)
        return job

    @staticmethod
    def begin_execution(
        db: Session,
        job: MigrationJob,
        now: datetime | None = None,
        stale_after_minutes: int | None = None,
    ) -> MigrationJob:
        """Take the execution lock for ``job`` and return the job that will run.

        - preflight / dry_run: starts this job.
        - executing and stale: the crashed run is resumed in place.
        - failed / cancelled: a new job continues from the old checkpoint.

        Raises:
            JobConflictError: Job still pending, already completed, executing
                and alive, or another job holds the lock.
        """
        now = now or utcnow()
        if job.stage in (MigrationStage.preflight, MigrationStage.dry_run):
            MigrationJobs._acquire(db, job, now, stale_after_minutes)
        elif job.stage == MigrationStage.executing:
            if not is_stale(job, now, stale_after_minutes):
                raise JobConflictError(f"Job {job.id} is already executing")
            logger.warning("migration_stale_job_resumed job_id=%s", job.id)
            MigrationJobs._acquire(db, job, now, stale_after_minutes)
        elif job.stage in (MigrationStage.failed, MigrationStage.cancelled):
            if job.started_at is None:
                raise JobConflictError(
                    f"Job {job.id} was {job.stage.value} before execution; run preflight again"
                )
            successor = MigrationJobs._resume_as_new_job(db, job)
            try:
                MigrationJobs._acquire(db, successor, now, stale_after_minutes)
            except JobConflictError:
                db.rollback()
                raise
            job = successor
        elif job.stage == MigrationStage.pending:
            raise JobConflictError(f"Job {job.id} has not passed preflight")
        else:
            raise JobConflictError(f"Job {job.id} is already {job.stage.value}")

        logger.info(
            "migration_execution_started job_id=%s org_id=%s source=%s resumed_from=%s",
            job.id,
            job.org_id,
            job.source.value,
            job.resumed_from_job_id,
        )
        return job


migration_jobs = MigrationJobs()
