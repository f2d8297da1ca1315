"""Execution engine: the only stage that writes tenant records.

Entity types run in order (contacts, jobs, documents, tasks) so job to
contact and document/task to job links resolve through source ids.  For
each entity type the engine walks pages from the committed checkpoint:

    fetch page -> normalize -> resolve duplicates -> upsert -> checkpoint -> commit

Each record is written inside its own SAVEPOINT; the batch, its error rows
and the advanced checkpoint share one transaction.  A crash therefore loses
at most the batch in flight, which the next run re-processes.  Upserts key
on ``(org_id, source, source_id)`` so re-processing never duplicates.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.migration import MigrationErrorKind, MigrationJob, MigrationStage
from app.services.common import utcnow
from app.services.migrations.clients.base import ENTITY_TYPES, SourceClient
from app.services.migrations.dedup import ACTION_SKIP, DuplicateDetector, TenantIndex
from app.services.migrations.errors import FatalJobError, PersistenceError, SourceAuthError
from app.services.migrations.jobs import OUTCOMES, MigrationJobs, empty_counts, skipped_entities
from app.services.migrations.normalizers import normalize_record
from app.services.migrations.observability import RECORDS_PROCESSED, observe_stage
from app.services.migrations.pages import PageOutcome, PageWalker
from app.services.migrations.repositories import repository_for
from app.services.migrations.result import Err
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

STORAGE_ERRORS = (OperationalError, InterfaceError)


@dataclass
class BatchResult:
    counts: dict
    delta: dict[str, int]


def merge_counts(counts: dict, entity_type: str, delta: dict[str, int], total: int | None) -> dict:
    """Return new counts with ``delta`` applied (JSON columns need a new object)."""
    merged = {**empty_counts(), **counts}
    entities = {key: dict(value) for key, value in (merged.get("entities") or {}).items()}
    entity = {outcome: 0 for outcome in OUTCOMES}
    entity.update(entities.get(entity_type) or {})
    for outcome, amount in delta.items():
        merged[outcome] = merged.get(outcome, 0) + amount
        entity[outcome] = entity.get(outcome, 0) + amount
    entities[entity_type] = entity
    merged["entities"] = entities
    if total is not None:
        merged[f"{entity_type}_total"] = total
    return merged


class ExecutionEngine:
    def __init__(
        self,
        db: Session,
        job: MigrationJob,
        client: SourceClient,
        page_size: int | None = None,
        storage_retries: int | None = None,
        storage_retry_delay: float = 1.0,
        sleep=time.sleep,
    ):
        self.db = db
        self.job = job
        self.client = client
        self.page_size = page_size or settings.migration_page_size
        self.storage_retries = settings.migration_storage_retries if storage_retries is None else storage_retries
        self.storage_retry_delay = storage_retry_delay
        self._sleep = sleep
        self.detector = DuplicateDetector(TenantIndex(db, job.org_id, job.source))
        self.counts = dict(job.counts or empty_counts())

    # ─────────────────────────────────────────────────────────────────
    # Batches
    # ─────────────────────────────────────────────────────────────────

    def _upsert(self, entity_type: str, raw, delta: dict[str, int], warnings: list[str]) -> None:
        job = self.job
        normalized = normalize_record(job.source, entity_type, raw)
        if isinstance(normalized, Err):
            error = normalized.error
            MigrationJobs.record_error(
                self.db,
                job,
                MigrationErrorKind.normalization,
                str(error),
                entity_type=entity_type,
                source_id=error.source_id,
            )
            delta["failed"] += 1
            return

        record = normalized.value
        resolution = self.detector.resolve(record)
        if resolution.tie_warning:
            warnings.append(resolution.tie_warning)
        if resolution.action == ACTION_SKIP:
            delta["skipped"] += 1
            return

        repository = repository_for(self.db, entity_type)
        try:
            with self.db.begin_nested():
                _, created = repository.upsert_by_external_id(
                    job.org_id, job.source, record, existing_id=resolution.existing_id
                )
        except STORAGE_ERRORS:
            raise
        except SQLAlchemyError as exc:
            error = PersistenceError(
                entity_type=entity_type,
                source_id=record.source_id,
                reason=str(getattr(exc, "orig", None) or exc),
            )
            logger.warning("migration_record_persist_failed job_id=%s error=%s", job.id, error)
            MigrationJobs.record_error(
                self.db,
                job,
                MigrationErrorKind.persistence,
                str(error),
                entity_type=entity_type,
                source_id=record.source_id,
            )
            delta["failed"] += 1
            return
        delta["created" if created else "updated"] += 1

    def _apply_batch(self, outcome: PageOutcome) -> BatchResult:
        job = self.job
        entity_type = outcome.entity_type
        delta = {outcome_name: 0 for outcome_name in OUTCOMES}
        warnings: list[str] = []

        if outcome.error is not None:
            MigrationJobs.record_error(
                self.db,
                job,
                MigrationErrorKind.page,
                str(outcome.error),
                entity_type=entity_type,
                page=outcome.page,
            )
            delta["failed"] += outcome.error.expected_records
        else:
            for raw in outcome.records:
                self._upsert(entity_type, raw, delta, warnings)

        checkpoint = dict(job.checkpoint or {})
        previous = checkpoint.get(entity_type) or {}
        checkpoint[entity_type] = {
            "page": max(outcome.next_page, previous.get("page", 1)),
            "page_size": outcome.page_size,
            "processed": max(outcome.processed, previous.get("processed", 0)),
            "total": outcome.total,
        }
        counts = merge_counts(self.counts, entity_type, delta, outcome.total)
        job.checkpoint = checkpoint
        job.counts = counts
        job.last_checkpoint_at = utcnow()
        MigrationJobs.add_warnings(job, warnings)
        return BatchResult(counts=counts, delta=delta)

    def _commit_batch(self, outcome: PageOutcome) -> None:
        """Write one page and its checkpoint atomically, retrying storage failures."""
        for attempt in range(self.storage_retries + 1):
            try:
                batch = self._apply_batch(outcome)
                self.db.commit()
            except STORAGE_ERRORS as exc:
                self.db.rollback()
                if attempt >= self.storage_retries:
                    raise FatalJobError(
                        f"Storage unavailable after {attempt + 1} attempts: {exc.orig}"
                    ) from exc
                delay = self.storage_retry_delay * (2**attempt)
                logger.warning(
                    "migration_batch_retry job_id=%s entity=%s page=%s attempt=%s delay=%s",
                    self.job.id,
                    outcome.entity_type,
                    outcome.page,
                    attempt + 1,
                    delay,
                )
                self._sleep(delay)
                continue

            self.counts = batch.counts
            source = self.job.source.value
            for outcome_name, amount in batch.delta.items():
                if amount:
                    RECORDS_PROCESSED.labels(
                        source=source, entity_type=outcome.entity_type, outcome=outcome_name
                    ).inc(amount)
            logger.info(
                "migration_batch_committed job_id=%s entity=%s page=%s processed=%s total=%s "
                "created=%s updated=%s skipped=%s failed=%s",
                self.job.id,
                outcome.entity_type,
                outcome.page,
                outcome.processed,
                outcome.total,
                batch.delta["created"],
                batch.delta["updated"],
                batch.delta["skipped"],
                batch.delta["failed"],
            )
            return

    # ─────────────────────────────────────────────────────────────────
    # Entity loop
    # ─────────────────────────────────────────────────────────────────

    def _cancel_requested(self) -> bool:
        self.db.refresh(self.job)
        return bool(self.job.cancel_requested)

    def _cancel(self) -> None:
        MigrationJobs.transition(self.job, MigrationStage.cancelled)
        self.db.commit()
        logger.info("migration_job_cancelled job_id=%s checkpoint=%s", self.job.id, self.job.checkpoint)

    def _run_entity(self, entity_type: str) -> bool:
        """Process one entity type. Returns False when the job was cancelled."""
        state = (self.job.checkpoint or {}).get(entity_type) or {}
        walker = PageWalker(
            self.client,
            entity_type,
            state.get("page_size") or self.page_size,
            start_page=state.get("page", 1),
            total=state.get("total"),
        )
        with tracer.start_as_current_span("migration.execute.entity") as span:
            span.set_attribute("migration.entity_type", entity_type)
            for outcome in walker:
                if outcome.error is not None and outcome.total is None:
                    raise FatalJobError(f"Cannot size {entity_type}: {outcome.error}")
                self._commit_batch(outcome)
                if self._cancel_requested():
                    self._cancel()
                    return False

        if walker.shrunk_from is not None:
            MigrationJobs.add_warning(
                self.job,
                f"{entity_type.capitalize()} total changed from {walker.shrunk_from} to {walker.total} during import",
            )
            self.db.commit()
        return True

    def _complete(self, skipped: set[str]) -> None:
        checkpoint = self.job.checkpoint or {}
        incomplete = []
        for entity_type in ENTITY_TYPES:
            if entity_type in skipped:
                continue
            state = checkpoint.get(entity_type)
            if not state or state.get("total") is None or state["processed"] < state["total"]:
                incomplete.append(entity_type)
        if incomplete:
            raise FatalJobError(f"Checkpoint does not cover {', '.join(incomplete)}")
        MigrationJobs.transition(self.job, MigrationStage.completed)
        self.db.commit()

    def run(self) -> MigrationJob:
        job = self.job
        if job.stage != MigrationStage.executing:
            raise FatalJobError(f"Job {job.id} is not executing (stage={job.stage.value})")
        if job.cancel_requested:
            self._cancel()
            return job

        skipped = skipped_entities(job.options)
        try:
            for entity_type in ENTITY_TYPES:
                if entity_type in skipped:
                    continue
                if not self._run_entity(entity_type):
                    return job
        except SourceAuthError as exc:
            raise FatalJobError(f"Source rejected credentials mid-run: {exc.message}") from exc

        self._complete(skipped)
        logger.info(
            "migration_job_completed job_id=%s created=%s updated=%s skipped=%s failed=%s",
            job.id,
            self.counts.get("created", 0),
            self.counts.get("updated", 0),
            self.counts.get("skipped", 0),
            self.counts.get("failed", 0),
        )
        return job


def execute_job(db: Session, job: MigrationJob, client: SourceClient, **engine_kwargs) -> MigrationJob:
    """Run an executing job to a terminal stage (or until cancelled).

    ``FatalJobError`` moves the job to ``failed`` with its checkpoint kept.
    Anything unexpected propagates to the caller.
    """
    if job.stage != MigrationStage.executing:
        logger.info("migration_execute_skipped job_id=%s stage=%s", job.id, job.stage.value)
        return job

    started = time.monotonic()
    status = "success"
    with tracer.start_as_current_span("migration.execute") as span:
        span.set_attribute("migration.job_id", str(job.id))
        span.set_attribute("migration.source", job.source.value)
        try:
            ExecutionEngine(db, job, client, **engine_kwargs).run()
        except FatalJobError as exc:
            status = "failed"
            db.rollback()
            MigrationJobs.mark_failed(db, job, exc.message)
        span.set_attribute("migration.stage", job.stage.value)

    if job.stage == MigrationStage.cancelled:
        status = "cancelled"
    observe_stage(job.source.value, "execute", status, time.monotonic() - started)
    return job
