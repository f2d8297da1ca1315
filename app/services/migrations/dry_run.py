"""Dry run: walk the whole source dataset without writing tenant records.

Every non-skipped entity type is read through the same page walker as
execution, normalized and resolved against a ``SimulatedIndex`` so the
tallies (create / update / skip / failed) match what execution would do.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.logging import get_logger
from app.models.migration import MigrationJob, MigrationStage
from app.services.migrations.clients.base import ENTITY_TYPES, SourceClient
from app.services.migrations.dedup import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    DuplicateDetector,
    SimulatedIndex,
    TenantIndex,
)
from app.services.migrations.errors import FatalJobError, JobConflictError, SourceAuthError
from app.services.migrations.jobs import MAX_WARNINGS, MigrationJobs, skipped_entities
from app.services.migrations.normalizers import CanonicalRecord, normalize_record
from app.services.migrations.observability import observe_stage
from app.services.migrations.pages import PageWalker
from app.services.migrations.preflight import estimate_duration
from app.services.migrations.result import Err
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

LIST_LIMIT = 20
SAMPLE_MAPPING_LIMITS = {"contacts": 5, "jobs": 3}

HIGH_DUPLICATE_RATE = 20
LARGE_CONTACT_LIST = 5_000
MANY_VALIDATION_ERRORS = 10
MANY_DOCUMENTS = 1_000


@dataclass
class EntityTally:
    total: int = 0
    create: int = 0
    update: int = 0
    skip: int = 0
    failed: int = 0
    skipped_by_option: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "create": self.create,
            "update": self.update,
            "skip": self.skip,
            "failed": self.failed,
            "skipped_by_option": self.skipped_by_option,
        }


@dataclass
class DryRunResult:
    job_id: uuid.UUID
    success: bool = True
    error: str | None = None
    entities: dict[str, EntityTally] = field(
        default_factory=lambda: {entity: EntityTally() for entity in ENTITY_TYPES}
    )
    duplicates_found: int = 0
    duplicates: list[dict[str, Any]] = field(default_factory=list)
    validation_error_count: int = 0
    validation_errors: list[dict[str, Any]] = field(default_factory=list)
    page_errors: list[dict[str, Any]] = field(default_factory=list)
    sample_mappings: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    estimated_duration: str = "0 minutes"
    recommendations: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        tallies = self.entities.values()
        return {
            "total_records": sum(t.total for t in tallies),
            "to_create": sum(t.create for t in tallies),
            "to_update": sum(t.update for t in tallies),
            "to_skip": sum(t.skip for t in tallies),
            "failed": sum(t.failed for t in tallies),
            "duplicates_found": self.duplicates_found,
            "validation_errors": self.validation_error_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "success": self.success,
            "error": self.error,
            "summary": self.summary(),
            "entities": {entity: tally.to_dict() for entity, tally in self.entities.items()},
            "duplicates": list(self.duplicates),
            "validation_errors": list(self.validation_errors),
            "page_errors": list(self.page_errors),
            "sample_mappings": list(self.sample_mappings),
            "warnings": list(self.warnings),
            "estimated_duration": self.estimated_duration,
            "recommendations": list(self.recommendations),
        }


def _json_safe(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def build_recommendations(result: DryRunResult) -> list[str]:
    contacts = result.entities["contacts"]
    jobs = result.entities["jobs"]
    resolved = sum(t.create + t.update + t.skip for t in (contacts, jobs))
    matched = sum(t.update + t.skip for t in (contacts, jobs))
    duplicate_rate = round(matched / max(resolved, 1) * 100)

    recommendations = []
    if duplicate_rate > HIGH_DUPLICATE_RATE:
        recommendations.append(
            f"High duplicate rate ({duplicate_rate}%). Consider cleaning up existing data first; "
            "matched records will be updated in place."
        )
    if contacts.total > LARGE_CONTACT_LIST:
        recommendations.append("Large contact list. Consider importing outside business hours.")
    if result.validation_error_count > MANY_VALIDATION_ERRORS:
        recommendations.append(
            f"{result.validation_error_count} records have validation issues. Review before importing."
        )
    if result.entities["documents"].total > MANY_DOCUMENTS:
        recommendations.append("Many documents to import. Document migration may take significant time.")
    return recommendations


def _warn(result: DryRunResult, message: str) -> None:
    if len(result.warnings) < MAX_WARNINGS:
        result.warnings.append(message)


class DryRunSimulator:
    def __init__(self, db: Session, job: MigrationJob, client: SourceClient, page_size: int | None = None):
        self.db = db
        self.job = job
        self.client = client
        self.page_size = page_size or settings.migration_page_size
        self.index = SimulatedIndex(TenantIndex(db, job.org_id, job.source))
        self.detector = DuplicateDetector(self.index)

    def _sample_mapping(self, entity_type: str, raw: dict[str, Any], record: CanonicalRecord, existing_id) -> dict:
        internal = {key: _json_safe(value) for key, value in record.to_fields().items()}
        internal.update(
            id=str(existing_id) if existing_id else "(will be generated)",
            org_id=str(self.job.org_id),
            source=self.job.source.value,
            source_id=record.source_id,
        )
        return {"type": entity_type, "external": self.client.strip_volatile(raw), "internal": internal}

    def _process_record(self, result: DryRunResult, entity_type: str, raw: Any) -> None:
        tally = result.entities[entity_type]
        normalized = normalize_record(self.job.source, entity_type, raw)
        if isinstance(normalized, Err):
            error = normalized.error
            tally.failed += 1
            result.validation_error_count += 1
            if len(result.validation_errors) < LIST_LIMIT:
                result.validation_errors.append(
                    {
                        "type": entity_type,
                        "external_id": error.source_id,
                        "field": error.field,
                        "error": error.reason,
                    }
                )
            return

        record = normalized.value
        resolution = self.detector.resolve(record)
        if resolution.action == ACTION_SKIP:
            tally.skip += 1
        elif resolution.action == ACTION_UPDATE:
            tally.update += 1
        else:
            tally.create += 1
        if resolution.match is not None:
            result.duplicates_found += 1
            if len(result.duplicates) < LIST_LIMIT:
                result.duplicates.append(resolution.match.to_dict())
        if resolution.tie_warning:
            _warn(result, resolution.tie_warning)

        limit = SAMPLE_MAPPING_LIMITS.get(entity_type, 0)
        if sum(1 for m in result.sample_mappings if m["type"] == entity_type) < limit:
            existing_id = resolution.existing_id if resolution.action != ACTION_CREATE else None
            result.sample_mappings.append(self._sample_mapping(entity_type, raw, record, existing_id))

        self.index.apply(record, resolution)

    def _walk(self, result: DryRunResult, entity_type: str) -> None:
        tally = result.entities[entity_type]
        walker = PageWalker(self.client, entity_type, self.page_size)
        for outcome in walker:
            if outcome.error is not None and outcome.total is None:
                raise FatalJobError(f"Cannot size {entity_type}: {outcome.error}")
            if outcome.error is not None:
                result.page_errors.append(
                    {
                        "type": entity_type,
                        "page": outcome.page,
                        "error": outcome.error.reason,
                        "expected_records": outcome.error.expected_records,
                    }
                )
                tally.failed += outcome.error.expected_records
                continue
            for raw in outcome.records:
                self._process_record(result, entity_type, raw)
        tally.total = walker.total or 0
        if walker.shrunk_from is not None:
            _warn(
                result,
                f"{entity_type.capitalize()} total changed from {walker.shrunk_from} to {walker.total} during the dry run",
            )

    def run(self, options: dict | None = None) -> DryRunResult:
        if self.job.stage not in (MigrationStage.preflight, MigrationStage.dry_run):
            raise JobConflictError(f"Cannot dry-run job {self.job.id} in stage {self.job.stage.value}")

        if options:
            self.job.options = {**(self.job.options or {}), **options}
        skipped = skipped_entities(self.job.options)
        result = DryRunResult(job_id=self.job.id)

        try:
            for entity_type in ENTITY_TYPES:
                if entity_type in skipped:
                    result.entities[entity_type].skipped_by_option = True
                    continue
                self._walk(result, entity_type)
        except (SourceAuthError, FatalJobError) as exc:
            logger.info("migration_dry_run_connection_failed job_id=%s error=%s", self.job.id, exc.message)
            result = DryRunResult(job_id=self.job.id, success=False, error=exc.message)
            self.job.dry_run_summary = result.to_dict()
            self.db.commit()
            return result

        result.estimated_duration = estimate_duration(
            result.entities["contacts"].total, result.entities["jobs"].total
        )
        result.recommendations = build_recommendations(result)

        counts = dict(self.job.counts or {})
        for entity_type, tally in result.entities.items():
            if not tally.skipped_by_option:
                counts[f"{entity_type}_total"] = tally.total
        self.job.counts = counts
        self.job.dry_run_summary = result.to_dict()
        MigrationJobs.transition(self.job, MigrationStage.dry_run)
        self.db.commit()
        return result


def run_dry_run(db: Session, job: MigrationJob, client: SourceClient, options: dict | None = None) -> DryRunResult:
    started = time.monotonic()
    logger.info("migration_dry_run_starting job_id=%s source=%s", job.id, job.source.value)
    with tracer.start_as_current_span("migration.dry_run") as span:
        span.set_attribute("migration.job_id", str(job.id))
        span.set_attribute("migration.source", job.source.value)
        result = DryRunSimulator(db, job, client).run(options)
        span.set_attribute("migration.success", result.success)

    summary = result.summary()
    logger.info(
        "migration_dry_run_completed job_id=%s success=%s create=%s update=%s skip=%s failed=%s",
        job.id,
        result.success,
        summary["to_create"],
        summary["to_update"],
        summary["to_skip"],
        summary["failed"],
    )
    observe_stage(job.source.value, "dry_run", "success" if result.success else "failed", time.monotonic() - started)
    return result
