"""Read-only projections of a MigrationJob.

``build_report`` never recomputes anything: it reads the terminal job and
its first error rows.  Non-terminal jobs get a progress view instead.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.models.migration import MigrationJob, MigrationJobError
from app.services.common import ensure_utc
from app.services.migrations.clients.base import ENTITY_TYPES
from app.services.migrations.jobs import empty_counts, skipped_entities


@dataclass(frozen=True)
class ReportError:
    entity_type: str | None
    source_id: str | None
    kind: str
    message: str
    page: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "kind": self.kind,
            "message": self.message,
            "page": self.page,
        }


@dataclass(frozen=True)
class MigrationReport:
    job_id: uuid.UUID
    source: str
    stage: str
    totals: dict[str, Any]
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    warnings: tuple[str, ...] = ()
    errors: tuple[ReportError, ...] = ()
    error_count: int = 0
    error: str | None = None
    resumed_from_job_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "source": self.source,
            "stage": self.stage,
            "terminal": True,
            "totals": self.totals,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "warnings": list(self.warnings),
            "errors": [error.to_dict() for error in self.errors],
            "error_count": self.error_count,
            "error": self.error,
            "resumed_from_job_id": str(self.resumed_from_job_id) if self.resumed_from_job_id else None,
        }


@dataclass(frozen=True)
class MigrationProgress:
    job_id: uuid.UUID
    source: str
    stage: str
    counts: dict[str, Any]
    checkpoint: dict[str, Any] = field(default_factory=dict)
    percent_complete: float = 0.0
    cancel_requested: bool = False
    last_checkpoint_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "source": self.source,
            "stage": self.stage,
            "terminal": False,
            "counts": self.counts,
            "checkpoint": self.checkpoint,
            "percent_complete": self.percent_complete,
            "cancel_requested": self.cancel_requested,
            "last_checkpoint_at": self.last_checkpoint_at.isoformat() if self.last_checkpoint_at else None,
        }


def percent_complete(job: MigrationJob) -> float:
    checkpoint = job.checkpoint or {}
    skipped = skipped_entities(job.options)
    processed = 0
    total = 0
    for entity_type in ENTITY_TYPES:
        if entity_type in skipped:
            continue
        state = checkpoint.get(entity_type) or {}
        entity_total = state.get("total")
        if entity_total is None:
            entity_total = (job.counts or {}).get(f"{entity_type}_total", 0)
        total += entity_total
        processed += min(state.get("processed", 0), entity_total)
    if total <= 0:
        return 0.0
    return round(processed / total * 100, 1)


def _totals(job: MigrationJob) -> dict[str, Any]:
    return {**empty_counts(), **(job.counts or {})}


def build_report(db: Session, job: MigrationJob, error_limit: int | None = None) -> MigrationReport:
    limit = settings.migration_report_error_limit if error_limit is None else error_limit
    base = db.query(MigrationJobError).filter(MigrationJobError.job_id == job.id)
    rows = base.order_by(MigrationJobError.created_at.asc()).limit(limit).all()
    started_at = ensure_utc(job.started_at)
    completed_at = ensure_utc(job.completed_at)
    duration = (completed_at - started_at).total_seconds() if started_at and completed_at else None
    return MigrationReport(
        job_id=job.id,
        source=job.source.value,
        stage=job.stage.value,
        totals=_totals(job),
        started_at=started_at,
        completed_at=completed_at,
        duration_seconds=duration,
        warnings=tuple(job.warnings or ()),
        errors=tuple(
            ReportError(
                entity_type=row.entity_type,
                source_id=row.source_id,
                kind=row.kind.value,
                message=row.message,
                page=row.page,
            )
            for row in rows
        ),
        error_count=base.count(),
        error=job.error,
        resumed_from_job_id=job.resumed_from_job_id,
    )


def build_progress(job: MigrationJob) -> MigrationProgress:
    return MigrationProgress(
        job_id=job.id,
        source=job.source.value,
        stage=job.stage.value,
        counts=_totals(job),
        checkpoint=dict(job.checkpoint or {}),
        percent_complete=percent_complete(job),
        cancel_requested=bool(job.cancel_requested),
        last_checkpoint_at=ensure_utc(job.last_checkpoint_at),
    )


def report_or_progress(db: Session, job: MigrationJob) -> MigrationReport | MigrationProgress:
    if job.is_terminal:
        return build_report(db, job)
    return build_progress(job)
