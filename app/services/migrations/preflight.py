"""Preflight: connection check and dataset preview before any import.

Creates the MigrationJob (``pending``), validates the credentials, reads
page 1 (size 5) of contacts and jobs, estimates documents from the jobs
total, runs the sampled duplicate estimate and computes warnings and a
duration estimate.  No tenant record is written.

Expected failures (bad credentials, unreachable source, throttling) come
back as ``connection_valid=False``; this stage never raises for them.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.migration import MigrationJob, MigrationSource, MigrationStage
from app.services.migrations.clients.base import SourceClient, SourceCredentials
from app.services.migrations.dedup import DuplicateEstimate, estimate_contact_duplicates
from app.services.migrations.errors import MigrationError
from app.services.migrations.jobs import MigrationJobs, empty_counts
from app.services.migrations.observability import observe_stage
from app.services.migrations.repositories import ContactRepository
from app.telemetry import get_tracer

logger = get_logger(__name__)
tracer = get_tracer(__name__)

SAMPLE_PAGE_SIZE = 5
PREVIEW_SAMPLES = 3

LARGE_CONTACT_THRESHOLD = 10_000
SLOW_DOCUMENT_THRESHOLD = 5_000


@dataclass
class EntityPreview:
    total: int = 0
    sample: list[dict[str, Any]] = field(default_factory=list)
    estimated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "sample": self.sample, "estimated": self.estimated}


def _empty_preview() -> dict[str, EntityPreview]:
    return {
        "contacts": EntityPreview(),
        "jobs": EntityPreview(),
        "documents": EntityPreview(estimated=True),
    }


@dataclass
class PreflightResult:
    job_id: uuid.UUID
    connection_valid: bool
    connection_error: str | None = None
    preview: dict[str, EntityPreview] = field(default_factory=_empty_preview)
    duplicates: DuplicateEstimate = field(default_factory=DuplicateEstimate)
    estimated_duration: str = "0 minutes"
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.connection_valid

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "success": self.success,
            "connection_valid": self.connection_valid,
            "connection_error": self.connection_error,
            "preview": {entity: preview.to_dict() for entity, preview in self.preview.items()},
            "duplicates": self.duplicates.to_dict(),
            "estimated_duration": self.estimated_duration,
            "warnings": list(self.warnings),
        }


def estimate_minutes(contacts_total: int, jobs_total: int) -> int:
    return math.ceil(contacts_total / 100 + jobs_total / 50)


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    return f"{math.ceil(minutes / 60)} hours"


def estimate_duration(contacts_total: int, jobs_total: int) -> str:
    """``ceil(contacts/100 + jobs/50)`` minutes, shown in hours from 60 up."""
    return format_duration(estimate_minutes(contacts_total, jobs_total))


def build_warnings(contacts_total: int, email_matches: int, documents_total: int) -> list[str]:
    warnings = []
    if contacts_total > LARGE_CONTACT_THRESHOLD:
        warnings.append(f"Large dataset ({contacts_total:,} contacts), consider batching the import")
    if email_matches > 0:
        warnings.append(
            f"{email_matches:,} existing contacts will be updated, not duplicated (estimated from a sample)"
        )
    if documents_total > SLOW_DOCUMENT_THRESHOLD:
        warnings.append(f"Document import may be slow ({documents_total:,} documents estimated)")
    return warnings


def _fail(db: Session, job: MigrationJob, result: PreflightResult) -> PreflightResult:
    job.counts = empty_counts()
    job.preflight_summary = result.to_dict()
    MigrationJobs.mark_failed(db, job, result.connection_error or "Connection failed")
    return result


def run_preflight(
    db: Session,
    org_id: uuid.UUID,
    source: MigrationSource,
    credentials: SourceCredentials,
    client: SourceClient,
    options: dict | None = None,
) -> PreflightResult:
    started = time.monotonic()
    job = MigrationJobs.create(db, org_id, source, credentials, options=options)
    logger.info(
        "migration_preflight_starting job_id=%s org_id=%s source=%s credential=%s",
        job.id,
        org_id,
        source.value,
        credentials.masked(),
    )

    with tracer.start_as_current_span("migration.preflight") as span:
        span.set_attribute("migration.job_id", str(job.id))
        span.set_attribute("migration.source", source.value)
        result = _run(db, job, client)
        span.set_attribute("migration.connection_valid", result.connection_valid)

    observe_stage(
        source.value,
        "preflight",
        "success" if result.success else "failed",
        time.monotonic() - started,
    )
    return result


def _run(db: Session, job: MigrationJob, client: SourceClient) -> PreflightResult:
    connection = client.validate_credentials()
    if not connection.ok:
        logger.info("migration_preflight_connection_invalid job_id=%s error=%s", job.id, connection.error)
        return _fail(db, job, PreflightResult(job_id=job.id, connection_valid=False, connection_error=connection.error))

    try:
        contacts_page = client.list_contacts(1, SAMPLE_PAGE_SIZE)
        jobs_page = client.list_jobs(1, SAMPLE_PAGE_SIZE)
    except (MigrationError, httpx.HTTPError) as exc:
        message = getattr(exc, "message", None) or str(exc)
        logger.warning("migration_preflight_fetch_failed job_id=%s error=%s", job.id, message)
        return _fail(db, job, PreflightResult(job_id=job.id, connection_valid=False, connection_error=message))

    contacts_total = contacts_page.total_count
    jobs_total = jobs_page.total_count
    documents_total = jobs_total * client.DOCUMENT_MULTIPLIER

    duplicates = estimate_contact_duplicates(
        ContactRepository(db),
        job.org_id,
        job.source,
        contacts_page.data,
        contacts_total,
    )
    result = PreflightResult(
        job_id=job.id,
        connection_valid=True,
        preview={
            "contacts": EntityPreview(
                total=contacts_total,
                sample=client.preview_sample(contacts_page.data, PREVIEW_SAMPLES),
            ),
            "jobs": EntityPreview(
                total=jobs_total,
                sample=client.preview_sample(jobs_page.data, PREVIEW_SAMPLES),
            ),
            "documents": EntityPreview(total=documents_total, estimated=True),
        },
        duplicates=duplicates,
        estimated_duration=estimate_duration(contacts_total, jobs_total),
        warnings=build_warnings(contacts_total, duplicates.email_matches, documents_total),
    )

    counts = empty_counts()
    counts.update(contacts_total=contacts_total, jobs_total=jobs_total, documents_total=documents_total)
    job.counts = counts
    job.preflight_summary = result.to_dict()
    MigrationJobs.add_warnings(job, result.warnings)
    MigrationJobs.transition(job, MigrationStage.preflight)
    db.commit()

    logger.info(
        "migration_preflight_completed job_id=%s contacts=%s jobs=%s documents=%s email_matches=%s duration=%s",
        job.id,
        contacts_total,
        jobs_total,
        documents_total,
        duplicates.email_matches,
        result.estimated_duration,
    )
    return result
