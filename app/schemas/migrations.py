from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class PreflightRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    api_key: str | None = Field(default=None, max_length=512)
    access_token: str | None = Field(default=None, max_length=4096)


class MigrationOptions(CamelModel):
    skip_contacts: bool = False
    skip_jobs: bool = False
    skip_documents: bool = False
    skip_tasks: bool = False


class DryRunRequest(CamelModel):
    job_id: UUID
    options: MigrationOptions | None = None


class ExecuteRequest(CamelModel):
    job_id: UUID


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------


class EntityPreviewRead(CamelModel):
    total: int = 0
    sample: list[dict[str, Any]] = Field(default_factory=list)
    estimated: bool = False


class DuplicateEstimateRead(CamelModel):
    sample_size: int = 0
    sample_email_matches: int = 0
    sample_phone_matches: int = 0
    total_contacts: int = 0
    email_matches: int = 0
    phone_matches: int = 0
    estimated: bool = True


class PreflightRead(CamelModel):
    job_id: UUID
    success: bool
    connection_valid: bool
    connection_error: str | None = None
    preview: dict[str, EntityPreviewRead]
    duplicates: DuplicateEstimateRead
    estimated_duration: str
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


class EntityTallyRead(CamelModel):
    total: int = 0
    create: int = 0
    update: int = 0
    skip: int = 0
    failed: int = 0
    skipped_by_option: bool = False


class DryRunSummaryRead(CamelModel):
    total_records: int = 0
    to_create: int = 0
    to_update: int = 0
    to_skip: int = 0
    failed: int = 0
    duplicates_found: int = 0
    validation_errors: int = 0


class DuplicateMatchRead(CamelModel):
    type: str
    external_id: str
    external_name: str | None = None
    matched_internal_id: str
    matched_on: str
    confidence: float
    action: str


class ValidationErrorRead(CamelModel):
    type: str
    external_id: str | None = None
    field: str
    error: str


class PageErrorRead(CamelModel):
    type: str
    page: int
    error: str
    expected_records: int = 0


class SampleMappingRead(CamelModel):
    type: str
    external: dict[str, Any]
    internal: dict[str, Any]


class DryRunRead(CamelModel):
    job_id: UUID
    success: bool
    error: str | None = None
    summary: DryRunSummaryRead = Field(default_factory=DryRunSummaryRead)
    entities: dict[str, EntityTallyRead] = Field(default_factory=dict)
    duplicates: list[DuplicateMatchRead] = Field(default_factory=list)
    validation_errors: list[ValidationErrorRead] = Field(default_factory=list)
    page_errors: list[PageErrorRead] = Field(default_factory=list)
    sample_mappings: list[SampleMappingRead] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    estimated_duration: str = "0 minutes"
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Execute / cancel
# ---------------------------------------------------------------------------


class ExecuteAccepted(CamelModel):
    job_id: UUID
    stage: str
    resumed_from_job_id: UUID | None = None


class CancelRead(CamelModel):
    job_id: UUID
    stage: str
    cancel_requested: bool


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


class ReportErrorRead(CamelModel):
    entity_type: str | None = None
    source_id: str | None = None
    kind: str
    message: str
    page: int | None = None


class MigrationReportRead(CamelModel):
    job_id: UUID
    source: str
    stage: str
    terminal: bool = True
    totals: dict[str, Any]
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    warnings: list[str] = Field(default_factory=list)
    errors: list[ReportErrorRead] = Field(default_factory=list)
    error_count: int = 0
    error: str | None = None
    resumed_from_job_id: UUID | None = None


class MigrationProgressRead(CamelModel):
    job_id: UUID
    source: str
    stage: str
    terminal: bool = False
    counts: dict[str, Any]
    checkpoint: dict[str, Any] = Field(default_factory=dict)
    percent_complete: float = 0.0
    cancel_requested: bool = False
    last_checkpoint_at: datetime | None = None
