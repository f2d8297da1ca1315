import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class MigrationSource(enum.Enum):
    jobnimbus = "jobnimbus"
    acculynx = "acculynx"


class MigrationStage(enum.Enum):
    pending = "pending"
    preflight = "preflight"
    dry_run = "dry_run"
    executing = "executing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STAGES = frozenset({MigrationStage.completed, MigrationStage.failed, MigrationStage.cancelled})

EXECUTION_LOCK_ACTIVE = "active"


class MigrationErrorKind(enum.Enum):
    normalization = "normalization"
    persistence = "persistence"
    page = "page"
    fatal = "fatal"


class MigrationCredential(Base):
    __tablename__ = "migration_credentials"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    source: Mapped[MigrationSource] = mapped_column(Enum(MigrationSource), nullable=False)
    api_key: Mapped[str | None] = mapped_column(Text)
    access_token: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class MigrationJob(Base):
    __tablename__ = "migration_jobs"
    __table_args__ = (
        # NULLs are distinct, so only one row per (org, source) can hold the active lock.
        UniqueConstraint("org_id", "source", "execution_lock", name="uq_migration_jobs_execution_lock"),
        Index("ix_migration_jobs_org_source_stage", "org_id", "source", "stage"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source: Mapped[MigrationSource] = mapped_column(Enum(MigrationSource), nullable=False)
    credentials_ref: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("migration_credentials.id"), nullable=False
    )
    stage: Mapped[MigrationStage] = mapped_column(
        Enum(MigrationStage), nullable=False, default=MigrationStage.pending
    )
    checkpoint: Mapped[dict | None] = mapped_column(JSON)
    counts: Mapped[dict | None] = mapped_column(JSON)
    warnings: Mapped[list | None] = mapped_column(JSON)
    options: Mapped[dict | None] = mapped_column(JSON)
    preflight_summary: Mapped[dict | None] = mapped_column(JSON)
    dry_run_summary: Mapped[dict | None] = mapped_column(JSON)
    execution_lock: Mapped[str | None] = mapped_column(String(16))
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    resumed_from_job_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("migration_jobs.id")
    )
    error: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_checkpoint_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )

    credential = relationship("MigrationCredential")
    errors = relationship(
        "MigrationJobError",
        back_populates="job",
        order_by="MigrationJobError.created_at",
    )

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


class MigrationJobError(Base):
    __tablename__ = "migration_job_errors"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("migration_jobs.id"), nullable=False, index=True
    )
    stage: Mapped[MigrationStage] = mapped_column(Enum(MigrationStage), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(20))
    source_id: Mapped[str | None] = mapped_column(String(200))
    kind: Mapped[MigrationErrorKind] = mapped_column(Enum(MigrationErrorKind), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    page: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    job = relationship("MigrationJob", back_populates="errors")
