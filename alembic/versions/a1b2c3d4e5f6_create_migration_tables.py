"""create_migration_tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-17
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None

migration_source = postgresql.ENUM("jobnimbus", "acculynx", name="migrationsource", create_type=False)
migration_stage = postgresql.ENUM(
    "pending",
    "preflight",
    "dry_run",
    "executing",
    "completed",
    "failed",
    "cancelled",
    name="migrationstage",
    create_type=False,
)
migration_error_kind = postgresql.ENUM(
    "normalization", "persistence", "page", "fatal", name="migrationerrorkind", create_type=False
)
job_status = postgresql.ENUM(
    "new", "in_progress", "pending", "completed", "cancelled", name="jobstatus", create_type=False
)


def _record_columns() -> list[sa.Column]:
    return [
        sa.Column("source", migration_source, nullable=True),
        sa.Column("source_id", sa.String(length=200), nullable=True),
        sa.Column("source_hash", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (migration_source, migration_stage, migration_error_kind, job_status):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "migration_credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", migration_source, nullable=False),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_migration_credentials_org_id", "migration_credentials", ["org_id"], unique=False)

    op.create_table(
        "migration_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", migration_source, nullable=False),
        sa.Column("credentials_ref", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage", migration_stage, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("checkpoint", sa.JSON(), nullable=True),
        sa.Column("counts", sa.JSON(), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("preflight_summary", sa.JSON(), nullable=True),
        sa.Column("dry_run_summary", sa.JSON(), nullable=True),
        sa.Column("execution_lock", sa.String(length=16), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("resumed_from_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checkpoint_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["credentials_ref"], ["migration_credentials.id"]),
        sa.ForeignKeyConstraint(["resumed_from_job_id"], ["migration_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "source", "execution_lock", name="uq_migration_jobs_execution_lock"),
    )
    op.create_index(
        "ix_migration_jobs_org_source_stage",
        "migration_jobs",
        ["org_id", "source", "stage"],
        unique=False,
    )

    op.create_table(
        "migration_job_errors",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage", migration_stage, nullable=False),
        sa.Column("entity_type", sa.String(length=20), nullable=True),
        sa.Column("source_id", sa.String(length=200), nullable=True),
        sa.Column("kind", migration_error_kind, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("page", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["job_id"], ["migration_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_migration_job_errors_job_id", "migration_job_errors", ["job_id"], unique=False)

    op.create_table(
        "crm_contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("first_name", sa.String(length=80), nullable=True),
        sa.Column("last_name", sa.String(length=80), nullable=True),
        sa.Column("company_name", sa.String(length=200), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("phone_digits", sa.String(length=10), nullable=True),
        sa.Column("address_line1", sa.String(length=200), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("state", sa.String(length=60), nullable=True),
        sa.Column("postal_code", sa.String(length=20), nullable=True),
        *_record_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "source", "source_id", name="uq_crm_contacts_org_source_id"),
    )
    op.create_index("ix_crm_contacts_org_email", "crm_contacts", ["org_id", "email"], unique=False)
    op.create_index("ix_crm_contacts_org_phone_digits", "crm_contacts", ["org_id", "phone_digits"], unique=False)

    op.create_table(
        "crm_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("status", job_status, nullable=True),
        sa.Column("property_address", sa.Text(), nullable=True),
        sa.Column("address_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_record_columns(),
        sa.ForeignKeyConstraint(["contact_id"], ["crm_contacts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "source", "source_id", name="uq_crm_jobs_org_source_id"),
    )
    op.create_index(
        "ix_crm_jobs_org_address_fingerprint",
        "crm_jobs",
        ["org_id", "address_fingerprint"],
        unique=False,
    )

    op.create_table(
        "crm_documents",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("content_type", sa.String(length=120), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_record_columns(),
        sa.ForeignKeyConstraint(["job_id"], ["crm_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "source", "source_id", name="uq_crm_documents_org_source_id"),
    )

    op.create_table(
        "crm_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_completed", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        *_record_columns(),
        sa.ForeignKeyConstraint(["job_id"], ["crm_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "source", "source_id", name="uq_crm_tasks_org_source_id"),
    )


def downgrade() -> None:
    op.drop_table("crm_tasks")
    op.drop_table("crm_documents")
    op.drop_index("ix_crm_jobs_org_address_fingerprint", table_name="crm_jobs")
    op.drop_table("crm_jobs")
    op.drop_index("ix_crm_contacts_org_phone_digits", table_name="crm_contacts")
    op.drop_index("ix_crm_contacts_org_email", table_name="crm_contacts")
    op.drop_table("crm_contacts")
    op.drop_index("ix_migration_job_errors_job_id", table_name="migration_job_errors")
    op.drop_table("migration_job_errors")
    op.drop_index("ix_migration_jobs_org_source_stage", table_name="migration_jobs")
    op.drop_table("migration_jobs")
    op.drop_index("ix_migration_credentials_org_id", table_name="migration_credentials")
    op.drop_table("migration_credentials")

    bind = op.get_bind()
    for enum_type in (job_status, migration_error_kind, migration_stage, migration_source):
        enum_type.drop(bind, checkfirst=True)
