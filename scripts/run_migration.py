#!/usr/bin/env python3
"""Run a CRM migration in-process (preflight, optional dry run, execution).

Examples:
    python scripts/run_migration.py --org <uuid> --source jobnimbus --api-key KEY --dry-run
    python scripts/run_migration.py --org <uuid> --source acculynx --access-token TOKEN --skip-documents
    python scripts/run_migration.py --org <uuid> --resume <job uuid>
"""

import argparse
import json
import os
import sys
import uuid
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.container import container
from app.db import SessionLocal
from app.logging import configure_logging, get_logger
from app.models.migration import MigrationSource
from app.services.migrations.clients.base import SourceCredentials
from app.services.migrations.dry_run import run_dry_run
from app.services.migrations.errors import JobConflictError
from app.services.migrations.executor import execute_job
from app.services.migrations.jobs import MigrationJobs
from app.services.migrations.preflight import run_preflight
from app.services.migrations.report import report_or_progress

logger = get_logger(__name__)

SKIP_FLAGS = ("contacts", "jobs", "documents", "tasks")


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _execute(db, job) -> int:
    credentials = MigrationJobs.load_credentials(db, job)
    client = container.source_client(source=job.source, credentials=credentials, org_id=job.org_id)
    try:
        execute_job(db, job, client)
    except Exception as exc:
        db.rollback()
        logger.exception("migration_cli_unexpected_error job_id=%s", job.id)
        MigrationJobs.mark_failed(db, job, f"Unexpected error: {exc}")
    finally:
        client.close()
    _print(report_or_progress(db, job).to_dict())
    return 0 if job.stage.value == "completed" else 1


def _resume(db, org_id: uuid.UUID, job_id: str) -> int:
    job = MigrationJobs.get_for_org(db, job_id, org_id)
    try:
        job = MigrationJobs.begin_execution(db, job)
    except JobConflictError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2
    return _execute(db, job)


def _run(db, args, org_id: uuid.UUID) -> int:
    source = MigrationSource(args.source)
    api_key = args.api_key or os.getenv("MIGRATION_API_KEY")
    access_token = args.access_token or os.getenv("MIGRATION_ACCESS_TOKEN")
    if not api_key and not access_token:
        print("error: --api-key or --access-token is required", file=sys.stderr)
        return 2

    credentials = SourceCredentials(api_key=api_key, access_token=access_token)
    options = {f"skip_{entity}": True for entity in SKIP_FLAGS if getattr(args, f"skip_{entity}")}

    client = container.source_client(source=source, credentials=credentials, org_id=org_id)
    try:
        preflight = run_preflight(db, org_id, source, credentials, client, options=options)
        if not preflight.success:
            _print(preflight.to_dict())
            return 1
        job = MigrationJobs.get(db, preflight.job_id)
        if args.dry_run:
            _print(run_dry_run(db, job, client).to_dict())
            return 0
    finally:
        client.close()

    try:
        job = MigrationJobs.begin_execution(db, job)
    except JobConflictError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2
    return _execute(db, job)


def main() -> int:
    parser = argparse.ArgumentParser(description="Import contacts, jobs, documents and tasks from a source CRM.")
    parser.add_argument("--org", required=True, help="Tenant (organization) id.")
    parser.add_argument("--source", choices=[s.value for s in MigrationSource], help="Source CRM.")
    credentials = parser.add_mutually_exclusive_group()
    credentials.add_argument("--api-key", help="Source API key (or MIGRATION_API_KEY).")
    credentials.add_argument("--access-token", help="Source access token (or MIGRATION_ACCESS_TOKEN).")
    parser.add_argument("--dry-run", action="store_true", help="Simulate the import without writing records.")
    parser.add_argument("--resume", metavar="JOB_ID", help="Continue a failed, cancelled or stalled job.")
    for entity in SKIP_FLAGS:
        parser.add_argument(f"--skip-{entity}", action="store_true", help=f"Do not import {entity}.")
    args = parser.parse_args()

    try:
        org_id = uuid.UUID(args.org)
    except ValueError:
        parser.error("--org must be a UUID")
    if not args.resume and not args.source:
        parser.error("--source is required unless --resume is given")

    configure_logging()
    db = SessionLocal()
    try:
        if args.resume:
            return _resume(db, org_id, args.resume)
        return _run(db, args, org_id)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
