"""CRM data migration pipeline.

Imports contacts, jobs, documents and tasks from a source CRM:
- Preflight → connection check, preview, sampled duplicate estimate
- Dry run → full-dataset simulation, no tenant writes
- Execute → checkpointed, resumable import
- Report → terminal summary or live progress
"""

from app.services.migrations.dry_run import DryRunResult, run_dry_run
from app.services.migrations.executor import ExecutionEngine, execute_job
from app.services.migrations.jobs import MigrationJobs, migration_jobs
from app.services.migrations.preflight import PreflightResult, run_preflight
from app.services.migrations.report import MigrationProgress, MigrationReport, report_or_progress

__all__ = [
    "DryRunResult",
    "ExecutionEngine",
    "MigrationJobs",
    "MigrationProgress",
    "MigrationReport",
    "PreflightResult",
    "execute_job",
    "migration_jobs",
    "report_or_progress",
    "run_dry_run",
    "run_preflight",
]
