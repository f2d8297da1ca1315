from app.tasks.migrations import run_migration_job

__all__ = [
    "run_migration_job",
]
