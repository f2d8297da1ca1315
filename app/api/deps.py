from uuid import UUID

from fastapi import Header, HTTPException

from app.db import get_db

__all__ = ["get_db", "get_org_id", "get_source_client_factory", "get_migration_jobs_service", "get_task_dispatcher"]


def get_org_id(x_org_id: str | None = Header(default=None)) -> UUID:
    """Tenant id supplied by the authenticating gateway."""
    if not x_org_id:
        raise HTTPException(status_code=401, detail="Missing X-Org-Id header")
    try:
        return UUID(x_org_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid X-Org-Id header") from exc


# -------------------------------------------------------------------------
# Container-based Dependencies
# -------------------------------------------------------------------------
# These provide collaborators from the DI container for use in route handlers.
# They can be easily replaced in tests through app.dependency_overrides.


def get_source_client_factory():
    """Get the source client factory from container."""
    from app.container import container
    return container.source_client


def get_migration_jobs_service():
    """Get migration job service from container."""
    from app.container import container
    return container.migration_jobs_service()


def get_task_dispatcher():
    """Get the callable that queues a migration execution."""
    from app.tasks.migrations import run_migration_job
    return run_migration_job.delay
