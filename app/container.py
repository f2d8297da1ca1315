"""Dependency injection container.

This module provides a centralized container for the migration pipeline's
shared collaborators, so routes, Celery tasks and the CLI get the same
rate limiter registry and source client wiring, and tests can override
them.

Usage:
    from app.container import container

    # In route handlers (through app.api.deps)
    client = container.source_client(source=source, credentials=creds, org_id=org_id)

    # In tests
    with container.source_client.override(providers.Object(fake_client)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from dependency_injector import containers, providers  # type: ignore[import-not-found]

from app.config import settings as app_settings

if TYPE_CHECKING:
    from app.services.migrations.rate_limit import RateLimiterRegistry


def _rate_limiter_registry(rate: float, capacity: int) -> "RateLimiterRegistry":
    from app.services.migrations.rate_limit import RateLimiterRegistry, get_rate_limit_redis
    return RateLimiterRegistry(rate=rate, capacity=capacity, redis_client=get_rate_limit_redis())


def _build_source_client(source, credentials, org_id, rate_limiters):
    from app.services.migrations.clients import build_source_client
    return build_source_client(source, credentials, org_id, rate_limiters=rate_limiters)


def _get_migration_jobs_service():
    from app.services.migrations.jobs import migration_jobs
    return migration_jobs


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    Provides:
    - Settings
    - Token buckets shared per (org_id, source), kept in Redis when reachable
    - Source client factory bound to those buckets
    - The migration job service
    """

    settings = providers.Object(app_settings)

    # Every client for the same (org, source) shares a bucket; across processes through Redis.
    rate_limiters = providers.Singleton(
        _rate_limiter_registry,
        rate=settings.provided.migration_rate_limit_per_second,
        capacity=settings.provided.migration_rate_limit_burst,
    )

    # Called with source=, credentials=, org_id=
    source_client = providers.Factory(_build_source_client, rate_limiters=rate_limiters)

    migration_jobs_service = providers.Singleton(_get_migration_jobs_service)


# Global container instance
container = Container()
