"""Source CRM clients for migrations."""

from __future__ import annotations

import httpx

from app.config import settings
from app.models.migration import MigrationSource
from app.services.migrations.clients.acculynx import AccuLynxClient
from app.services.migrations.clients.base import (
    ENTITY_TYPES,
    ConnectionResult,
    SourceClient,
    SourceCredentials,
    SourcePage,
    mask_secret,
)
from app.services.migrations.clients.jobnimbus import JobNimbusClient
from app.services.migrations.rate_limit import RateLimiterRegistry

CLIENT_CLASSES: dict[MigrationSource, type[SourceClient]] = {
    MigrationSource.jobnimbus: JobNimbusClient,
    MigrationSource.acculynx: AccuLynxClient,
}

BASE_URLS: dict[MigrationSource, str] = {
    MigrationSource.jobnimbus: settings.jobnimbus_base_url,
    MigrationSource.acculynx: settings.acculynx_base_url,
}


def build_source_client(
    source: MigrationSource,
    credentials: SourceCredentials,
    org_id,
    rate_limiters: RateLimiterRegistry | None = None,
    transport: httpx.BaseTransport | None = None,
) -> SourceClient:
    """Create a client for ``source`` sharing the ``(org_id, source)`` bucket."""
    client_cls = CLIENT_CLASSES[source]
    return client_cls(
        base_url=BASE_URLS[source],
        credentials=credentials,
        rate_limiter=rate_limiters.get(org_id, source) if rate_limiters else None,
        timeout=settings.migration_page_timeout_seconds,
        max_retries=settings.migration_max_retries,
        retry_base_delay=settings.migration_retry_base_delay,
        transport=transport,
    )


__all__ = [
    "ENTITY_TYPES",
    "AccuLynxClient",
    "ConnectionResult",
    "JobNimbusClient",
    "SourceClient",
    "SourceCredentials",
    "SourcePage",
    "build_source_client",
    "mask_secret",
]
