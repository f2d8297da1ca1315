"""JobNimbus API client.

JobNimbus list endpoints page with ``size``/``from`` offsets and answer with
``{"count": <total>, "results": [...]}``.  Authentication is a bearer API key.

Usage:
    client = JobNimbusClient(
        base_url="https://app.jobnimbus.com/api1",
        credentials=SourceCredentials(api_key="your-api-key"),
    )
    page = client.list_contacts(page=1, page_size=100)
"""

from __future__ import annotations

from typing import Any

from app.models.migration import MigrationSource
from app.services.migrations.clients.base import SourceClient, SourcePage


class JobNimbusClient(SourceClient):
    source = MigrationSource.jobnimbus

    # Roughly two attachments per job in typical JobNimbus accounts.
    DOCUMENT_MULTIPLIER = 2

    VOLATILE_FIELDS = frozenset(
        {
            "recid",
            "date_updated",
            "date_status_change",
            "created_by",
            "created_by_name",
            "owners",
            "sales_rep",
            "sales_rep_name",
            "location",
            "geo",
            "is_archived",
            "is_active",
            "customer",
            "external_id",
        }
    )

    ENDPOINTS = {
        "contacts": "/contacts",
        "jobs": "/jobs",
        "documents": "/files",
        "tasks": "/tasks",
    }

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.secret}"}

    def _page_params(self, page: int, page_size: int) -> dict[str, Any]:
        return {"size": page_size, "from": (page - 1) * page_size}

    def _parse_page(self, payload: dict[str, Any]) -> SourcePage:
        results = self._records(payload, "results")
        try:
            total = int(payload.get("count", len(results)))
        except (TypeError, ValueError):
            total = len(results)
        return SourcePage(data=list(results), total_count=total)
