"""AccuLynx API v2 client.

AccuLynx pages with ``pageSize``/``pageStartIndex`` and answers with
``{"count": <total>, "items": [...]}``.  Both API keys and OAuth access
tokens are sent as bearer tokens.
"""

from __future__ import annotations

from typing import Any

from app.models.migration import MigrationSource
from app.services.migrations.clients.base import SourceClient, SourcePage


class AccuLynxClient(SourceClient):
    source = MigrationSource.acculynx

    # AccuLynx jobs carry photos, estimates and contracts: about three files each.
    DOCUMENT_MULTIPLIER = 3

    VOLATILE_FIELDS = frozenset(
        {
            "etag",
            "modifiedDate",
            "lastModifiedDate",
            "createdBy",
            "modifiedBy",
            "links",
            "href",
            "salesOwner",
            "companyId",
            "accountId",
        }
    )

    ENDPOINTS = {
        "contacts": "/contacts",
        "jobs": "/jobs",
        "documents": "/documents",
        "tasks": "/tasks",
    }

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.secret}"}

    def _page_params(self, page: int, page_size: int) -> dict[str, Any]:
        return {"pageSize": page_size, "pageStartIndex": (page - 1) * page_size}

    def _parse_page(self, payload: dict[str, Any]) -> SourcePage:
        items = self._records(payload, "items")
        try:
            total = int(payload.get("count", payload.get("totalCount", len(items))))
        except (TypeError, ValueError):
            total = len(items)
        return SourcePage(data=list(items), total_count=total)
