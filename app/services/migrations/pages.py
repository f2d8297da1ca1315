"""Shared page walker for dry run and execution.

Both stages read a source collection the same way: pages in increasing
order at a fixed page size, with the client's retry logic underneath.  A
page whose retries are exhausted comes back as a ``PageError`` carrying the
number of records it should have held, and the walker moves on.

``SourceAuthError`` is not converted; callers decide whether a revoked
credential is a failed connection (dry run) or a fatal job error
(execution).
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from app.logging import get_logger
from app.services.migrations.clients.base import SourceClient, SourcePage
from app.services.migrations.errors import (
    PageError,
    RateLimitError,
    SourceAuthError,
    SourceClientError,
)
from app.services.migrations.observability import PAGES_FETCHED
from app.services.migrations.result import Err, Ok, Result

logger = get_logger(__name__)


@dataclass
class PageOutcome:
    entity_type: str
    page: int
    page_size: int
    records: list[dict[str, Any]] = field(default_factory=list)
    total: int | None = None
    processed: int = 0
    error: PageError | None = None

    @property
    def next_page(self) -> int:
        return self.page + 1


def processed_through(page: int, page_size: int, total: int) -> int:
    """Records accounted for once pages ``1..page`` are done."""
    return min(page * page_size, total)


def fetch_page(
    client: SourceClient, entity_type: str, page: int, page_size: int
) -> Result[SourcePage, PageError]:
    source = client.source.value
    try:
        result = client.list_page(entity_type, page, page_size)
    except SourceAuthError:
        PAGES_FETCHED.labels(source=source, entity_type=entity_type, status="failed").inc()
        raise
    except (SourceClientError, RateLimitError) as exc:
        PAGES_FETCHED.labels(source=source, entity_type=entity_type, status="failed").inc()
        logger.warning(
            "migration_page_failed source=%s entity=%s page=%s error=%s",
            source,
            entity_type,
            page,
            exc.message,
        )
        return Err(PageError(entity_type=entity_type, page=page, reason=exc.message))
    PAGES_FETCHED.labels(source=source, entity_type=entity_type, status="ok").inc()
    return Ok(result)


class PageWalker:
    """Iterate a source collection page by page from a cursor.

    ``total`` is the last-known collection size; it is refreshed from every
    successful page.  When it is unknown and the first page cannot be
    fetched, the walker yields a single outcome with ``total=None`` and
    stops, since the remaining work cannot be sized.
    """

    def __init__(
        self,
        client: SourceClient,
        entity_type: str,
        page_size: int,
        start_page: int = 1,
        total: int | None = None,
    ):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.client = client
        self.entity_type = entity_type
        self.page_size = page_size
        self.start_page = max(start_page, 1)
        self.total = total
        self.shrunk_from: int | None = None

    def _processed_before(self, page: int) -> int:
        processed = (page - 1) * self.page_size
        return min(processed, self.total) if self.total is not None else processed

    def __iter__(self) -> Iterator[PageOutcome]:
        page = self.start_page
        while self.total is None or self._processed_before(page) < self.total:
            processed_before = self._processed_before(page)
            result = fetch_page(self.client, self.entity_type, page, self.page_size)

            if isinstance(result, Err):
                if self.total is None:
                    yield PageOutcome(
                        entity_type=self.entity_type,
                        page=page,
                        page_size=self.page_size,
                        processed=processed_before,
                        error=result.error,
                    )
                    return
                expected = min(self.page_size, self.total - processed_before)
                yield PageOutcome(
                    entity_type=self.entity_type,
                    page=page,
                    page_size=self.page_size,
                    total=self.total,
                    processed=processed_through(page, self.page_size, self.total),
                    error=PageError(
                        entity_type=self.entity_type,
                        page=page,
                        reason=result.error.reason,
                        expected_records=expected,
                    ),
                )
                page += 1
                continue

            source_page = result.value
            self.total = max(source_page.total_count, 0)
            if not source_page.data and processed_before < self.total:
                # The collection shrank while we were reading it.
                logger.warning(
                    "migration_total_shrunk entity=%s page=%s reported_total=%s processed=%s",
                    self.entity_type,
                    page,
                    self.total,
                    processed_before,
                )
                self.shrunk_from = self.total
                self.total = processed_before

            yield PageOutcome(
                entity_type=self.entity_type,
                page=page,
                page_size=self.page_size,
                records=list(source_page.data),
                total=self.total,
                processed=processed_through(page, self.page_size, self.total),
            )
            page += 1
