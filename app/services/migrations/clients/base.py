"""Shared HTTP plumbing for source CRM clients.

Provides the uniform paginated-read contract every source adapter exposes:
- credential validation that never raises on auth failure
- ``list_contacts`` / ``list_jobs`` / ``list_documents`` / ``list_tasks``
- shared token-bucket rate limiting per ``(org_id, source)``
- retry with exponential backoff for transient failures

Subclasses only describe the source's endpoints, auth header and page shape.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

from app.logging import get_logger
from app.models.migration import MigrationSource
from app.services.migrations.errors import (
    MigrationConnectionError,
    RateLimitError,
    SourceAuthError,
    SourceClientError,
    SourceTransientError,
)
from app.services.migrations.rate_limit import SharedTokenBucket, TokenBucket

logger = get_logger(__name__)

ENTITY_TYPES: tuple[str, ...] = ("contacts", "jobs", "documents", "tasks")


@dataclass
class ConnectionResult:
    ok: bool
    error: str | None = None


@dataclass
class SourcePage:
    data: list[dict[str, Any]] = field(default_factory=list)
    total_count: int = 0


@dataclass(frozen=True)
class SourceCredentials:
    api_key: str | None = None
    access_token: str | None = None

    @property
    def secret(self) -> str | None:
        return self.access_token or self.api_key

    def masked(self) -> str:
        return mask_secret(self.secret)


def mask_secret(value: str | None) -> str:
    """Render a credential for logs: first and last four characters only."""
    if not value:
        return "<none>"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


class SourceClient:
    """Base class for paginated source CRM API clients.

    Attributes:
        source: Which CRM this client talks to
        base_url: API root
        timeout: Per-request (per-page) timeout in seconds
        max_retries: Retries after the first attempt for transient failures
        retry_base_delay: First backoff delay; doubles per retry
    """

    source: ClassVar[MigrationSource]
    DOCUMENT_MULTIPLIER: ClassVar[int] = 1
    VOLATILE_FIELDS: ClassVar[frozenset[str]] = frozenset()
    ENDPOINTS: ClassVar[dict[str, str]] = {}

    DEFAULT_TIMEOUT = 30.0
    DEFAULT_RETRIES = 3
    DEFAULT_RETRY_DELAY = 0.5

    def __init__(
        self,
        base_url: str,
        credentials: SourceCredentials,
        rate_limiter: TokenBucket | SharedTokenBucket | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._transport = transport
        self._client: httpx.Client | None = None

    # ─────────────────────────────────────────────────────────────────
    # Source-specific hooks
    # ─────────────────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _page_params(self, page: int, page_size: int) -> dict[str, Any]:
        raise NotImplementedError

    def _records(self, payload: dict[str, Any], key: str) -> list[Any]:
        records = payload.get(key)
        if records is None:
            raise SourceClientError(f"{self.source.value} response missing '{key}'")
        if not isinstance(records, list):
            raise SourceClientError(
                f"Unexpected response shape from source: '{key}' is {type(records).__name__}, expected a list"
            )
        return records

    def _parse_page(self, payload: dict[str, Any]) -> SourcePage:
        raise NotImplementedError

    # ─────────────────────────────────────────────────────────────────
    # HTTP
    # ─────────────────────────────────────────────────────────────────

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={
                    **self._auth_headers(),
                    "Accept": "application/json",
                    "User-Agent": "CRM-Migrations/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self):
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _backoff_delay(self, attempt: int, error: Exception) -> float:
        delay = self.retry_base_delay * (2**attempt)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        if status in (401, 403):
            raise SourceAuthError(
                f"Authentication failed ({status}) - check the {self.source.value} credentials",
                status_code=status,
            )
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_seconds = None
            raise RateLimitError("Rate limit exceeded", retry_after=retry_seconds)
        if status >= 500:
            raise SourceTransientError(f"Server error ({status})", status_code=status)
        if status >= 400:
            raise SourceClientError(f"API error ({status}): {response.text[:200]}", status_code=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceClientError("Invalid JSON in source response", status_code=status) from exc
        if not isinstance(payload, dict):
            raise SourceClientError("Unexpected response shape from source", status_code=status)
        return payload

    def _request(self, method: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make a rate-limited request, retrying transient failures.

        Raises:
            SourceAuthError: Credentials rejected
            SourceClientError: Non-retryable 4xx
            SourceTransientError: Retries exhausted
        """
        client = self._get_client()
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            try:
                response = client.request(method, path, params=params)
                return self._handle_response(response)
            except (SourceTransientError, RateLimitError) as exc:
                last_error = exc
            except httpx.TimeoutException as exc:
                last_error = exc
            except httpx.TransportError as exc:
                last_error = exc

            if attempt < self.max_retries:
                delay = self._backoff_delay(attempt, last_error)
                logger.warning(
                    "migration_source_retry source=%s path=%s attempt=%s delay=%s error=%s",
                    self.source.value,
                    path,
                    attempt + 1,
                    delay,
                    last_error,
                )
                self._sleep(delay)

        raise SourceTransientError(
            f"Request to {path} failed after {self.max_retries + 1} attempts: {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    # ─────────────────────────────────────────────────────────────────
    # Paginated reads
    # ─────────────────────────────────────────────────────────────────

    def list_page(self, entity_type: str, page: int, page_size: int) -> SourcePage:
        if entity_type not in self.ENDPOINTS:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if page < 1:
            raise ValueError("page is 1-based")
        payload = self._request("GET", self.ENDPOINTS[entity_type], params=self._page_params(page, page_size))
        result = self._parse_page(payload)
        logger.debug(
            "migration_source_page source=%s entity=%s page=%s records=%s total=%s",
            self.source.value,
            entity_type,
            page,
            len(result.data),
            result.total_count,
        )
        return result

    def list_contacts(self, page: int, page_size: int) -> SourcePage:
        return self.list_page("contacts", page, page_size)

    def list_jobs(self, page: int, page_size: int) -> SourcePage:
        return self.list_page("jobs", page, page_size)

    def list_documents(self, page: int, page_size: int) -> SourcePage:
        return self.list_page("documents", page, page_size)

    def list_tasks(self, page: int, page_size: int) -> SourcePage:
        return self.list_page("tasks", page, page_size)

    def validate_credentials(self) -> ConnectionResult:
        """Single lightweight call; auth failures come back as ``ok=False``."""
        try:
            self.list_contacts(1, 5)
        except MigrationConnectionError as exc:
            logger.info(
                "migration_credentials_rejected source=%s credential=%s",
                self.source.value,
                self.credentials.masked(),
            )
            return ConnectionResult(ok=False, error=exc.message)
        except (SourceClientError, RateLimitError) as exc:
            return ConnectionResult(ok=False, error=exc.message)
        return ConnectionResult(ok=True)

    def strip_volatile(self, record: dict[str, Any]) -> dict[str, Any]:
        """Drop internal/volatile fields so previews stay stable and small."""
        return {
            key: value
            for key, value in record.items()
            if key not in self.VOLATILE_FIELDS and not key.startswith("_")
        }

    def preview_sample(self, records: list[Any], limit: int) -> list[dict[str, Any]]:
        """First ``limit`` records that are objects, volatile fields stripped."""
        return [self.strip_volatile(record) for record in records if isinstance(record, dict)][:limit]
