"""Error taxonomy for the migration pipeline.

Only ``FatalJobError`` (and anything unexpected) is allowed to escape a
pipeline stage.  The other kinds are reported through structured results.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException


class MigrationError(Exception):
    """Base exception for migration pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MigrationConnectionError(MigrationError):
    """Bad or expired source credentials."""


class MigrationValidationError(MigrationError):
    """Malformed request or unsupported source, rejected at the API boundary."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=400, detail=self.message)


class RateLimitError(MigrationError):
    """Source API throttled the request."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalJobError(MigrationError):
    """Unrecoverable condition; the job moves to failed with its checkpoint kept."""


class JobConflictError(MigrationError):
    """The requested stage transition is not allowed for the job's current state."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=409, detail=self.message)


# Source client HTTP errors


class SourceClientError(MigrationError):
    """Non-retryable source API error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SourceAuthError(SourceClientError, MigrationConnectionError):
    """Authentication rejected by the source (401/403)."""


class SourceTransientError(SourceClientError):
    """Retryable failure (5xx, timeout, transport) that exhausted its retries."""


# Per-record errors collected during normalization and persistence


@dataclass(frozen=True)
class NormalizationError:
    entity_type: str
    source_id: str | None
    field: str
    reason: str

    def __str__(self) -> str:
        return f"{self.entity_type} {self.source_id or '<no id>'}: {self.field} {self.reason}"


@dataclass(frozen=True)
class PersistenceError:
    entity_type: str
    source_id: str | None
    reason: str

    def __str__(self) -> str:
        return f"{self.entity_type} {self.source_id or '<no id>'}: {self.reason}"


@dataclass(frozen=True)
class PageError:
    entity_type: str
    page: int
    reason: str
    expected_records: int = 0

    def __str__(self) -> str:
        return f"{self.entity_type} page {self.page}: {self.reason}"
