"""Duplicate detection against a tenant's existing CRM records.

Two modes:

- Sampled (preflight): count exact email and phone matches among a small
  contact sample and extrapolate to the whole dataset.  The numbers are a
  cheap operator warning and are always flagged ``estimated``.
- Exact (dry run / execution): resolve every normalized record to create,
  update or skip.  The idempotency key ``(org_id, source, source_id)`` is
  consulted first, then email, then phone, then (jobs only) the address
  fingerprint.  The first key with a match wins.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from fractions import Fraction
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.models.migration import MigrationSource
from app.services.common import ensure_utc
from app.services.migrations.normalizers import (
    CanonicalContact,
    CanonicalJob,
    CanonicalRecord,
    normalize_record,
)
from app.services.migrations.repositories import ContactRepository, JobRepository, repository_for
from app.services.migrations.result import Ok

logger = get_logger(__name__)

SAMPLE_LIMIT = 5

MATCH_CONFIDENCE = {
    "email": 0.95,
    "phone": 0.8,
    "address": 0.6,
}

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"


@dataclass(frozen=True)
class DuplicateMatch:
    canonical_record: CanonicalRecord
    existing_record_id: uuid.UUID
    matched_on: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        record = self.canonical_record
        return {
            "type": record.entity_type,
            "external_id": record.source_id,
            "external_name": getattr(record, "name", None) or getattr(record, "title", None),
            "matched_internal_id": str(self.existing_record_id),
            "matched_on": self.matched_on,
            "confidence": self.confidence,
            "action": ACTION_UPDATE,
        }


@dataclass(frozen=True)
class Resolution:
    action: str
    existing_id: uuid.UUID | None = None
    match: DuplicateMatch | None = None
    tie_warning: str | None = None


@dataclass(frozen=True)
class ExistingRef:
    id: uuid.UUID
    source_hash: str | None


@dataclass(frozen=True)
class Candidate:
    id: uuid.UUID
    updated_at: datetime


class RecordIndex(Protocol):
    def external(self, entity_type: str, source_id: str) -> ExistingRef | None: ...

    def candidates(self, entity_type: str, matched_on: str, value: str) -> list[Candidate]: ...


def _epoch() -> datetime:
    return datetime.min.replace(tzinfo=UTC)


class TenantIndex:
    """Record index backed by the tenant's stored records."""

    def __init__(self, db: Session, org_id: uuid.UUID, source: MigrationSource):
        self.db = db
        self.org_id = org_id
        self.source = source

    def external(self, entity_type: str, source_id: str) -> ExistingRef | None:
        instance = repository_for(self.db, entity_type).get_by_external_id(self.org_id, self.source, source_id)
        if instance is None:
            return None
        return ExistingRef(id=instance.id, source_hash=instance.source_hash)

    def candidates(self, entity_type: str, matched_on: str, value: str) -> list[Candidate]:
        if matched_on == "email":
            rows = ContactRepository(self.db).find_by_email(self.org_id, value)
        elif matched_on == "phone":
            rows = ContactRepository(self.db).find_by_phone(self.org_id, value)
        elif matched_on == "address":
            rows = JobRepository(self.db).find_by_address(self.org_id, value)
        else:
            return []
        return [Candidate(id=row.id, updated_at=ensure_utc(row.updated_at) or _epoch()) for row in rows]


@dataclass
class _Overlay:
    external: dict[str, ExistingRef] = field(default_factory=dict)
    keys: dict[tuple[str, str], list[Candidate]] = field(default_factory=dict)


class SimulatedIndex:
    """Tenant index plus the records a dry run would have written so far.

    Lets a simulation see its own would-be creates, so a dataset containing
    two records with the same email resolves to create + update exactly as
    execution would.
    """

    def __init__(self, base: RecordIndex):
        self.base = base
        self._overlays: dict[str, _Overlay] = {}

    def _overlay(self, entity_type: str) -> _Overlay:
        return self._overlays.setdefault(entity_type, _Overlay())

    def external(self, entity_type: str, source_id: str) -> ExistingRef | None:
        simulated = self._overlay(entity_type).external.get(source_id)
        if simulated is not None:
            return simulated
        return self.base.external(entity_type, source_id)

    def candidates(self, entity_type: str, matched_on: str, value: str) -> list[Candidate]:
        simulated = self._overlay(entity_type).keys.get((matched_on, value), [])
        merged = {c.id: c for c in self.base.candidates(entity_type, matched_on, value)}
        for candidate in simulated:
            merged[candidate.id] = candidate
        return sorted(merged.values(), key=lambda c: c.updated_at, reverse=True)

    def apply(self, record: CanonicalRecord, resolution: Resolution) -> None:
        """Record the effect a write of ``record`` would have had."""
        if resolution.action == ACTION_SKIP:
            return
        overlay = self._overlay(record.entity_type)
        record_id = resolution.existing_id or uuid.uuid4()
        overlay.external[record.source_id] = ExistingRef(id=record_id, source_hash=record.fingerprint())
        now = datetime.now(UTC)
        for matched_on, value in match_keys(record):
            bucket = overlay.keys.setdefault((matched_on, value), [])
            bucket[:] = [c for c in bucket if c.id != record_id]
            bucket.append(Candidate(id=record_id, updated_at=now))


def match_keys(record: CanonicalRecord) -> list[tuple[str, str]]:
    if isinstance(record, CanonicalContact):
        keys = [("email", record.email), ("phone", record.phone_digits)]
    elif isinstance(record, CanonicalJob):
        keys = [("address", record.address_fingerprint)]
    else:
        keys = []
    return [(name, value) for name, value in keys if value]


class DuplicateDetector:
    """Exact duplicate resolution for normalized records."""

    def __init__(self, index: RecordIndex):
        self.index = index

    def resolve(self, record: CanonicalRecord) -> Resolution:
        existing = self.index.external(record.entity_type, record.source_id)
        if existing is not None:
            if existing.source_hash and existing.source_hash == record.fingerprint():
                return Resolution(action=ACTION_SKIP, existing_id=existing.id)
            return Resolution(action=ACTION_UPDATE, existing_id=existing.id)

        for matched_on, value in match_keys(record):
            candidates = self.index.candidates(record.entity_type, matched_on, value)
            if not candidates:
                continue
            chosen = candidates[0]
            tie_warning = None
            if len(candidates) > 1:
                tie_warning = (
                    f"{record.entity_type[:-1].capitalize()} {record.source_id} matched "
                    f"{len(candidates)} existing records by {matched_on}; "
                    f"updating the most recently updated ({chosen.id})"
                )
                logger.warning(
                    "migration_dedup_tie entity=%s source_id=%s matched_on=%s candidates=%s chosen=%s",
                    record.entity_type,
                    record.source_id,
                    matched_on,
                    len(candidates),
                    chosen.id,
                )
            match = DuplicateMatch(
                canonical_record=record,
                existing_record_id=chosen.id,
                matched_on=matched_on,
                confidence=MATCH_CONFIDENCE[matched_on],
            )
            return Resolution(action=ACTION_UPDATE, existing_id=chosen.id, match=match, tie_warning=tie_warning)

        return Resolution(action=ACTION_CREATE)


# -----------------------------------------------------------------------------
# Sampled estimate (preflight)
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DuplicateEstimate:
    sample_size: int = 0
    sample_email_matches: int = 0
    sample_phone_matches: int = 0
    total_contacts: int = 0
    email_matches: int = 0
    phone_matches: int = 0
    estimated: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "sample_size": self.sample_size,
            "sample_email_matches": self.sample_email_matches,
            "sample_phone_matches": self.sample_phone_matches,
            "total_contacts": self.total_contacts,
            "email_matches": self.email_matches,
            "phone_matches": self.phone_matches,
            "estimated": self.estimated,
        }


def extrapolate(sample_matches: int, sample_size: int, total: int) -> int:
    """``round((sample_matches / sample_size) * total)`` with halves rounded up."""
    if sample_size <= 0 or total <= 0:
        return 0
    return math.floor(Fraction(sample_matches * total, sample_size) + Fraction(1, 2))


def estimate_contact_duplicates(
    contacts: ContactRepository,
    org_id: uuid.UUID,
    source: MigrationSource,
    sample: list[dict[str, Any]],
    total_contacts: int,
) -> DuplicateEstimate:
    sample = sample[:SAMPLE_LIMIT]
    email_hits = 0
    phone_hits = 0
    for raw in sample:
        normalized = normalize_record(source, "contacts", raw)
        if not isinstance(normalized, Ok):
            continue
        record = normalized.value
        if record.email and contacts.email_exists(org_id, record.email):
            email_hits += 1
        if record.phone_digits and contacts.phone_exists(org_id, record.phone_digits):
            phone_hits += 1

    return DuplicateEstimate(
        sample_size=len(sample),
        sample_email_matches=email_hits,
        sample_phone_matches=phone_hits,
        total_contacts=total_contacts,
        email_matches=extrapolate(email_hits, len(sample), total_contacts),
        phone_matches=extrapolate(phone_hits, len(sample), total_contacts),
    )
