"""Source CRM to canonical record mappers.

Maps each source's raw records to canonical records:
- JobNimbus contact/job/file/task → CanonicalContact/Job/Document/Task
- AccuLynx contact/job/document/task → CanonicalContact/Job/Document/Task

Mappers are pure: they return ``Ok(record)`` or ``Err(NormalizationError)``
and never raise for bad data, so one broken record cannot abort a batch.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, ClassVar

from app.logging import get_logger
from app.models.migration import MigrationSource
from app.models.records import JobStatus
from app.services.migrations.errors import NormalizationError
from app.services.migrations.result import Err, Ok, Result

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Canonical records
# -----------------------------------------------------------------------------


class _Canonical:
    entity_type: ClassVar[str]
    source_id: str

    @property
    def dedup_key(self) -> str | None:
        return None

    def fingerprint(self) -> str:
        payload = json.dumps(asdict(self), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_fields(self) -> dict[str, Any]:
        """Column values for the tenant model (link ids are resolved separately)."""
        data = asdict(self)
        data.pop("source_id", None)
        return {key: value for key, value in data.items() if not key.endswith("_source_id")}


@dataclass(frozen=True)
class CanonicalContact(_Canonical):
    entity_type: ClassVar[str] = "contacts"

    source_id: str
    name: str
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: str | None = None
    phone: str | None = None
    phone_digits: str | None = None
    address_line1: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None

    @property
    def dedup_key(self) -> str | None:
        return self.email or self.phone_digits


@dataclass(frozen=True)
class CanonicalJob(_Canonical):
    entity_type: ClassVar[str] = "jobs"

    source_id: str
    name: str
    status: JobStatus = JobStatus.new
    property_address: str | None = None
    address_fingerprint: str | None = None
    description: str | None = None
    contact_source_id: str | None = None


@dataclass(frozen=True)
class CanonicalDocument(_Canonical):
    entity_type: ClassVar[str] = "documents"

    source_id: str
    file_name: str
    content_type: str | None = None
    size_bytes: int | None = None
    description: str | None = None
    job_source_id: str | None = None


@dataclass(frozen=True)
class CanonicalTask(_Canonical):
    entity_type: ClassVar[str] = "tasks"

    source_id: str
    title: str
    description: str | None = None
    due_at: datetime | None = None
    is_completed: bool = False
    job_source_id: str | None = None


CanonicalRecord = CanonicalContact | CanonicalJob | CanonicalDocument | CanonicalTask

NormalizeResult = Result[CanonicalRecord, NormalizationError]


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TAG_RE = re.compile(r"<[^>]+>")


def _clean(value: Any, max_len: int | None = None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if max_len and len(text) > max_len:
        text = text[:max_len]
    return text


def _clean_html(value: Any) -> str | None:
    text = _clean(value)
    if not text:
        return None
    return _TAG_RE.sub("", text).strip() or None


def normalize_email(value: Any) -> str | None:
    email = _clean(value)
    if not email:
        return None
    email = email.lower()
    return email if _EMAIL_RE.match(email) else None


def phone_digits(value: Any) -> str | None:
    """Last ten digits of a phone number, or None when too short to match on."""
    text = _clean(value)
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    if len(digits) < 10:
        return None
    return digits[-10:]


def format_address(line1: Any, city: Any = None, state: Any = None, postal_code: Any = None) -> str | None:
    parts = [_clean(line1), _clean(city), " ".join(p for p in (_clean(state), _clean(postal_code)) if p)]
    joined = ", ".join(p for p in parts if p)
    return joined or None


def address_fingerprint(line1: Any, postal_code: Any = None) -> str | None:
    """Case/punctuation-insensitive fingerprint of a street address."""
    street = _clean(line1)
    if not street or len(street) <= 5:
        return None
    normalized = re.sub(r"[^a-z0-9]+", " ", street.lower()).strip()
    zip_part = re.sub(r"\D", "", str(postal_code or ""))[:5]
    return hashlib.sha256(f"{normalized}|{zip_part}".encode()).hexdigest()


def _parse_datetime(value: Any) -> datetime | None:
    """Parse epoch seconds (JobNimbus) or ISO 8601 strings (AccuLynx)."""
    if value in (None, "", 0):
        return None
    if isinstance(value, int | float):
        try:
            return datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _coerce_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _assemble_name(first: Any, last: Any, *fallbacks: Any) -> str | None:
    name = " ".join(p for p in (_clean(first), _clean(last)) if p)
    if name:
        return name[:200]
    for candidate in fallbacks:
        cleaned = _clean(candidate, 200)
        if cleaned:
            return cleaned
    return None


def _pick_phone(phones: dict[str, Any]) -> str | None:
    """Phone precedence: mobile > home > work."""
    for kind in ("mobile", "home", "work"):
        cleaned = _clean(phones.get(kind), 40)
        if cleaned:
            return cleaned
    return None


def _related_id(related: Any, kind: str) -> str | None:
    if not isinstance(related, list):
        return None
    for item in related:
        if isinstance(item, dict) and (item.get("type") or "").lower() == kind and item.get("id"):
            return str(item["id"])
    return None


def _error(entity_type: str, source_id: str | None, field: str, reason: str) -> Err[NormalizationError]:
    return Err(NormalizationError(entity_type=entity_type, source_id=source_id, field=field, reason=reason))


# -----------------------------------------------------------------------------
# Status Mappings
# -----------------------------------------------------------------------------

JOB_STATUS_MAP = {
    "lead": JobStatus.new,
    "new": JobStatus.new,
    "prospect": JobStatus.new,
    "open": JobStatus.in_progress,
    "in progress": JobStatus.in_progress,
    "working": JobStatus.in_progress,
    "approved": JobStatus.in_progress,
    "pending": JobStatus.pending,
    "closed": JobStatus.completed,
    "won": JobStatus.completed,
    "completed": JobStatus.completed,
    "invoiced": JobStatus.completed,
    "lost": JobStatus.cancelled,
    "cancelled": JobStatus.cancelled,
    "canceled": JobStatus.cancelled,
}


def map_job_status(value: Any) -> JobStatus:
    if not isinstance(value, str):
        return JobStatus.new
    return JOB_STATUS_MAP.get(value.strip().lower(), JobStatus.new)


# -----------------------------------------------------------------------------
# JobNimbus
# -----------------------------------------------------------------------------


def map_jobnimbus_contact(doc: dict[str, Any]) -> NormalizeResult:
    """Map a JobNimbus contact.

    JobNimbus contact fields:
    - jnid: Contact ID
    - first_name, last_name, display_name, company
    - email
    - mobile_phone, home_phone, work_phone
    - address_line1, city, state_text, zip
    """
    source_id = _clean(doc.get("jnid"))
    if not source_id:
        return _error("contacts", None, "jnid", "missing source id")

    email = normalize_email(doc.get("email"))
    name = _assemble_name(doc.get("first_name"), doc.get("last_name"), doc.get("display_name"), doc.get("company"))
    if not name and not email:
        return _error("contacts", source_id, "name", "missing name and email")

    phone = _pick_phone(
        {"mobile": doc.get("mobile_phone"), "home": doc.get("home_phone"), "work": doc.get("work_phone")}
    )
    return Ok(
        CanonicalContact(
            source_id=source_id,
            name=name or email,
            first_name=_clean(doc.get("first_name"), 80),
            last_name=_clean(doc.get("last_name"), 80),
            company_name=_clean(doc.get("company"), 200),
            email=email,
            phone=phone,
            phone_digits=phone_digits(phone),
            address_line1=_clean(doc.get("address_line1"), 200),
            city=_clean(doc.get("city"), 120),
            state=_clean(doc.get("state_text"), 60),
            postal_code=_clean(doc.get("zip"), 20),
        )
    )


def map_jobnimbus_job(doc: dict[str, Any]) -> NormalizeResult:
    """Map a JobNimbus job.

    JobNimbus job fields:
    - jnid, name, number
    - status_name
    - address_line1, city, state_text, zip
    - description
    - primary: {id} of the primary contact
    """
    source_id = _clean(doc.get("jnid"))
    if not source_id:
        return _error("jobs", None, "jnid", "missing source id")

    address = format_address(doc.get("address_line1"), doc.get("city"), doc.get("state_text"), doc.get("zip"))
    name = _clean(doc.get("name"), 200) or _clean(doc.get("number"), 200) or address
    if not name:
        return _error("jobs", source_id, "name", "missing name and address")

    primary = doc.get("primary") if isinstance(doc.get("primary"), dict) else {}
    contact_id = _clean(primary.get("id")) or _related_id(doc.get("related"), "contact")
    return Ok(
        CanonicalJob(
            source_id=source_id,
            name=name[:200],
            status=map_job_status(doc.get("status_name")),
            property_address=address,
            address_fingerprint=address_fingerprint(doc.get("address_line1"), doc.get("zip")),
            description=_clean_html(doc.get("description")),
            contact_source_id=contact_id,
        )
    )


def map_jobnimbus_file(doc: dict[str, Any]) -> NormalizeResult:
    """Map JobNimbus file metadata (bytes are not migrated)."""
    source_id = _clean(doc.get("jnid"))
    if not source_id:
        return _error("documents", None, "jnid", "missing source id")
    file_name = _clean(doc.get("filename"), 255)
    if not file_name:
        return _error("documents", source_id, "filename", "missing file name")

    primary = doc.get("primary") if isinstance(doc.get("primary"), dict) else {}
    return Ok(
        CanonicalDocument(
            source_id=source_id,
            file_name=file_name,
            content_type=_clean(doc.get("content_type"), 120),
            size_bytes=_coerce_int(doc.get("size")),
            description=_clean(doc.get("description")),
            job_source_id=_related_id(doc.get("related"), "job") or _clean(primary.get("id")),
        )
    )


def map_jobnimbus_task(doc: dict[str, Any]) -> NormalizeResult:
    source_id = _clean(doc.get("jnid"))
    if not source_id:
        return _error("tasks", None, "jnid", "missing source id")
    title = _clean(doc.get("title"), 255)
    if not title:
        return _error("tasks", source_id, "title", "missing title")

    return Ok(
        CanonicalTask(
            source_id=source_id,
            title=title,
            description=_clean_html(doc.get("description")),
            due_at=_parse_datetime(doc.get("date_end")),
            is_completed=bool(doc.get("is_completed")),
            job_source_id=_related_id(doc.get("related"), "job"),
        )
    )


# -----------------------------------------------------------------------------
# AccuLynx
# -----------------------------------------------------------------------------


def _acculynx_email(doc: dict[str, Any]) -> str | None:
    addresses = doc.get("emailAddresses")
    if isinstance(addresses, list) and addresses:
        ordered = sorted(
            (a for a in addresses if isinstance(a, dict)),
            key=lambda a: not a.get("isPrimary"),
        )
        for entry in ordered:
            email = normalize_email(entry.get("address"))
            if email:
                return email
    return normalize_email(doc.get("email"))


def _acculynx_phones(doc: dict[str, Any]) -> dict[str, Any]:
    phones: dict[str, Any] = {}
    numbers = doc.get("phoneNumbers")
    if isinstance(numbers, list):
        for entry in numbers:
            if not isinstance(entry, dict):
                continue
            kind = (entry.get("type") or "").strip().lower()
            if kind in ("cell", "mobile"):
                kind = "mobile"
            elif kind in ("office", "work", "business"):
                kind = "work"
            elif kind != "home":
                kind = "other"
            phones.setdefault(kind, entry.get("number"))
    if not phones and doc.get("phone"):
        phones["other"] = doc.get("phone")
    return phones


def map_acculynx_contact(doc: dict[str, Any]) -> NormalizeResult:
    """Map an AccuLynx contact.

    AccuLynx contact fields:
    - id, firstName, lastName, companyName
    - emailAddresses: [{address, isPrimary}]
    - phoneNumbers: [{number, type}] with type Mobile/Home/Work
    - mailingAddress: {street1, city, state, zipCode}
    """
    source_id = _clean(doc.get("id"))
    if not source_id:
        return _error("contacts", None, "id", "missing source id")

    email = _acculynx_email(doc)
    name = _assemble_name(doc.get("firstName"), doc.get("lastName"), doc.get("companyName"))
    if not name and not email:
        return _error("contacts", source_id, "name", "missing name and email")

    phones = _acculynx_phones(doc)
    phone = _pick_phone(phones) or _clean(phones.get("other"), 40)
    address = doc.get("mailingAddress") if isinstance(doc.get("mailingAddress"), dict) else {}
    return Ok(
        CanonicalContact(
            source_id=source_id,
            name=name or email,
            first_name=_clean(doc.get("firstName"), 80),
            last_name=_clean(doc.get("lastName"), 80),
            company_name=_clean(doc.get("companyName"), 200),
            email=email,
            phone=phone,
            phone_digits=phone_digits(phone),
            address_line1=_clean(address.get("street1"), 200),
            city=_clean(address.get("city"), 120),
            state=_clean(address.get("state"), 60),
            postal_code=_clean(address.get("zipCode"), 20),
        )
    )


def map_acculynx_job(doc: dict[str, Any]) -> NormalizeResult:
    """Map an AccuLynx job.

    AccuLynx job fields:
    - id, jobName, jobNumber
    - currentMilestone: Lead, Prospect, Approved, Completed, Invoiced, Closed, Cancelled
    - locationAddress: {street1, city, state, zipCode}
    - contacts: [{id, isPrimary}]
    """
    source_id = _clean(doc.get("id"))
    if not source_id:
        return _error("jobs", None, "id", "missing source id")

    location = doc.get("locationAddress") if isinstance(doc.get("locationAddress"), dict) else {}
    address = format_address(location.get("street1"), location.get("city"), location.get("state"), location.get("zipCode"))
    name = _clean(doc.get("jobName"), 200) or _clean(doc.get("jobNumber"), 200) or address
    if not name:
        return _error("jobs", source_id, "jobName", "missing name and address")

    contact_id = None
    contacts = doc.get("contacts")
    if isinstance(contacts, list):
        ordered = sorted((c for c in contacts if isinstance(c, dict)), key=lambda c: not c.get("isPrimary"))
        contact_id = next((_clean(c.get("id")) for c in ordered if c.get("id")), None)

    return Ok(
        CanonicalJob(
            source_id=source_id,
            name=name[:200],
            status=map_job_status(doc.get("currentMilestone") or doc.get("status")),
            property_address=address,
            address_fingerprint=address_fingerprint(location.get("street1"), location.get("zipCode")),
            description=_clean_html(doc.get("description") or doc.get("notes")),
            contact_source_id=contact_id,
        )
    )


def map_acculynx_document(doc: dict[str, Any]) -> NormalizeResult:
    source_id = _clean(doc.get("id"))
    if not source_id:
        return _error("documents", None, "id", "missing source id")
    file_name = _clean(doc.get("fileName") or doc.get("name"), 255)
    if not file_name:
        return _error("documents", source_id, "fileName", "missing file name")

    return Ok(
        CanonicalDocument(
            source_id=source_id,
            file_name=file_name,
            content_type=_clean(doc.get("contentType") or doc.get("mimeType"), 120),
            size_bytes=_coerce_int(doc.get("fileSize")),
            description=_clean(doc.get("description")),
            job_source_id=_clean(doc.get("jobId")),
        )
    )


def map_acculynx_task(doc: dict[str, Any]) -> NormalizeResult:
    source_id = _clean(doc.get("id"))
    if not source_id:
        return _error("tasks", None, "id", "missing source id")
    title = _clean(doc.get("title") or doc.get("subject"), 255)
    if not title:
        return _error("tasks", source_id, "title", "missing title")

    status = (doc.get("status") or "").strip().lower() if isinstance(doc.get("status"), str) else ""
    return Ok(
        CanonicalTask(
            source_id=source_id,
            title=title,
            description=_clean_html(doc.get("description")),
            due_at=_parse_datetime(doc.get("dueDate")),
            is_completed=bool(doc.get("isCompleted")) or status == "completed",
            job_source_id=_clean(doc.get("jobId")),
        )
    )


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------

NORMALIZERS: dict[tuple[MigrationSource, str], Callable[[dict[str, Any]], NormalizeResult]] = {
    (MigrationSource.jobnimbus, "contacts"): map_jobnimbus_contact,
    (MigrationSource.jobnimbus, "jobs"): map_jobnimbus_job,
    (MigrationSource.jobnimbus, "documents"): map_jobnimbus_file,
    (MigrationSource.jobnimbus, "tasks"): map_jobnimbus_task,
    (MigrationSource.acculynx, "contacts"): map_acculynx_contact,
    (MigrationSource.acculynx, "jobs"): map_acculynx_job,
    (MigrationSource.acculynx, "documents"): map_acculynx_document,
    (MigrationSource.acculynx, "tasks"): map_acculynx_task,
}


def normalize_record(source: MigrationSource, entity_type: str, record: Any) -> NormalizeResult:
    if not isinstance(record, dict):
        return _error(entity_type, None, "record", "not an object")
    mapper = NORMALIZERS[(source, entity_type)]
    try:
        return mapper(record)
    except (TypeError, ValueError, AttributeError) as exc:
        source_id = record.get("jnid") or record.get("id")
        logger.warning(
            "migration_normalize_unexpected entity=%s source_id=%s error=%s", entity_type, source_id, exc
        )
        return _error(entity_type, str(source_id) if source_id else None, "record", f"unparseable: {exc}")
