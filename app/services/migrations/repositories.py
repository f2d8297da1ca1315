"""Typed per-entity repositories for canonical tenant records.

All writes key on ``(org_id, source, source_id)``.  Lookups used for
duplicate matching return every candidate ordered most-recently-updated
first so callers can detect ties.
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy.orm import Session

from app.models.migration import MigrationSource
from app.models.records import CrmContact, CrmDocument, CrmJob, CrmTask
from app.services.migrations.normalizers import (
    CanonicalDocument,
    CanonicalJob,
    CanonicalRecord,
    CanonicalTask,
)

ModelT = TypeVar("ModelT", CrmContact, CrmJob, CrmDocument, CrmTask)

MATCH_CANDIDATE_LIMIT = 5


class RecordRepository(Generic[ModelT]):
    model: ClassVar[type]
    entity_type: ClassVar[str]

    def __init__(self, db: Session):
        self.db = db

    def get(self, record_id: uuid.UUID) -> ModelT | None:
        return self.db.get(self.model, record_id)

    def get_by_external_id(self, org_id: uuid.UUID, source: MigrationSource, source_id: str) -> ModelT | None:
        return (
            self.db.query(self.model)
            .filter(self.model.org_id == org_id)
            .filter(self.model.source == source)
            .filter(self.model.source_id == source_id)
            .first()
        )

    def count(self, org_id: uuid.UUID) -> int:
        return self.db.query(self.model).filter(self.model.org_id == org_id).count()

    def _candidates(self, org_id: uuid.UUID, column, value: Any) -> list[ModelT]:
        if not value:
            return []
        return (
            self.db.query(self.model)
            .filter(self.model.org_id == org_id)
            .filter(column == value)
            .order_by(self.model.updated_at.desc())
            .limit(MATCH_CANDIDATE_LIMIT)
            .all()
        )

    def _link_fields(self, org_id: uuid.UUID, source: MigrationSource, record: CanonicalRecord) -> dict[str, Any]:
        return {}

    def upsert_by_external_id(
        self,
        org_id: uuid.UUID,
        source: MigrationSource,
        record: CanonicalRecord,
        existing_id: uuid.UUID | None = None,
    ) -> tuple[ModelT, bool]:
        """Insert or update the record for ``(org_id, source, record.source_id)``.

        ``existing_id`` points at a tenant record matched by the duplicate
        detector; it is updated in place and, when it is not yet linked to a
        source record, adopts this record's source id.

        Returns (model, created).
        """
        fields = {**record.to_fields(), **self._link_fields(org_id, source, record)}
        instance = self.get_by_external_id(org_id, source, record.source_id)
        if instance is None and existing_id is not None:
            instance = self.get(existing_id)

        created = instance is None
        if created:
            instance = self.model(org_id=org_id, source=source, source_id=record.source_id)
            self.db.add(instance)
        elif instance.source_id is None:
            instance.source = source
            instance.source_id = record.source_id

        for key, value in fields.items():
            setattr(instance, key, value)
        if instance.source_id == record.source_id and instance.source == source:
            instance.source_hash = record.fingerprint()
        self.db.flush()
        return instance, created


class ContactRepository(RecordRepository[CrmContact]):
    model = CrmContact
    entity_type = "contacts"

    def find_by_email(self, org_id: uuid.UUID, email: str | None) -> list[CrmContact]:
        return self._candidates(org_id, CrmContact.email, email.lower() if email else None)

    def find_by_phone(self, org_id: uuid.UUID, digits: str | None) -> list[CrmContact]:
        return self._candidates(org_id, CrmContact.phone_digits, digits)

    def email_exists(self, org_id: uuid.UUID, email: str | None) -> bool:
        return bool(self.find_by_email(org_id, email))

    def phone_exists(self, org_id: uuid.UUID, digits: str | None) -> bool:
        return bool(self.find_by_phone(org_id, digits))


class JobRepository(RecordRepository[CrmJob]):
    model = CrmJob
    entity_type = "jobs"

    def find_by_address(self, org_id: uuid.UUID, fingerprint: str | None) -> list[CrmJob]:
        return self._candidates(org_id, CrmJob.address_fingerprint, fingerprint)

    def _link_fields(self, org_id, source, record: CanonicalJob) -> dict[str, Any]:
        if not record.contact_source_id:
            return {"contact_id": None}
        contact = ContactRepository(self.db).get_by_external_id(org_id, source, record.contact_source_id)
        return {"contact_id": contact.id if contact else None}


class _JobLinkedRepository(RecordRepository[ModelT]):
    def _link_fields(self, org_id, source, record: CanonicalDocument | CanonicalTask) -> dict[str, Any]:
        if not record.job_source_id:
            return {"job_id": None}
        job = JobRepository(self.db).get_by_external_id(org_id, source, record.job_source_id)
        return {"job_id": job.id if job else None}


class DocumentRepository(_JobLinkedRepository[CrmDocument]):
    model = CrmDocument
    entity_type = "documents"


class TaskRepository(_JobLinkedRepository[CrmTask]):
    model = CrmTask
    entity_type = "tasks"


REPOSITORIES: dict[str, type[RecordRepository]] = {
    "contacts": ContactRepository,
    "jobs": JobRepository,
    "documents": DocumentRepository,
    "tasks": TaskRepository,
}


def repository_for(db: Session, entity_type: str) -> RecordRepository:
    return REPOSITORIES[entity_type](db)
