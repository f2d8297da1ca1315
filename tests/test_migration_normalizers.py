"""Tests for source record normalization."""

from datetime import UTC, datetime

from app.models.migration import MigrationSource
from app.models.records import JobStatus
from app.services.migrations.normalizers import (
    CanonicalContact,
    address_fingerprint,
    map_acculynx_contact,
    map_acculynx_document,
    map_acculynx_job,
    map_acculynx_task,
    map_job_status,
    map_jobnimbus_contact,
    map_jobnimbus_file,
    map_jobnimbus_job,
    map_jobnimbus_task,
    normalize_email,
    normalize_record,
    phone_digits,
)
from app.services.migrations.result import Err, Ok
from tests.factories import jn_contact, jn_job


class TestJobNimbusContact:
    def test_basic_contact(self):
        result = map_jobnimbus_contact(jn_contact(1, email="Contact1@Example.COM"))

        assert isinstance(result, Ok)
        contact = result.value
        assert contact.source_id == "c1"
        assert contact.name == "First1 Last1"
        assert contact.email == "contact1@example.com"
        assert contact.phone_digits == "5550100001"
        assert contact.state == "TX"
        assert contact.postal_code == "78701"

    def test_name_falls_back_to_display_name_then_company(self):
        doc = {"jnid": "c9", "display_name": "The Smiths", "company": "Smith Roofing"}
        assert map_jobnimbus_contact(doc).value.name == "The Smiths"

        doc = {"jnid": "c9", "company": "Smith Roofing"}
        assert map_jobnimbus_contact(doc).value.name == "Smith Roofing"

    def test_email_only_contact_uses_email_as_name(self):
        result = map_jobnimbus_contact({"jnid": "c9", "email": "solo@example.com"})
        assert result.value.name == "solo@example.com"

    def test_phone_precedence(self):
        doc = {"jnid": "c9", "first_name": "A", "work_phone": "(512) 555-0003", "home_phone": "512-555-0002"}
        contact = map_jobnimbus_contact(doc).value

        assert contact.phone == "512-555-0002"
        assert contact.phone_digits == "5125550002"

    def test_missing_name_and_email(self):
        result = map_jobnimbus_contact({"jnid": "c9", "email": "not-an-email"})

        assert isinstance(result, Err)
        assert result.error.field == "name"
        assert result.error.reason == "missing name and email"
        assert result.error.source_id == "c9"

    def test_missing_source_id(self):
        result = map_jobnimbus_contact({"first_name": "Ann"})

        assert isinstance(result, Err)
        assert result.error.field == "jnid"
        assert result.error.source_id is None


class TestJobNimbusJob:
    def test_job_links_primary_contact(self):
        job = map_jobnimbus_job(jn_job(1, contact_idx=4)).value

        assert job.contact_source_id == "c4"
        assert job.status == JobStatus.in_progress
        assert job.property_address == "1 Oak Avenue, 78702"
        assert job.address_fingerprint is not None

    def test_job_links_related_contact(self):
        doc = jn_job(2, related=[{"type": "contact", "id": "c7"}])
        assert map_jobnimbus_job(doc).value.contact_source_id == "c7"

    def test_description_html_is_stripped(self):
        doc = jn_job(3, description="<p>Replace <b>all</b> shingles</p>")
        assert map_jobnimbus_job(doc).value.description == "Replace all shingles"

    def test_job_without_name_or_address(self):
        result = map_jobnimbus_job({"jnid": "j9"})
        assert isinstance(result, Err)
        assert result.error.field == "name"


class TestJobNimbusFilesAndTasks:
    def test_file_links_related_job(self):
        doc = {"jnid": "f1", "filename": "roof.jpg", "size": "2048", "related": [{"type": "job", "id": "j1"}]}
        document = map_jobnimbus_file(doc).value

        assert document.file_name == "roof.jpg"
        assert document.size_bytes == 2048
        assert document.job_source_id == "j1"

    def test_file_requires_name(self):
        result = map_jobnimbus_file({"jnid": "f1"})
        assert isinstance(result, Err)
        assert result.error.field == "filename"

    def test_task_due_date_from_epoch(self):
        task = map_jobnimbus_task({"jnid": "t1", "title": "Inspect", "date_end": 1700000000}).value
        assert task.due_at == datetime.fromtimestamp(1700000000, tz=UTC)
        assert task.is_completed is False

    def test_task_requires_title(self):
        assert isinstance(map_jobnimbus_task({"jnid": "t1"}), Err)


class TestAccuLynx:
    def test_contact_prefers_primary_email_and_mobile(self):
        doc = {
            "id": "ac-1",
            "firstName": "Dana",
            "lastName": "Reyes",
            "emailAddresses": [
                {"address": "old@example.com", "isPrimary": False},
                {"address": "Dana@Example.com", "isPrimary": True},
            ],
            "phoneNumbers": [
                {"number": "512-555-1000", "type": "Office"},
                {"number": "512-555-2000", "type": "Cell"},
            ],
            "mailingAddress": {"street1": "9 Elm St", "city": "Austin", "state": "TX", "zipCode": "78703"},
        }
        contact = map_acculynx_contact(doc).value

        assert isinstance(contact, CanonicalContact)
        assert contact.email == "dana@example.com"
        assert contact.phone == "512-555-2000"
        assert contact.address_line1 == "9 Elm St"

    def test_contact_missing_name_and_email(self):
        result = map_acculynx_contact({"id": "ac-2", "emailAddresses": []})
        assert isinstance(result, Err)
        assert result.error.reason == "missing name and email"

    def test_job_milestone_and_primary_contact(self):
        doc = {
            "id": "aj-1",
            "jobName": "Reyes roof",
            "currentMilestone": "Invoiced",
            "locationAddress": {"street1": "9 Elm St", "zipCode": "78703"},
            "contacts": [{"id": "ac-9"}, {"id": "ac-1", "isPrimary": True}],
        }
        job = map_acculynx_job(doc).value

        assert job.status == JobStatus.completed
        assert job.contact_source_id == "ac-1"

    def test_document_and_task(self):
        document = map_acculynx_document({"id": "ad-1", "fileName": "estimate.pdf", "jobId": "aj-1"}).value
        task = map_acculynx_task(
            {"id": "at-1", "title": "Order materials", "status": "Completed", "dueDate": "2024-05-01T12:00:00Z"}
        ).value

        assert document.job_source_id == "aj-1"
        assert task.is_completed is True
        assert task.due_at == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class TestFieldHelpers:
    def test_phone_digits_keeps_last_ten(self):
        assert phone_digits("+1 (512) 555-0100") == "5125550100"
        assert phone_digits("555-0100") is None
        assert phone_digits(None) is None

    def test_normalize_email(self):
        assert normalize_email("  A@B.io ") == "a@b.io"
        assert normalize_email("nope") is None

    def test_address_fingerprint_ignores_case_and_punctuation(self):
        assert address_fingerprint("12 Oak Ave.", "78702-1234") == address_fingerprint("12 OAK AVE", "78702")
        assert address_fingerprint("Oak", "78702") is None

    def test_map_job_status_defaults_to_new(self):
        assert map_job_status("Lost") == JobStatus.cancelled
        assert map_job_status("Something custom") == JobStatus.new
        assert map_job_status(None) == JobStatus.new


def test_normalize_record_rejects_non_objects():
    result = normalize_record(MigrationSource.jobnimbus, "contacts", ["not", "a", "dict"])

    assert isinstance(result, Err)
    assert result.error.field == "record"


def test_fingerprint_is_stable_and_content_sensitive():
    first = map_jobnimbus_contact(jn_contact(1)).value
    again = map_jobnimbus_contact(jn_contact(1, date_updated=1800000000)).value
    changed = map_jobnimbus_contact(jn_contact(1, city="Dallas")).value

    assert first.fingerprint() == again.fingerprint()
    assert first.fingerprint() != changed.fingerprint()
