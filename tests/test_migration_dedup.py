"""Tests for duplicate detection and the sampled preflight estimate."""

import uuid
from datetime import UTC, datetime, timedelta

from app.models.migration import MigrationSource
from app.models.records import CrmContact, CrmJob
from app.services.migrations.dedup import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    DuplicateDetector,
    SimulatedIndex,
    TenantIndex,
    estimate_contact_duplicates,
    extrapolate,
)
from app.services.migrations.normalizers import map_jobnimbus_contact, map_jobnimbus_job
from app.services.migrations.repositories import ContactRepository
from tests.factories import jn_contact, jn_job


def _native_contact(db, org_id, email=None, phone_digits=None, updated_at=None, name="Native"):
    contact = CrmContact(org_id=org_id, name=name, email=email, phone_digits=phone_digits)
    if updated_at is not None:
        contact.updated_at = updated_at
    db.add(contact)
    db.commit()
    return contact


def _detector(db, org_id):
    return DuplicateDetector(TenantIndex(db, org_id, MigrationSource.jobnimbus))


class TestExtrapolate:
    def test_scales_sample_rate_to_total(self):
        assert extrapolate(2, 5, 500) == 200

    def test_rounds_half_up(self):
        assert extrapolate(1, 4, 2) == 1
        assert extrapolate(1, 8, 4) == 1
        assert extrapolate(1, 3, 10) == 3

    def test_empty_sample_or_dataset(self):
        assert extrapolate(0, 0, 100) == 0
        assert extrapolate(3, 5, 0) == 0


class TestResolve:
    def test_new_record_is_created(self, db_session, org_id):
        record = map_jobnimbus_contact(jn_contact(1)).value
        assert _detector(db_session, org_id).resolve(record).action == ACTION_CREATE

    def test_email_match_updates_existing(self, db_session, org_id):
        native = _native_contact(db_session, org_id, email="contact1@example.com")
        record = map_jobnimbus_contact(jn_contact(1)).value

        resolution = _detector(db_session, org_id).resolve(record)

        assert resolution.action == ACTION_UPDATE
        assert resolution.existing_id == native.id
        assert resolution.match.matched_on == "email"
        assert resolution.match.confidence == 0.95

    def test_phone_match_when_email_differs(self, db_session, org_id):
        native = _native_contact(db_session, org_id, email="other@example.com", phone_digits="5550100001")
        record = map_jobnimbus_contact(jn_contact(1)).value

        resolution = _detector(db_session, org_id).resolve(record)

        assert resolution.existing_id == native.id
        assert resolution.match.matched_on == "phone"

    def test_email_wins_over_phone(self, db_session, org_id):
        by_phone = _native_contact(db_session, org_id, phone_digits="5550100001")
        by_email = _native_contact(db_session, org_id, email="contact1@example.com")
        record = map_jobnimbus_contact(jn_contact(1)).value

        resolution = _detector(db_session, org_id).resolve(record)

        assert resolution.existing_id == by_email.id
        assert resolution.existing_id != by_phone.id

    def test_job_matches_on_address(self, db_session, org_id):
        record = map_jobnimbus_job(jn_job(12)).value
        existing = CrmJob(org_id=org_id, name="Native job", address_fingerprint=record.address_fingerprint)
        db_session.add(existing)
        db_session.commit()

        resolution = _detector(db_session, org_id).resolve(record)

        assert resolution.action == ACTION_UPDATE
        assert resolution.match.matched_on == "address"

    def test_unchanged_imported_record_is_skipped(self, db_session, org_id):
        record = map_jobnimbus_contact(jn_contact(1)).value
        ContactRepository(db_session).upsert_by_external_id(org_id, MigrationSource.jobnimbus, record)
        db_session.commit()

        resolution = _detector(db_session, org_id).resolve(record)
        changed = map_jobnimbus_contact(jn_contact(1, city="Dallas")).value

        assert resolution.action == ACTION_SKIP
        assert _detector(db_session, org_id).resolve(changed).action == ACTION_UPDATE

    def test_tie_picks_most_recently_updated(self, db_session, org_id):
        now = datetime.now(UTC)
        _native_contact(db_session, org_id, email="contact1@example.com", updated_at=now - timedelta(days=2))
        newest = _native_contact(db_session, org_id, email="contact1@example.com", updated_at=now)
        record = map_jobnimbus_contact(jn_contact(1)).value

        resolution = _detector(db_session, org_id).resolve(record)

        assert resolution.existing_id == newest.id
        assert "matched 2 existing records by email" in resolution.tie_warning

    def test_other_tenants_are_ignored(self, db_session, org_id):
        _native_contact(db_session, uuid.uuid4(), email="contact1@example.com")
        record = map_jobnimbus_contact(jn_contact(1)).value

        assert _detector(db_session, org_id).resolve(record).action == ACTION_CREATE


class TestSimulatedIndex:
    def test_sees_its_own_would_be_creates(self, db_session, org_id):
        index = SimulatedIndex(TenantIndex(db_session, org_id, MigrationSource.jobnimbus))
        detector = DuplicateDetector(index)
        first = map_jobnimbus_contact(jn_contact(1)).value
        second = map_jobnimbus_contact(jn_contact(2, email="contact1@example.com")).value

        resolution = detector.resolve(first)
        index.apply(first, resolution)

        assert resolution.action == ACTION_CREATE
        assert detector.resolve(second).action == ACTION_UPDATE
        assert detector.resolve(first).action == ACTION_SKIP
        assert db_session.query(CrmContact).count() == 0


def test_estimate_contact_duplicates(db_session, org_id):
    _native_contact(db_session, org_id, email="contact1@example.com")
    _native_contact(db_session, org_id, email="contact2@example.com", phone_digits="5550100002")
    sample = [jn_contact(i) for i in range(1, 6)]

    estimate = estimate_contact_duplicates(
        ContactRepository(db_session), org_id, MigrationSource.jobnimbus, sample, 500
    )

    assert estimate.sample_size == 5
    assert estimate.sample_email_matches == 2
    assert estimate.sample_phone_matches == 1
    assert estimate.email_matches == 200
    assert estimate.phone_matches == 100
    assert estimate.estimated is True
