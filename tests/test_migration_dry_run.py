"""Tests for the dry-run simulation."""

import pytest

from app.models.migration import MigrationStage
from app.models.records import CrmContact, CrmDocument, CrmJob, CrmTask
from app.services.migrations import dry_run
from app.services.migrations.dry_run import (
    DryRunResult,
    DryRunSimulator,
    EntityTally,
    build_recommendations,
    run_dry_run,
)
from app.services.migrations.errors import JobConflictError
from tests.factories import create_job, jn_contact, jn_job


def _tenant_record_count(db):
    return sum(db.query(model).count() for model in (CrmContact, CrmJob, CrmDocument, CrmTask))


class TestRunDryRun:
    def test_tallies_without_writing(self, db_session, org_id, make_fake_api, jobnimbus_data):
        job = create_job(db_session, org_id)
        fake = make_fake_api(data=jobnimbus_data)

        result = run_dry_run(db_session, job, fake.client())

        assert result.success is True
        assert result.entities["contacts"].total == 5
        assert result.entities["contacts"].create == 5
        assert result.entities["jobs"].create == 3
        assert result.summary()["total_records"] == 12
        assert result.summary()["to_create"] == 12
        assert _tenant_record_count(db_session) == 0
        assert job.stage == MigrationStage.dry_run
        assert job.dry_run_summary["summary"]["to_create"] == 12

    def test_duplicate_within_dataset_is_create_then_update(self, db_session, org_id, make_fake_api):
        job = create_job(db_session, org_id, options={"skip_jobs": True, "skip_documents": True, "skip_tasks": True})
        fake = make_fake_api(
            data={"contacts": [jn_contact(1), jn_contact(2, email="contact1@example.com")]}
        )

        result = run_dry_run(db_session, job, fake.client())

        assert result.entities["contacts"].create == 1
        assert result.entities["contacts"].update == 1
        assert result.duplicates_found == 1
        assert result.duplicates[0]["external_id"] == "c2"
        assert result.duplicates[0]["matched_on"] == "email"

    def test_existing_tenant_contact_is_updated(self, db_session, org_id, make_fake_api):
        native = CrmContact(org_id=org_id, name="Native", email="contact3@example.com")
        db_session.add(native)
        db_session.commit()
        job = create_job(db_session, org_id, options={"skip_jobs": True, "skip_documents": True, "skip_tasks": True})
        fake = make_fake_api(data={"contacts": [jn_contact(i) for i in range(1, 4)]})

        result = run_dry_run(db_session, job, fake.client())

        assert result.entities["contacts"].update == 1
        assert result.duplicates[0]["matched_internal_id"] == str(native.id)
        assert db_session.get(CrmContact, native.id).name == "Native"

    def test_validation_errors_are_reported(self, db_session, org_id, make_fake_api):
        job = create_job(db_session, org_id, options={"skip_jobs": True, "skip_documents": True, "skip_tasks": True})
        broken = jn_contact(2, first_name=None, last_name=None, email=None)
        fake = make_fake_api(data={"contacts": [jn_contact(1), broken]})

        result = run_dry_run(db_session, job, fake.client())

        assert result.entities["contacts"].failed == 1
        assert result.validation_error_count == 1
        assert result.validation_errors == [
            {"type": "contacts", "external_id": "c2", "field": "name", "error": "missing name and email"}
        ]

    def test_skip_options_are_merged_and_honoured(self, db_session, org_id, make_fake_api, jobnimbus_data):
        job = create_job(db_session, org_id)
        fake = make_fake_api(data=jobnimbus_data)

        result = run_dry_run(db_session, job, fake.client(), {"skip_documents": True, "skip_tasks": True})

        assert result.entities["documents"].skipped_by_option is True
        assert result.entities["documents"].total == 0
        assert not any(path == "/files" for path, _ in fake.calls)
        assert job.options["skip_documents"] is True

    def test_sample_mappings(self, db_session, org_id, make_fake_api, jobnimbus_data):
        job = create_job(db_session, org_id)
        fake = make_fake_api(data=jobnimbus_data)

        result = run_dry_run(db_session, job, fake.client())

        contact_samples = [m for m in result.sample_mappings if m["type"] == "contacts"]
        job_samples = [m for m in result.sample_mappings if m["type"] == "jobs"]
        assert len(contact_samples) == 5
        assert len(job_samples) == 3
        assert contact_samples[0]["internal"]["id"] == "(will be generated)"
        assert contact_samples[0]["internal"]["source_id"] == "c1"
        assert "date_updated" not in contact_samples[0]["external"]

    def test_page_failure_counts_expected_records(self, db_session, org_id, make_fake_api):
        job = create_job(db_session, org_id, options={"skip_jobs": True, "skip_documents": True, "skip_tasks": True})
        fake = make_fake_api(data={"contacts": [jn_contact(i) for i in range(1, 6)]})
        fake.fail[("/contacts", 2)] = 500

        result = DryRunSimulator(db_session, job, fake.client(), page_size=2).run()

        assert result.entities["contacts"].create == 3
        assert result.entities["contacts"].failed == 2
        assert result.page_errors[0]["page"] == 2
        assert result.page_errors[0]["expected_records"] == 2

    def test_unreadable_first_page_fails_the_dry_run(self, db_session, org_id, make_fake_api, jobnimbus_data):
        job = create_job(db_session, org_id)
        fake = make_fake_api(data=jobnimbus_data)
        fake.fail[("/contacts", 1)] = 503

        result = run_dry_run(db_session, job, fake.client())

        assert result.success is False
        assert "Cannot size contacts" in result.error
        assert job.stage == MigrationStage.preflight
        assert job.dry_run_summary["success"] is False

    def test_malformed_first_page_fails_the_dry_run(self, db_session, org_id, make_fake_api):
        job = create_job(db_session, org_id, options={"skip_jobs": True, "skip_documents": True, "skip_tasks": True})
        fake = make_fake_api()
        fake.payloads[("/contacts", 1)] = {"count": 3, "results": 5}

        result = run_dry_run(db_session, job, fake.client())

        assert result.success is False
        assert "expected a list" in result.error

    def test_tie_warnings_are_capped(self, db_session, org_id, make_fake_api, monkeypatch):
        monkeypatch.setattr(dry_run, "MAX_WARNINGS", 2)
        for idx in range(1, 4):
            for twin in ("A", "B"):
                db_session.add(CrmContact(org_id=org_id, name=f"Twin {twin}{idx}", email=f"contact{idx}@example.com"))
        db_session.commit()
        job = create_job(db_session, org_id, options={"skip_jobs": True, "skip_documents": True, "skip_tasks": True})
        fake = make_fake_api(data={"contacts": [jn_contact(i) for i in range(1, 4)]})

        result = run_dry_run(db_session, job, fake.client())

        assert result.entities["contacts"].update == 3
        assert len(result.warnings) == 2
        assert len(job.dry_run_summary["warnings"]) == 2

    def test_auth_failure_keeps_stage(self, db_session, org_id, make_fake_api, jobnimbus_data):
        job = create_job(db_session, org_id)
        fake = make_fake_api(data=jobnimbus_data)
        fake.auth_status = 403

        result = run_dry_run(db_session, job, fake.client())

        assert result.success is False
        assert "403" in result.error
        assert job.stage == MigrationStage.preflight
        assert job.dry_run_summary["success"] is False

    def test_can_be_repeated(self, db_session, org_id, make_fake_api, jobnimbus_data):
        job = create_job(db_session, org_id)
        fake = make_fake_api(data=jobnimbus_data)

        run_dry_run(db_session, job, fake.client())
        result = run_dry_run(db_session, job, fake.client())

        assert result.summary()["to_create"] == 12
        assert job.stage == MigrationStage.dry_run

    def test_rejects_jobs_outside_preflight_or_dry_run(self, db_session, org_id, make_fake_api):
        job = create_job(db_session, org_id, stage=MigrationStage.pending)

        with pytest.raises(JobConflictError):
            run_dry_run(db_session, job, make_fake_api().client())


class TestRecommendations:
    def test_high_duplicate_rate(self):
        result = DryRunResult(job_id=None)
        result.entities["contacts"] = EntityTally(total=10, create=5, update=5)

        recommendations = build_recommendations(result)

        assert recommendations[0].startswith("High duplicate rate (50%)")

    def test_large_lists_and_validation_issues(self):
        result = DryRunResult(job_id=None, validation_error_count=11)
        result.entities["contacts"] = EntityTally(total=5_001, create=5_001)
        result.entities["documents"] = EntityTally(total=1_001, create=1_001)

        recommendations = build_recommendations(result)

        assert "Large contact list. Consider importing outside business hours." in recommendations
        assert "11 records have validation issues. Review before importing." in recommendations
        assert "Many documents to import. Document migration may take significant time." in recommendations
        assert not any(r.startswith("High duplicate rate") for r in recommendations)

    def test_clean_dataset_has_no_recommendations(self):
        result = DryRunResult(job_id=None)
        result.entities["contacts"] = EntityTally(total=10, create=10)
        assert build_recommendations(result) == []
