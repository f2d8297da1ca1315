"""Shared builders for migration tests: a fake source CRM API and record factories."""

from collections.abc import Callable
from typing import Any

import httpx

from app.models.migration import MigrationSource, MigrationStage
from app.services.migrations.clients import AccuLynxClient, JobNimbusClient, SourceCredentials
from app.services.migrations.jobs import MigrationJobs

TEST_CREDENTIALS = SourceCredentials(api_key="test-api-key-123456")


class FakeSourceAPI:
    """In-memory JobNimbus/AccuLynx API served through httpx.MockTransport.

    ``fail`` maps (path, page) to a status code returned for that page;
    ``payloads`` maps (path, page) to a raw JSON body served with a 200;
    ``calls`` records every (path, page) requested.
    """

    def __init__(self, source: MigrationSource, data: dict[str, list[dict]] | None = None):
        self.source = source
        self.data = data or {}
        self.fail: dict[tuple[str, int], int] = {}
        self.payloads: dict[tuple[str, int], Any] = {}
        self.auth_status: int | None = None
        self.calls: list[tuple[str, int]] = []
        self.on_request: Callable[[str, int], None] | None = None

    @property
    def paths(self) -> dict[str, str]:
        client_cls = JobNimbusClient if self.source == MigrationSource.jobnimbus else AccuLynxClient
        return {path: entity for entity, path in client_cls.ENDPOINTS.items()}

    def _page(self, request: httpx.Request) -> tuple[int, int]:
        params = request.url.params
        if self.source == MigrationSource.jobnimbus:
            size = int(params["size"])
            offset = int(params["from"])
        else:
            size = int(params["pageSize"])
            offset = int(params["pageStartIndex"])
        return offset, size

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.rsplit("/", 1)[-1]
        path = f"/{path}"
        offset, size = self._page(request)
        page = offset // size + 1
        self.calls.append((path, page))
        if self.on_request is not None:
            self.on_request(path, page)
        if self.auth_status is not None:
            return httpx.Response(self.auth_status, json={"error": "unauthorized"})
        if (path, page) in self.fail:
            return httpx.Response(self.fail[(path, page)], json={"error": "boom"})
        if (path, page) in self.payloads:
            return httpx.Response(200, json=self.payloads[(path, page)])

        records = self.data.get(self.paths.get(path, ""), [])
        chunk = records[offset : offset + size]
        if self.source == MigrationSource.jobnimbus:
            return httpx.Response(200, json={"count": len(records), "results": chunk})
        return httpx.Response(200, json={"count": len(records), "items": chunk})

    def client(self, **kwargs):
        client_cls = JobNimbusClient if self.source == MigrationSource.jobnimbus else AccuLynxClient
        base_url = "https://jobnimbus.test/api1" if self.source == MigrationSource.jobnimbus else "https://acculynx.test/api/v2"
        kwargs.setdefault("retry_base_delay", 0)
        kwargs.setdefault("sleep", lambda _seconds: None)
        return client_cls(
            base_url=base_url,
            credentials=TEST_CREDENTIALS,
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


def jn_contact(idx: int, **overrides) -> dict:
    record = {
        "jnid": f"c{idx}",
        "first_name": f"First{idx}",
        "last_name": f"Last{idx}",
        "email": f"contact{idx}@example.com",
        "mobile_phone": f"555-010-{idx:04d}",
        "address_line1": f"{idx} Main Street",
        "city": "Austin",
        "state_text": "TX",
        "zip": "78701",
        "date_updated": 1700000000 + idx,
    }
    record.update(overrides)
    return record


def jn_job(idx: int, contact_idx: int | None = None, **overrides) -> dict:
    record = {
        "jnid": f"j{idx}",
        "name": f"Roof job {idx}",
        "status_name": "In Progress",
        "address_line1": f"{idx} Oak Avenue",
        "zip": "78702",
        "description": "Replace shingles",
    }
    if contact_idx is not None:
        record["primary"] = {"id": f"c{contact_idx}"}
    record.update(overrides)
    return record


def jn_file(idx: int, job_idx: int | None = None, **overrides) -> dict:
    record = {
        "jnid": f"f{idx}",
        "filename": f"photo-{idx}.jpg",
        "content_type": "image/jpeg",
        "size": 1024 * idx,
    }
    if job_idx is not None:
        record["related"] = [{"type": "job", "id": f"j{job_idx}"}]
    record.update(overrides)
    return record


def jn_task(idx: int, job_idx: int | None = None, **overrides) -> dict:
    record = {
        "jnid": f"t{idx}",
        "title": f"Inspect roof {idx}",
        "date_end": 1700000000,
        "is_completed": False,
    }
    if job_idx is not None:
        record["related"] = [{"type": "job", "id": f"j{job_idx}"}]
    record.update(overrides)
    return record


def create_job(
    db,
    org_id,
    stage: MigrationStage = MigrationStage.preflight,
    source: MigrationSource = MigrationSource.jobnimbus,
    options: dict | None = None,
):
    """Create a job and advance it to ``stage`` (pending, preflight or executing)."""
    job = MigrationJobs.create(db, org_id, source, TEST_CREDENTIALS, options=options)
    if stage == MigrationStage.pending:
        return job
    MigrationJobs.transition(job, MigrationStage.preflight)
    db.commit()
    if stage == MigrationStage.executing:
        job = MigrationJobs.begin_execution(db, job)
    return job
