"""Tests for the JobNimbus and AccuLynx source clients."""

import uuid

import httpx
import pytest

from app.models.migration import MigrationSource
from app.services.migrations.clients import (
    AccuLynxClient,
    JobNimbusClient,
    SourceCredentials,
    build_source_client,
    mask_secret,
)
from app.services.migrations.errors import SourceAuthError, SourceClientError, SourceTransientError
from app.services.migrations.rate_limit import RateLimiterRegistry


def _jobnimbus(handler, sleeps=None, **kwargs):
    return JobNimbusClient(
        base_url="https://jobnimbus.test/api1",
        credentials=SourceCredentials(api_key="jn-secret-key-0001"),
        transport=httpx.MockTransport(handler),
        retry_base_delay=0.5,
        sleep=(sleeps.append if sleeps is not None else lambda _s: None),
        **kwargs,
    )


def _ok(request):
    return httpx.Response(200, json={"count": 1, "results": [{"jnid": "c1"}]})


class TestRetries:
    def test_server_errors_exhaust_retries(self):
        calls = []
        sleeps = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"error": "boom"})

        client = _jobnimbus(handler, sleeps)
        with pytest.raises(SourceTransientError) as exc:
            client.list_contacts(1, 10)

        assert len(calls) == 4
        assert sleeps == [0.5, 1.0, 2.0]
        assert exc.value.status_code == 500

    def test_recovers_after_transient_failure(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"count": 2, "results": [{}, {}]})])
        client = _jobnimbus(lambda request: next(responses))

        page = client.list_contacts(1, 10)

        assert page.total_count == 2
        assert len(page.data) == 2

    def test_retry_after_header_extends_backoff(self):
        sleeps = []
        responses = iter(
            [
                httpx.Response(429, headers={"Retry-After": "7"}),
                httpx.Response(200, json={"count": 0, "results": []}),
            ]
        )
        client = _jobnimbus(lambda request: next(responses), sleeps)

        client.list_jobs(1, 10)

        assert sleeps == [7.0]

    def test_timeouts_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ReadTimeout("slow", request=request)
            return _ok(request)

        client = _jobnimbus(handler)
        assert client.list_contacts(1, 10).total_count == 1
        assert len(attempts) == 3

    def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad filter")

        client = _jobnimbus(handler)
        with pytest.raises(SourceClientError) as exc:
            client.list_contacts(1, 10)

        assert not isinstance(exc.value, SourceTransientError)
        assert len(calls) == 1

    def test_auth_errors_raise_immediately(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        client = _jobnimbus(handler)
        with pytest.raises(SourceAuthError):
            client.list_tasks(1, 10)
        assert len(calls) == 1

    def test_rate_limiter_is_consulted_per_attempt(self):
        class CountingBucket:
            acquired = 0

            def acquire(self, tokens=1):
                self.acquired += tokens
                return 0.0

        bucket = CountingBucket()
        responses = iter([httpx.Response(500), _ok(None)])
        client = _jobnimbus(lambda request: next(responses), rate_limiter=bucket)

        client.list_contacts(1, 10)

        assert bucket.acquired == 2


class TestValidateCredentials:
    def test_rejected_credentials_return_not_ok(self):
        client = _jobnimbus(lambda request: httpx.Response(401))

        result = client.validate_credentials()

        assert result.ok is False
        assert "Authentication failed (401)" in result.error

    def test_valid_credentials(self):
        client = _jobnimbus(_ok)
        assert client.validate_credentials().ok is True

    def test_unreachable_source_returns_not_ok(self):
        client = _jobnimbus(lambda request: httpx.Response(502))

        result = client.validate_credentials()

        assert result.ok is False
        assert "failed after 4 attempts" in result.error


class TestPagination:
    def test_jobnimbus_offsets_and_auth_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"count": 30, "results": []})

        client = _jobnimbus(handler)
        client.list_documents(3, 10)

        request = seen[0]
        assert request.url.path == "/api1/files"
        assert request.url.params["size"] == "10"
        assert request.url.params["from"] == "20"
        assert request.headers["Authorization"] == "Bearer jn-secret-key-0001"

    def test_acculynx_page_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"totalCount": 42, "items": [{"id": "a"}]})

        client = AccuLynxClient(
            base_url="https://acculynx.test/api/v2",
            credentials=SourceCredentials(access_token="al-token-abcdef"),
            transport=httpx.MockTransport(handler),
        )
        page = client.list_jobs(2, 25)

        assert page.total_count == 42
        assert page.data == [{"id": "a"}]
        assert seen[0].url.params["pageSize"] == "25"
        assert seen[0].url.params["pageStartIndex"] == "25"
        assert seen[0].headers["Authorization"] == "Bearer al-token-abcdef"

    def test_missing_results_is_a_client_error(self):
        client = _jobnimbus(lambda request: httpx.Response(200, json={"count": 3}))
        with pytest.raises(SourceClientError):
            client.list_contacts(1, 10)

    def test_non_list_results_is_a_client_error(self):
        client = _jobnimbus(lambda request: httpx.Response(200, json={"count": 3, "results": 5}))
        with pytest.raises(SourceClientError) as exc:
            client.list_contacts(1, 10)
        assert "'results' is int" in exc.value.message

    def test_acculynx_non_list_items_is_a_client_error(self):
        client = AccuLynxClient(
            base_url="https://acculynx.test/api/v2",
            credentials=SourceCredentials(api_key="al-key-abcdef"),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"items": "none"})),
        )
        with pytest.raises(SourceClientError):
            client.list_tasks(1, 10)

    def test_non_list_results_fail_credential_validation(self):
        client = _jobnimbus(lambda request: httpx.Response(200, json={"results": {"jnid": "c1"}}))

        result = client.validate_credentials()

        assert result.ok is False
        assert "expected a list" in result.error

    def test_invalid_json_is_a_client_error(self):
        client = _jobnimbus(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(SourceClientError):
            client.list_contacts(1, 10)

    def test_rejects_bad_arguments(self):
        client = _jobnimbus(_ok)
        with pytest.raises(ValueError):
            client.list_page("invoices", 1, 10)
        with pytest.raises(ValueError):
            client.list_contacts(0, 10)


def test_strip_volatile_drops_internal_fields():
    client = _jobnimbus(_ok)
    record = {"jnid": "c1", "first_name": "Ann", "date_updated": 1, "recid": 9, "_internal": True}

    assert client.strip_volatile(record) == {"jnid": "c1", "first_name": "Ann"}


def test_preview_sample_skips_non_object_records():
    client = _jobnimbus(_ok)
    records = ["a", {"jnid": "c1", "recid": 1}, None, 3, {"jnid": "c2"}, {"jnid": "c3"}]

    assert client.preview_sample(records, 2) == [{"jnid": "c1"}, {"jnid": "c2"}]


def test_mask_secret():
    assert mask_secret("abcdefghijkl") == "abcd...ijkl"
    assert mask_secret("short") == "****"
    assert mask_secret(None) == "<none>"
    assert SourceCredentials(api_key="key-1", access_token="token-abcdefgh").masked() == "toke...efgh"


def test_build_source_client_shares_bucket_per_org_and_source():
    registry = RateLimiterRegistry(rate=5, capacity=5)
    org_a = uuid.uuid4()
    org_b = uuid.uuid4()
    credentials = SourceCredentials(api_key="test-api-key-123456")

    first = build_source_client(MigrationSource.jobnimbus, credentials, org_a, rate_limiters=registry)
    second = build_source_client(MigrationSource.jobnimbus, credentials, org_a, rate_limiters=registry)
    other_org = build_source_client(MigrationSource.jobnimbus, credentials, org_b, rate_limiters=registry)
    other_source = build_source_client(MigrationSource.acculynx, credentials, org_a, rate_limiters=registry)

    assert isinstance(first, JobNimbusClient)
    assert isinstance(other_source, AccuLynxClient)
    assert first.rate_limiter is second.rate_limiter
    assert first.rate_limiter is not other_org.rate_limiter
    assert first.rate_limiter is not other_source.rate_limiter
