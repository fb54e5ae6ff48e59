"""
Integration tests for signed report links.

Issue a link through the API, then follow it through the public download
route, moving the shared clock to check expiry.
"""

import asyncio
from urllib.parse import urlparse

import pytest

from client_reporting.schemas.tenants import SubscriptionStatus
from client_reporting.services.artifact_store import report_key

PDF_BYTES = b"%PDF-1.4\n% test report\n"


@pytest.fixture
def stored_report(artifacts, agency, client_record) -> str:
    """A stored weekly.pdf for the seeded client; returns its filename."""
    asyncio.run(artifacts.put(report_key(agency.id, client_record.id, "weekly.pdf"), PDF_BYTES))
    return "weekly.pdf"


def _issue(client, auth_headers, client_id, filename, ttl=None):
    params = {"ttl": ttl} if ttl is not None else None
    return client.post(
        f"/api/v1/reports/{client_id}/{filename}/signed-url",
        headers=auth_headers,
        params=params,
    )


def _path_and_query(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.path}?{parsed.query}"


def _error_code(response) -> str:
    body = response.json()
    assert body["ok"] is False
    return body["error"]["code"]


class TestIssueEndpoint:
    def test_issue_returns_url_expiry_and_ttl(self, client, auth_headers, agency, client_record, clock):
        response = _issue(client, auth_headers, client_record.id, "weekly.pdf", ttl=120)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        data = body["data"]
        assert set(data) == {"url", "expiresAt", "ttl"}
        assert data["ttl"] == 120
        assert data["expiresAt"] == int(clock()) + 120
        assert data["url"].startswith(f"https://reports.test/reports/{agency.id}/{client_record.id}/weekly.pdf?token=")

    def test_ttl_above_cap_is_clamped(self, client, auth_headers, client_record, clock):
        data = _issue(client, auth_headers, client_record.id, "weekly.pdf", ttl=7200).json()["data"]
        assert data["ttl"] == 3600
        assert data["expiresAt"] <= clock() + 3600

    def test_default_ttl(self, client, auth_headers, client_record):
        assert _issue(client, auth_headers, client_record.id, "weekly.pdf").json()["data"]["ttl"] == 900

    @pytest.mark.parametrize("ttl", ["0", "-1", "abc", "1.5"])
    def test_invalid_ttl(self, client, auth_headers, client_record, ttl):
        response = _issue(client, auth_headers, client_record.id, "weekly.pdf", ttl=ttl)
        assert response.status_code == 400
        assert _error_code(response) == "INVALID_TTL"

    @pytest.mark.parametrize(
        "filename,code",
        [("notes.txt", "INVALID_FILE_TYPE"), ("a..b.pdf", "INVALID_FILENAME"), ("a b.pdf", "INVALID_FILENAME")],
    )
    def test_invalid_filename(self, client, auth_headers, client_record, filename, code):
        response = _issue(client, auth_headers, client_record.id, filename)
        assert response.status_code == 400
        assert _error_code(response) == code

    def test_unknown_client(self, client, auth_headers):
        response = _issue(client, auth_headers, "no-such-client", "weekly.pdf")
        assert response.status_code == 404
        assert _error_code(response) == "CLIENT_NOT_FOUND"

    def test_other_agencys_client(self, client, auth_headers, tenant):
        response = _issue(client, auth_headers, tenant["other_client"].id, "weekly.pdf")
        assert response.status_code == 403
        assert _error_code(response) == "UNAUTHORIZED"

    def test_missing_api_key(self, client, client_record):
        response = _issue(client, {}, client_record.id, "weekly.pdf")
        assert response.status_code == 401
        assert _error_code(response) == "MISSING_API_KEY"

    def test_unknown_api_key(self, client, client_record):
        response = _issue(client, {"x-api-key": "cr_unknown"}, client_record.id, "weekly.pdf")
        assert response.status_code == 401
        assert _error_code(response) == "INVALID_API_KEY"

    def test_inactive_subscription(self, client, directory):
        async def _seed():
            agency, api_key = await directory.create_agency(
                "Lapsed", "billing@lapsed.com", SubscriptionStatus.CANCELED
            )
            record = await directory.create_client(agency.id, "Shop", "owner@shop.com")
            return api_key, record

        api_key, record = asyncio.run(_seed())
        response = _issue(client, {"x-api-key": api_key}, record.id, "weekly.pdf")
        assert response.status_code == 402
        assert _error_code(response) == "SUBSCRIPTION_INACTIVE"


class TestDownload:
    def test_link_works_until_it_expires(self, client, auth_headers, client_record, stored_report, clock):
        url = _issue(client, auth_headers, client_record.id, stored_report, ttl=1).json()["data"]["url"]

        response = client.get(_path_and_query(url))
        assert response.status_code == 200
        assert response.content == PDF_BYTES
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["cache-control"] == "private, max-age=1"
        assert response.headers["referrer-policy"] == "no-referrer"

        clock.advance(2)

        expired = client.get(_path_and_query(url))
        assert expired.status_code == 403
        assert _error_code(expired) == "PDF_TOKEN_EXPIRED"

    def test_legacy_prefixed_route(self, client, auth_headers, client_record, stored_report):
        url = _issue(client, auth_headers, client_record.id, stored_report).json()["data"]["url"]
        legacy = _path_and_query(url).replace("/reports/", "/reports/reports/", 1)

        response = client.get(legacy)
        assert response.status_code == 200
        assert response.content == PDF_BYTES

    def test_missing_token(self, client, agency, client_record, stored_report):
        response = client.get(f"/reports/{agency.id}/{client_record.id}/{stored_report}")
        assert response.status_code == 401
        assert _error_code(response) == "PDF_TOKEN_REQUIRED"

    def test_tampered_token(self, client, auth_headers, client_record, stored_report):
        url = _issue(client, auth_headers, client_record.id, stored_report).json()["data"]["url"]
        last = url[-1]
        tampered = url[:-1] + ("A" if last != "A" else "B")

        response = client.get(_path_and_query(tampered))
        assert response.status_code == 403
        assert _error_code(response) == "PDF_TOKEN_INVALID"

    def test_token_for_another_file(self, client, auth_headers, agency, client_record, stored_report):
        url = _issue(client, auth_headers, client_record.id, stored_report).json()["data"]["url"]
        token = urlparse(url).query

        response = client.get(f"/reports/{agency.id}/{client_record.id}/monthly.pdf?{token}")
        assert response.status_code == 403
        assert _error_code(response) == "PDF_TOKEN_MISMATCH"

    def test_valid_token_for_missing_file(self, client, auth_headers, client_record):
        url = _issue(client, auth_headers, client_record.id, "never-rendered.pdf").json()["data"]["url"]

        response = client.get(_path_and_query(url))
        assert response.status_code == 404
        assert _error_code(response) == "PDF_NOT_FOUND"

    def test_bad_filename_in_path(self, client, agency, client_record):
        response = client.get(f"/reports/{agency.id}/{client_record.id}/notes.txt?token=abc.def")
        assert response.status_code == 400
        assert _error_code(response) == "INVALID_FILE_TYPE"


class TestResponseHeaders:
    def test_api_responses_are_not_cached(self, client, auth_headers, client_record):
        response = _issue(client, auth_headers, client_record.id, "weekly.pdf")
        assert "no-store" in response.headers["cache-control"]
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/v1/system/capabilities", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"

    def test_error_envelope_carries_request_id(self, client, agency, client_record):
        response = client.get(
            f"/reports/{agency.id}/{client_record.id}/weekly.pdf",
            headers={"X-Request-ID": "req-456"},
        )
        assert response.json()["error"]["request_id"] == "req-456"
