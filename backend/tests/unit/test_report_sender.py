"""
Unit tests for report generation and delivery.

The email provider is replaced with an httpx.MockTransport so the real
request shape is exercised without network access.
"""

import json
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from client_reporting.core.errors import APIException, ErrorCode
from client_reporting.core.pdf_token import decode_token
from client_reporting.schemas.tenants import SubscriptionStatus
from client_reporting.services.email_service import EmailDeliveryError, EmailService
from client_reporting.services.idempotency import IdempotencyLedger
from client_reporting.services.kv_store import StoreUnavailableError
from client_reporting.services.operation_guard import ReportSendGuard
from client_reporting.services.pdf_generator import ReportPdfGenerator
from client_reporting.services.rate_limiter import FixedWindowRateLimiter
from client_reporting.services.report_sender import ReportSender, build_email_html, parse_metrics
from client_reporting.services.signed_url import SignedUrlIssuer

SECRET = "unit-test-secret-for-report-sender-01"

METRICS = {
    "periodStart": "2024-01-01",
    "periodEnd": "2024-01-07",
    "sessions": 1200,
    "users": 950,
    "pageviews": 3400,
    "topPages": [{"path": "/menu", "pageviews": 800}],
}


class TestParseMetrics:
    def test_missing_metrics_is_none(self):
        assert parse_metrics({}) is None

    def test_camel_case_metrics(self):
        metrics = parse_metrics({"metrics": METRICS})
        assert metrics.sessions == 1200
        assert metrics.top_pages[0].path == "/menu"

    def test_invalid_metrics_rejected(self):
        with pytest.raises(APIException) as exc_info:
            parse_metrics({"metrics": {**METRICS, "sessions": -1}})
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
        assert "sessions" in exc_info.value.message


class TestPdfGenerator:
    def test_renders_pdf_with_and_without_metrics(self):
        generator = ReportPdfGenerator()
        generated_at = datetime(2024, 1, 8, tzinfo=timezone.utc)
        with_metrics = generator.generate("Acme", "Bakery", parse_metrics({"metrics": METRICS}), generated_at)
        without = generator.generate("Acme", "Bakery", None, generated_at)
        assert with_metrics.startswith(b"%PDF")
        assert without.startswith(b"%PDF")


class TestEmailHtml:
    def test_names_are_escaped(self):
        html = build_email_html("<Acme>", "Bob & Co", "https://x.example.com/r?token=a&b", None)
        assert "&lt;Acme&gt;" in html
        assert "Bob &amp; Co" in html
        assert "<Acme>" not in html


class TestEmailService:
    @pytest.mark.asyncio
    async def test_dev_mode_does_not_send(self):
        result = await EmailService(api_key="").send_report_email("a@bakeryco.com", "s", "<p>x</p>")
        assert result.dev_mode

    @pytest.mark.asyncio
    async def test_posts_to_provider(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg_123"})

        service = EmailService(
            api_key="re_test",
            from_address="reports@acmedigital.com",
            api_url="https://email.example.com/emails",
            transport=httpx.MockTransport(handler),
        )
        result = await service.send_report_email("owner@bakeryco.com", "Your report", "<p>hi</p>")

        assert result.message_id == "msg_123"
        assert seen[0].headers["Authorization"] == "Bearer re_test"
        body = json.loads(seen[0].content)
        assert body["to"] == ["owner@bakeryco.com"]
        assert body["subject"] == "Your report"

    @pytest.mark.asyncio
    async def test_provider_rejection_raises(self):
        service = EmailService(
            api_key="re_test",
            transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"error": "bad"})),
        )
        with pytest.raises(EmailDeliveryError):
            await service.send_report_email("owner@bakeryco.com", "s", "<p>x</p>")

    @pytest.mark.asyncio
    async def test_network_failure_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        service = EmailService(api_key="re_test", transport=httpx.MockTransport(handler))
        with pytest.raises(EmailDeliveryError):
            await service.send_report_email("owner@bakeryco.com", "s", "<p>x</p>")


class RecordingEmail(EmailService):
    def __init__(self):
        super().__init__(api_key="")
        self.sent = []

    async def send_report_email(self, to, subject, html_body):
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return await super().send_report_email(to, subject, html_body)


class TestReportSender:
    @pytest.mark.asyncio
    async def test_send_stores_pdf_and_emails_link(self, directory, artifacts, clock):
        agency, _ = await directory.create_agency("Acme", "billing@acmedigital.com", SubscriptionStatus.ACTIVE)
        client = await directory.create_client(agency.id, "Bakery", "owner@bakeryco.com")
        email = RecordingEmail()
        issuer = SignedUrlIssuer(directory, clock=clock, secret=SECRET, base_url="https://reports.example.com")
        sender = ReportSender(artifacts, issuer, directory, email=email, clock=clock)

        body = await sender.send(agency, client, parse_metrics({"metrics": METRICS}))

        assert set(body) == {"clientId", "reportId", "pdfKey", "filename", "sentAt"}
        assert body["pdfKey"] == f"reports/{agency.id}/{client.id}/{body['filename']}"
        assert (await artifacts.get(body["pdfKey"])).startswith(b"%PDF")

        assert len(email.sent) == 1
        assert email.sent[0]["to"] == "owner@bakeryco.com"
        link = email.sent[0]["html"].split('href="')[1].split('"')[0].replace("&amp;", "&")
        token = parse_qs(urlparse(link).query)["token"][0]
        payload = decode_token(token, SECRET, clock())
        assert payload.filename == body["filename"]
        assert payload.exp == int(clock()) + 3600

        assert (await directory.get_client(client.id)).last_report_sent_at is not None

    @pytest.mark.asyncio
    async def test_history_write_failure_does_not_resend(self, directory, artifacts, kv_store, clock, monkeypatch):
        agency, _ = await directory.create_agency("Acme", "billing@acmedigital.com", SubscriptionStatus.ACTIVE)
        client = await directory.create_client(agency.id, "Bakery", "owner@bakeryco.com")

        async def unavailable(record):
            raise StoreUnavailableError("put")

        monkeypatch.setattr(directory, "mark_report_sent", unavailable)
        email = RecordingEmail()
        issuer = SignedUrlIssuer(directory, clock=clock, secret=SECRET, base_url="https://reports.example.com")
        sender = ReportSender(artifacts, issuer, directory, email=email, clock=clock)
        guard = ReportSendGuard(
            IdempotencyLedger(kv_store, clock=clock),
            FixedWindowRateLimiter(kv_store, clock=clock),
            clock=clock,
        )

        first = await guard.execute(agency.id, client.id, "K1", {"a": 1}, lambda: sender.send(agency, client, None))
        second = await guard.execute(agency.id, client.id, "K1", {"a": 1}, lambda: sender.send(agency, client, None))

        assert first.replayed is False
        assert second.replayed is True
        assert second.body["reportId"] == first.body["reportId"]
        assert len(email.sent) == 1
