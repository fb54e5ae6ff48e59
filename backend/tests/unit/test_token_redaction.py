"""Unit tests for token redaction and structured security logging.

These tests verify that capability tokens in signed report URLs are
redacted from logs and error messages, so a log reader never holds a
working download link.
"""

import logging

from client_reporting.core.logging_config import SecurityEventFilter, format_security_event
from client_reporting.core.middleware import (
    REPORT_TOKEN_PATTERN,
    TOKEN_REDACTED,
    TokenRedactionFilter,
    is_report_download_path,
    redact_exception_args,
    redact_token,
)

TOKEN = "eyJhZ2VuY3lJZCI6IkExIn0.SflKxwRJSMeKKF2QT4fwpMeJf36POk6yJV_adQssw5c"


class TestRedactToken:
    """Tests for the redact_token function."""

    def test_redacts_token_in_report_url(self):
        """Should redact the token value and keep the path."""
        path = f"/reports/A1/C1/weekly.pdf?token={TOKEN}"
        result = redact_token(path)
        assert result == f"/reports/A1/C1/weekly.pdf?token={TOKEN_REDACTED}"

    def test_redacts_token_in_full_url(self):
        """Should redact tokens inside absolute URLs and surrounding text."""
        text = f'GET https://reports.example.com/reports/A1/C1/weekly.pdf?token={TOKEN} 200'
        result = redact_token(text)
        assert TOKEN not in result
        assert result.endswith(" 200")

    def test_redacts_token_that_is_not_first_parameter(self):
        """Token after other query parameters is still redacted."""
        path = f"/reports/A1/C1/weekly.pdf?download=1&token={TOKEN}&x=y"
        result = redact_token(path)
        assert TOKEN not in result
        assert result.endswith("&x=y")

    def test_redacts_legacy_prefixed_route(self):
        """Links from older emails use /reports/reports/."""
        result = redact_token(f"/reports/reports/A1/C1/weekly.pdf?token={TOKEN}")
        assert TOKEN not in result

    def test_preserves_other_paths(self):
        """Should not modify paths that carry no report token."""
        paths = [
            "/api/v1/clients/C1/report/send",
            "/api/v1/reports/C1/weekly.pdf/signed-url?ttl=60",
            "/reports/A1/C1/weekly.pdf",
            "/health",
            "",
        ]
        for path in paths:
            assert redact_token(path) == path


class TestIsReportDownloadPath:
    def test_identifies_download_paths(self):
        assert is_report_download_path("/reports/A1/C1/weekly.pdf") is True
        assert is_report_download_path("/reports/reports/A1/C1/weekly.pdf") is True

    def test_rejects_api_paths(self):
        assert is_report_download_path("/api/v1/reports/C1/weekly.pdf/signed-url") is False
        assert is_report_download_path("/health") is False


class TestTokenRedactionFilter:
    """Tests for the TokenRedactionFilter logging filter."""

    def test_redacts_token_in_log_message(self, caplog):
        """Should redact tokens from log messages."""
        logger = logging.getLogger("test.redaction")
        logger.addFilter(TokenRedactionFilter())

        with caplog.at_level(logging.INFO):
            logger.info(f"GET /reports/A1/C1/weekly.pdf?token={TOKEN} returned 200")

        assert TOKEN not in caplog.text
        assert TOKEN_REDACTED in caplog.text

    def test_redacts_token_in_log_args_tuple(self, caplog):
        """Should redact tokens from %-style args."""
        logger = logging.getLogger("test.redaction.args")
        logger.addFilter(TokenRedactionFilter())

        with caplog.at_level(logging.INFO):
            logger.info("Path: %s", f"/reports/A1/C1/weekly.pdf?token={TOKEN}")

        assert TOKEN not in caplog.text
        assert TOKEN_REDACTED in caplog.text

    def test_allows_record_through(self):
        """Filter should always return True to allow record through."""
        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg="test message",
            args=(),
            exc_info=None,
        )
        assert TokenRedactionFilter().filter(record) is True


class TestRedactExceptionArgs:
    def test_redacts_token_in_exception_message(self):
        exc = ValueError(f"Failed to serve /reports/A1/C1/weekly.pdf?token={TOKEN}")
        result = redact_exception_args(exc)
        assert TOKEN not in str(result)
        assert TOKEN_REDACTED in str(result)

    def test_handles_exception_with_no_args(self):
        assert redact_exception_args(Exception()).args == ()


class TestReportTokenPattern:
    def test_pattern_groups(self):
        match = REPORT_TOKEN_PATTERN.search(f"/reports/A1/C1/weekly.pdf?token={TOKEN}")
        assert match is not None
        assert match.group(1) == "/reports/A1/C1/weekly.pdf?token="
        assert match.group(2) == TOKEN


class TestSecurityEvents:
    def test_format_security_event_omits_empty_fields(self):
        event = format_security_event(
            event_type="security.access.pdf_denied",
            severity="warning",
            description="Report download denied",
            agency_id="A1",
            reason="TOKEN_EXPIRED",
        )
        assert event == {
            "event_type": "security.access.pdf_denied",
            "severity": "warning",
            "description": "Report download denied",
            "is_security_event": True,
            "agency_id": "A1",
            "reason": "TOKEN_EXPIRED",
        }

    def test_security_loggers_are_tagged(self):
        record = logging.LogRecord("security.ratelimit", logging.WARNING, "", 0, "x", (), None)
        SecurityEventFilter().filter(record)
        assert record.is_security_event is True

        other = logging.LogRecord("client_reporting.services", logging.INFO, "", 0, "x", (), None)
        SecurityEventFilter().filter(other)
        assert other.is_security_event is False
