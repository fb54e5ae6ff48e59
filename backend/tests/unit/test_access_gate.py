"""
Unit tests for the report download gate.

The decision order matters: a request is judged on the first failing check,
and nothing touches storage until the request is allowed.
"""

import pytest

from client_reporting.core.errors import APIException, ErrorCode
from client_reporting.core.pdf_token import TokenPayload, encode_token
from client_reporting.services.access_gate import AccessDecision, AccessGate, AccessReason
from client_reporting.services.artifact_store import report_key

SECRET = "unit-test-secret-for-access-gate-0001"


@pytest.fixture
def gate(clock) -> AccessGate:
    return AccessGate(clock=clock, secret=SECRET)


def _token(clock, agency_id="A1", client_id="C1", filename="weekly.pdf", ttl=60, secret=SECRET) -> str:
    payload = TokenPayload(agency_id=agency_id, client_id=client_id, filename=filename, exp=int(clock()) + ttl)
    return encode_token(payload, secret)


class TestEvaluate:
    def test_valid_token_is_allowed(self, gate, clock):
        decision = gate.evaluate("A1", "C1", "weekly.pdf", _token(clock))
        assert decision.allowed
        assert decision.payload.filename == "weekly.pdf"

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, gate, token):
        assert gate.evaluate("A1", "C1", "weekly.pdf", token).reason == AccessReason.TOKEN_REQUIRED

    def test_garbage_token_is_malformed(self, gate):
        assert gate.evaluate("A1", "C1", "weekly.pdf", "garbage").reason == AccessReason.TOKEN_MALFORMED

    def test_wrong_secret_is_bad_signature(self, gate, clock):
        token = _token(clock, secret="another-secret-entirely-0000000000")
        assert gate.evaluate("A1", "C1", "weekly.pdf", token).reason == AccessReason.TOKEN_BAD_SIGNATURE

    def test_expiry_follows_the_clock(self, gate, clock):
        token = _token(clock, ttl=1)
        assert gate.evaluate("A1", "C1", "weekly.pdf", token).allowed
        clock.advance(1)
        assert gate.evaluate("A1", "C1", "weekly.pdf", token).reason == AccessReason.TOKEN_EXPIRED

    @pytest.mark.parametrize(
        "agency_id,client_id,filename",
        [("A2", "C1", "weekly.pdf"), ("A1", "C2", "weekly.pdf"), ("A1", "C1", "monthly.pdf")],
    )
    def test_token_for_another_resource_is_a_mismatch(self, gate, clock, agency_id, client_id, filename):
        token = _token(clock)
        assert gate.evaluate(agency_id, client_id, filename, token).reason == AccessReason.TOKEN_MISMATCH

    def test_filename_comparison_is_case_sensitive(self, gate, clock):
        token = _token(clock, filename="Weekly.pdf")
        assert gate.evaluate("A1", "C1", "weekly.pdf", token).reason == AccessReason.TOKEN_MISMATCH


class TestDecisionOrder:
    def test_missing_token_wins_over_bad_filename(self, gate):
        assert gate.evaluate("A1", "C1", "../x.pdf", None).reason == AccessReason.TOKEN_REQUIRED

    def test_bad_filename_wins_over_bad_token(self, gate):
        assert gate.evaluate("A1", "C1", "../x.pdf", "garbage").reason == AccessReason.INVALID_FILENAME

    @pytest.mark.parametrize(
        "filename",
        ["../secret.pdf", "a/b.pdf", "a\\b.pdf", "..pdf", "report .pdf", "résumé.pdf"],
    )
    def test_unsafe_filename_rejected_even_with_matching_token(self, gate, clock, filename):
        token = _token(clock, filename=filename)
        assert gate.evaluate("A1", "C1", filename, token).reason == AccessReason.INVALID_FILENAME

    def test_uppercase_extension_is_allowed(self, gate, clock):
        decision = gate.evaluate("A1", "C1", "Report.PDF", _token(clock, filename="Report.PDF"))
        assert decision.allowed

    def test_non_pdf_wins_over_bad_token(self, gate):
        assert gate.evaluate("A1", "C1", "x.txt", "garbage").reason == AccessReason.INVALID_FILE_TYPE

    def test_expired_wins_over_mismatch(self, gate, clock):
        token = _token(clock, agency_id="A2", ttl=1)
        clock.advance(5)
        assert gate.evaluate("A1", "C1", "weekly.pdf", token).reason == AccessReason.TOKEN_EXPIRED


class TestDenialErrors:
    @pytest.mark.parametrize(
        "reason,status,code",
        [
            (AccessReason.TOKEN_REQUIRED, 401, ErrorCode.PDF_TOKEN_REQUIRED),
            (AccessReason.INVALID_FILENAME, 400, ErrorCode.INVALID_FILENAME),
            (AccessReason.INVALID_FILE_TYPE, 400, ErrorCode.INVALID_FILE_TYPE),
            (AccessReason.TOKEN_MALFORMED, 403, ErrorCode.PDF_TOKEN_INVALID),
            (AccessReason.TOKEN_BAD_SIGNATURE, 403, ErrorCode.PDF_TOKEN_INVALID),
            (AccessReason.TOKEN_EXPIRED, 403, ErrorCode.PDF_TOKEN_EXPIRED),
            (AccessReason.TOKEN_MISMATCH, 403, ErrorCode.PDF_TOKEN_MISMATCH),
        ],
    )
    def test_reason_maps_to_error(self, reason, status, code):
        error = AccessDecision(reason).to_exception()
        assert (error.status_code, error.code) == (status, code)

    def test_mismatch_message_does_not_name_the_field(self):
        message = AccessDecision(AccessReason.TOKEN_MISMATCH).to_exception().message.lower()
        for field in ("agency", "client", "filename"):
            assert field not in message


class _CountingArtifacts:
    def __init__(self, blobs):
        self.blobs = blobs
        self.reads = 0

    async def get(self, key):
        self.reads += 1
        return self.blobs.get(key)


class TestOpenReport:
    @pytest.mark.asyncio
    async def test_allowed_download_returns_content_and_headers(self, gate, clock):
        artifacts = _CountingArtifacts({report_key("A1", "C1", "weekly.pdf"): b"%PDF-1.4 data"})
        download = await gate.open_report(artifacts, "A1", "C1", "weekly.pdf", _token(clock, ttl=300))

        assert download.content == b"%PDF-1.4 data"
        assert download.headers["Cache-Control"] == "private, max-age=300"
        assert download.headers["Referrer-Policy"] == "no-referrer"
        assert 'filename="weekly.pdf"' in download.headers["Content-Disposition"]

    @pytest.mark.asyncio
    async def test_denied_request_never_reads_storage(self, gate):
        artifacts = _CountingArtifacts({})
        with pytest.raises(APIException) as exc_info:
            await gate.open_report(artifacts, "A1", "C1", "weekly.pdf", "garbage")
        assert exc_info.value.code == ErrorCode.PDF_TOKEN_INVALID
        assert artifacts.reads == 0

    @pytest.mark.asyncio
    async def test_missing_file_after_valid_token(self, gate, clock):
        artifacts = _CountingArtifacts({})
        with pytest.raises(APIException) as exc_info:
            await gate.open_report(artifacts, "A1", "C1", "weekly.pdf", _token(clock))
        assert (exc_info.value.status_code, exc_info.value.code) == (404, ErrorCode.PDF_NOT_FOUND)
