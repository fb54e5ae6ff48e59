"""
Report download gate.

Decides whether a request for /reports/{agency}/{client}/{filename}?token=...
may read the file. One decision per request, evaluated in a fixed order:

1. No token                          -> TOKEN_REQUIRED
2. Filename fails validation         -> INVALID_FILENAME / INVALID_FILE_TYPE
3. Token malformed or bad signature  -> TOKEN_MALFORMED / TOKEN_BAD_SIGNATURE
   Token expired                     -> TOKEN_EXPIRED
4. Token fields differ from the path -> TOKEN_MISMATCH
5. Otherwise                         -> ALLOW

Only an allowed request touches storage. A missing file after ALLOW is
reported with the same error envelope as a denial, and the message never
says which token field mismatched.
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum

from client_reporting.core.config import settings
from client_reporting.core.errors import (
    APIException,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from client_reporting.core.logging_config import format_security_event
from client_reporting.core.metrics import track_pdf_access
from client_reporting.core.pdf_token import (
    FilenameError,
    TokenError,
    TokenFailure,
    TokenPayload,
    decode_token,
    validate_report_filename,
)
from client_reporting.services.artifact_store import ArtifactStore, report_key
from client_reporting.services.kv_store import Clock

security_logger = logging.getLogger("security.access")


class AccessReason(str, Enum):
    ALLOW = "ALLOW"
    TOKEN_REQUIRED = "TOKEN_REQUIRED"
    INVALID_FILENAME = "INVALID_FILENAME"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    TOKEN_MALFORMED = "TOKEN_MALFORMED"
    TOKEN_BAD_SIGNATURE = "TOKEN_BAD_SIGNATURE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"


_TOKEN_FAILURE_REASONS = {
    TokenFailure.MALFORMED: AccessReason.TOKEN_MALFORMED,
    TokenFailure.BAD_SIGNATURE: AccessReason.TOKEN_BAD_SIGNATURE,
    TokenFailure.EXPIRED: AccessReason.TOKEN_EXPIRED,
}


@dataclass(frozen=True)
class AccessDecision:
    reason: AccessReason
    payload: TokenPayload | None = None

    @property
    def allowed(self) -> bool:
        return self.reason == AccessReason.ALLOW

    def to_exception(self) -> APIException:
        """The error a caller sees for this denial."""
        reason = self.reason
        if reason == AccessReason.TOKEN_REQUIRED:
            return UnauthorizedError(ErrorCode.PDF_TOKEN_REQUIRED, "A download token is required")
        if reason == AccessReason.INVALID_FILENAME:
            return ValidationError(ErrorCode.INVALID_FILENAME, "Invalid filename")
        if reason == AccessReason.INVALID_FILE_TYPE:
            return ValidationError(ErrorCode.INVALID_FILE_TYPE, "Only PDF files can be downloaded")
        if reason in (AccessReason.TOKEN_MALFORMED, AccessReason.TOKEN_BAD_SIGNATURE):
            return ForbiddenError(ErrorCode.PDF_TOKEN_INVALID, "Download token is invalid")
        if reason == AccessReason.TOKEN_EXPIRED:
            return ForbiddenError(ErrorCode.PDF_TOKEN_EXPIRED, "Download token has expired")
        if reason == AccessReason.TOKEN_MISMATCH:
            return ForbiddenError(ErrorCode.PDF_TOKEN_MISMATCH, "Download token does not match this file")
        raise ValueError(f"{reason} is not a denial")


@dataclass(frozen=True)
class ReportDownload:
    content: bytes
    filename: str
    max_age: int

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Disposition": f'inline; filename="{self.filename}"',
            "Cache-Control": f"private, max-age={self.max_age}",
            "Referrer-Policy": "no-referrer",
        }


class AccessGate:
    """Token verifier in front of the artifact store."""

    def __init__(self, clock: Clock = time.time, secret: str | None = None):
        self._clock = clock
        self._secret = secret or settings.PDF_SIGNING_SECRET

    def evaluate(
        self,
        agency_id: str,
        client_id: str,
        filename: str,
        token: str | None,
    ) -> AccessDecision:
        """Pure decision for one request; no I/O."""
        if not token:
            return AccessDecision(AccessReason.TOKEN_REQUIRED)

        try:
            validate_report_filename(filename)
        except FilenameError as e:
            return AccessDecision(AccessReason(e.code.value))

        try:
            payload = decode_token(token, self._secret, self._clock())
        except TokenError as e:
            return AccessDecision(_TOKEN_FAILURE_REASONS[e.reason])

        if (
            payload.agency_id != agency_id
            or payload.client_id != client_id
            or payload.filename != filename
        ):
            return AccessDecision(AccessReason.TOKEN_MISMATCH, payload)

        return AccessDecision(AccessReason.ALLOW, payload)

    async def open_report(
        self,
        artifacts: ArtifactStore,
        agency_id: str,
        client_id: str,
        filename: str,
        token: str | None,
        ip_address: str | None = None,
    ) -> ReportDownload:
        """Evaluate the request and, when allowed, read the file.

        Raises:
            APIException: the denial, or PDF_NOT_FOUND
        """
        decision = self.evaluate(agency_id, client_id, filename, token)
        track_pdf_access(decision.reason.value.lower())

        if not decision.allowed:
            security_logger.warning(
                "Report download denied",
                extra=format_security_event(
                    event_type="security.access.pdf_denied",
                    severity="warning",
                    description="Report download denied",
                    agency_id=agency_id,
                    client_id=client_id,
                    ip_address=ip_address,
                    reason=decision.reason.value,
                ),
            )
            raise decision.to_exception()

        content = await artifacts.get(report_key(agency_id, client_id, filename))
        if content is None:
            track_pdf_access("not_found")
            security_logger.info(
                "Report download for missing file",
                extra=format_security_event(
                    event_type="security.access.pdf_not_found",
                    severity="info",
                    description="Valid token for a file that does not exist",
                    agency_id=agency_id,
                    client_id=client_id,
                    ip_address=ip_address,
                    reason="NOT_FOUND",
                ),
            )
            raise NotFoundError(ErrorCode.PDF_NOT_FOUND, "Report not found")

        max_age = max(0, math.floor(decision.payload.exp - self._clock()))
        return ReportDownload(content=content, filename=filename, max_age=max_age)
