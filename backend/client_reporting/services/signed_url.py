"""
Signed report URL issuance.

Produces a time-limited download link for one report file:

    {BASE_URL}/reports/{agency_id}/{client_id}/{filename}?token=...

Checks run before anything is signed, cheapest first:
1. Caller must be acting for the agency in the path (UNAUTHORIZED)
2. Filename must be a plain report name (INVALID_FILE_TYPE, INVALID_FILENAME)
3. TTL must be a positive integer; values above the cap are clamped (INVALID_TTL)
4. Client must exist (CLIENT_NOT_FOUND) and belong to the agency (UNAUTHORIZED)

Issuance writes nothing: the token is self-contained.
"""

import logging
import math
import re
import time
from urllib.parse import quote

from client_reporting.core.config import settings
from client_reporting.core.errors import ErrorCode, ForbiddenError, NotFoundError, ValidationError
from client_reporting.core.metrics import signed_urls_issued_total
from client_reporting.core.pdf_token import (
    FilenameError,
    TokenPayload,
    encode_token,
    validate_report_filename,
)
from client_reporting.schemas.reports import SignedUrlResponse
from client_reporting.services.kv_store import Clock
from client_reporting.services.tenant_directory import TenantDirectory

logger = logging.getLogger(__name__)

_TTL_DIGITS = re.compile(r"[0-9]+")


def parse_ttl(
    raw: str | int | None,
    default_ttl: int | None = None,
    max_ttl: int | None = None,
) -> int:
    """Return the effective TTL in seconds for a requested value.

    ``None`` means "use the default". Anything else must be a positive
    integer (an int, or a string of digits); it is capped at ``max_ttl``.

    Raises:
        ValidationError: INVALID_TTL
    """
    default_ttl = default_ttl if default_ttl is not None else settings.SIGNED_URL_DEFAULT_TTL_SECONDS
    max_ttl = max_ttl if max_ttl is not None else settings.SIGNED_URL_MAX_TTL_SECONDS

    if raw is None:
        return min(default_ttl, max_ttl)

    if isinstance(raw, bool):
        ttl = None
    elif isinstance(raw, int):
        ttl = raw
    elif isinstance(raw, str) and _TTL_DIGITS.fullmatch(raw.strip()):
        try:
            ttl = int(raw.strip())
        except ValueError:
            # Longer than int() will parse
            ttl = None
    else:
        ttl = None

    if ttl is None or ttl <= 0:
        raise ValidationError(ErrorCode.INVALID_TTL, "ttl must be a positive integer number of seconds")

    return min(ttl, max_ttl)


class SignedUrlIssuer:
    """Mints signed download URLs for stored reports."""

    def __init__(
        self,
        directory: TenantDirectory,
        clock: Clock = time.time,
        secret: str | None = None,
        base_url: str | None = None,
    ):
        self._directory = directory
        self._clock = clock
        self._secret = secret or settings.PDF_SIGNING_SECRET
        self._base_url = (base_url or settings.BASE_URL).rstrip("/")

    def build_url(self, payload: TokenPayload) -> str:
        token = encode_token(payload, self._secret)
        return (
            f"{self._base_url}/reports/{quote(payload.agency_id, safe='')}"
            f"/{quote(payload.client_id, safe='')}/{payload.filename}?token={token}"
        )

    async def issue(
        self,
        caller_agency_id: str,
        agency_id: str,
        client_id: str,
        filename: str,
        requested_ttl: str | int | None = None,
    ) -> SignedUrlResponse:
        """Issue a signed URL, or raise the APIException for the first failed check."""
        if caller_agency_id != agency_id:
            raise ForbiddenError(message="Not authorized for this agency")

        try:
            validate_report_filename(filename)
        except FilenameError as e:
            raise ValidationError(e.code, str(e)) from e

        ttl = parse_ttl(requested_ttl)

        client = await self._directory.get_client(client_id)
        if client is None:
            raise NotFoundError(ErrorCode.CLIENT_NOT_FOUND, "Client not found")
        if client.agency_id != agency_id:
            raise ForbiddenError(message="Client does not belong to this agency")

        # Whole seconds; a fractional clock never extends the lifetime
        expires_at = math.floor(self._clock()) + ttl
        payload = TokenPayload(
            agency_id=agency_id,
            client_id=client_id,
            filename=filename,
            exp=expires_at,
        )
        url = self.build_url(payload)

        signed_urls_issued_total.inc()
        logger.info(
            "Signed report URL issued",
            extra={
                "event_type": "reports.signed_url_issued",
                "agency_id": agency_id,
                "client_id": client_id,
                "ttl": ttl,
            },
        )
        return SignedUrlResponse(url=url, expires_at=expires_at, ttl=ttl)
