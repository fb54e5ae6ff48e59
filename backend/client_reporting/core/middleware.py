"""Request middleware and token redaction for signed report URLs.

Signed report links carry their capability token in the query string:

    /reports/{agency_id}/{client_id}/{filename}?token=<payload>.<mac>

Anyone holding that string can download the report until it expires, so:
- Tokens must never appear in logs (access logs print the full URL)
- Tokens must never appear in exception text surfaced to callers
- Tokens must never leak via the Referer header of a downloaded PDF
"""

import logging
import re
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# token=<value> anywhere after a /reports/ path segment. The value runs until
# the next query separator, whitespace or quote.
REPORT_TOKEN_PATTERN = re.compile(
    r"(/reports/[^\s?\"']*\?(?:[^\s\"'#]*&)?token=)"
    r"([^&\s\"'#]+)"
)
TOKEN_REDACTED = "[TOKEN_REDACTED]"

REQUEST_ID_HEADER = "X-Request-ID"


def redact_token(text: str) -> str:
    """Replace report token values in ``text`` with a placeholder."""
    return REPORT_TOKEN_PATTERN.sub(rf"\1{TOKEN_REDACTED}", text)


def is_report_download_path(path: str) -> bool:
    """Check if a path is a public report download route."""
    return path.startswith("/reports/")


class TokenRedactionFilter(logging.Filter):
    """Logging filter that redacts report tokens from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_token(record.msg)

        if record.args:
            if isinstance(record.args, tuple):
                record.args = tuple(
                    redact_token(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
            elif isinstance(record.args, dict):
                record.args = {
                    k: redact_token(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }

        # Always allow the record through (after redaction)
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Accept or generate a request ID and echo it on the response.

    The ID is stored on ``request.state.request_id`` so error envelopes can
    include it.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        # Caller-supplied IDs are only kept when short and printable
        if incoming and len(incoming) <= 128 and incoming.isprintable():
            request_id = incoming
        else:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add standard security headers to all responses.

    Headers added:
    - X-Content-Type-Options: nosniff - Prevents MIME sniffing
    - X-Frame-Options: DENY - Prevents clickjacking
    - Referrer-Policy: strict-origin-when-cross-origin, or no-referrer on
      report downloads so the token cannot leak to linked sites
    - Content-Security-Policy on API responses
    - Cache-Control: no-store for API responses that did not set their own
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        path = request.url.path
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "0"

        if is_report_download_path(path):
            response.headers["Referrer-Policy"] = "no-referrer"
        else:
            response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if path.startswith("/api/"):
            response.headers["Content-Security-Policy"] = (
                "default-src 'none'; frame-ancestors 'none'"
            )
            if "Cache-Control" not in response.headers:
                response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"

        return response


def install_token_redaction_logging() -> None:
    """Install the token redaction filter on all relevant loggers.

    Call during application startup, after logging is configured.
    """
    redaction_filter = TokenRedactionFilter()

    root_logger = logging.getLogger()
    root_logger.addFilter(redaction_filter)
    for handler in root_logger.handlers:
        handler.addFilter(redaction_filter)

    # Loggers that do not propagate to root
    logger_names = [
        "uvicorn",
        "uvicorn.access",
        "uvicorn.error",
        "fastapi",
        "security.access",
        "client_reporting",
    ]

    for name in logger_names:
        logger = logging.getLogger(name)
        logger.addFilter(redaction_filter)
        for handler in logger.handlers:
            handler.addFilter(redaction_filter)


def redact_exception_args(exc: Exception) -> Exception:
    """Redact report tokens from exception arguments in place."""
    if exc.args:
        exc.args = tuple(
            redact_token(arg) if isinstance(arg, str) else arg
            for arg in exc.args
        )
    return exc
