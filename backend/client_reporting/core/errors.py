"""
Standardized error responses for the Client Reporting API.

Every error body uses the same envelope so callers can branch on a stable
machine-readable code:

    {"ok": false, "error": {"code": "...", "message": "...", "request_id": "..."}}
"""

import logging
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Stable error codes returned to API callers."""

    # Authentication / authorization
    MISSING_API_KEY = "MISSING_API_KEY"
    INVALID_API_KEY = "INVALID_API_KEY"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Signed URL issuance
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    INVALID_FILENAME = "INVALID_FILENAME"
    INVALID_TTL = "INVALID_TTL"
    CLIENT_NOT_FOUND = "CLIENT_NOT_FOUND"

    # Report download
    PDF_TOKEN_REQUIRED = "PDF_TOKEN_REQUIRED"
    PDF_TOKEN_INVALID = "PDF_TOKEN_INVALID"
    PDF_TOKEN_EXPIRED = "PDF_TOKEN_EXPIRED"
    PDF_TOKEN_MISMATCH = "PDF_TOKEN_MISMATCH"
    PDF_NOT_FOUND = "PDF_NOT_FOUND"

    # Idempotency
    IDEMPOTENCY_KEY_REUSE_MISMATCH = "IDEMPOTENCY_KEY_REUSE_MISMATCH"
    IDEMPOTENCY_CHECK_FAILED = "IDEMPOTENCY_CHECK_FAILED"
    IDEMPOTENCY_REQUEST_IN_PROGRESS = "IDEMPOTENCY_REQUEST_IN_PROGRESS"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Generic
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    REPORT_SEND_FAILED = "REPORT_SEND_FAILED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class APIException(HTTPException):
    """HTTPException carrying a stable error code."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        headers: dict[str, str] | None = None,
    ):
        self.code = code
        self.message = message
        super().__init__(status_code=status_code, detail=message, headers=headers)


class UnauthorizedError(APIException):
    """Caller could not be authenticated."""

    def __init__(self, code: ErrorCode = ErrorCode.INVALID_API_KEY, message: str = "Invalid API key"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
        )


class ForbiddenError(APIException):
    """Caller is authenticated but not allowed to act on the resource."""

    def __init__(self, code: ErrorCode = ErrorCode.UNAUTHORIZED, message: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
        )


class PaymentRequiredError(APIException):
    """Agency subscription does not allow the operation."""

    def __init__(self, subscription_status: str):
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            code=ErrorCode.SUBSCRIPTION_INACTIVE,
            message=f"Subscription inactive. Status: {subscription_status}",
        )


class ValidationError(APIException):
    """Caller input failed validation."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
        )


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, code: ErrorCode = ErrorCode.NOT_FOUND, message: str = "Not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
        )


class ConflictError(APIException):
    """Request conflicts with stored state."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=code,
            message=message,
            headers=headers,
        )


class RateLimitError(APIException):
    """Rate limit exceeded. Always retryable after the advertised reset."""

    def __init__(self, headers: dict[str, str] | None = None, retry_after: int | None = None):
        headers = dict(headers or {})
        if retry_after is not None:
            headers["Retry-After"] = str(max(retry_after, 0))
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            message="Rate limit exceeded. Retry after the time given in X-RateLimit-Reset.",
            headers=headers or None,
        )


class ServiceUnavailableError(APIException):
    """Transient dependency failure. Retryable after backoff."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.STORE_UNAVAILABLE,
        message: str = "Service temporarily unavailable. Please retry.",
        retry_after: int = 5,
        headers: dict[str, str] | None = None,
    ):
        headers = dict(headers or {})
        headers["Retry-After"] = str(retry_after)
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            headers=headers,
        )


class InternalError(APIException):
    """Internal server error."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        message: str = "An internal error occurred",
        headers: dict[str, str] | None = None,
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=code,
            message=message,
            headers=headers,
        )


def create_error_response(
    code: ErrorCode,
    message: str,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create a standardized error response dictionary."""
    error: dict[str, Any] = {
        "code": code.value,
        "message": message,
    }
    if request_id:
        error["request_id"] = request_id

    return {"ok": False, "error": error}


def create_ok_response(data: Any) -> dict[str, Any]:
    """Create a standardized success response dictionary."""
    return {"ok": True, "data": data}


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle APIException and return standardized response."""
    request_id = getattr(request.state, "request_id", None)

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=exc.code,
            message=exc.message,
            request_id=request_id,
        ),
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle standard HTTPException and convert to standardized response."""
    request_id = getattr(request.state, "request_id", None)

    status_to_code = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.INVALID_API_KEY,
        403: ErrorCode.UNAUTHORIZED,
        404: ErrorCode.NOT_FOUND,
        422: ErrorCode.VALIDATION_ERROR,
        429: ErrorCode.RATE_LIMIT_EXCEEDED,
        503: ErrorCode.STORE_UNAVAILABLE,
    }

    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else "An error occurred"

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=code,
            message=message,
            request_id=request_id,
        ),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Collapse FastAPI validation errors into the standard envelope."""
    request_id = getattr(request.state, "request_id", None)
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    message = "Invalid request"
    if fields:
        message = f"Invalid request fields: {', '.join(fields)}"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=create_error_response(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            request_id=request_id,
        ),
    )
