"""Machine-readable description of the public operations.

Idempotency is a tagged variant, not a flag: a consumer must see the
difference between "always safe to retry" and "safe only with a key".
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from client_reporting.core.config import settings
from client_reporting.core.errors import ErrorCode
from client_reporting.core.rate_limit import RateLimits

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"


class Idempotent(BaseModel):
    kind: Literal["idempotent"] = "idempotent"


class ConditionallyIdempotent(BaseModel):
    kind: Literal["conditionally_idempotent"] = "conditionally_idempotent"
    requires_key: str = IDEMPOTENCY_KEY_HEADER
    retention_seconds: int


class NotIdempotent(BaseModel):
    kind: Literal["not_idempotent"] = "not_idempotent"


IdempotencyContract = Annotated[
    Union[Idempotent, ConditionallyIdempotent, NotIdempotent],
    Field(discriminator="kind"),
]


class RateLimitDescription(BaseModel):
    scope: str
    limit: str
    headers: bool = False


class OperationCapability(BaseModel):
    name: str
    method: str
    path: str
    auth: Literal["api_key", "signed_token", "none"]
    idempotency: IdempotencyContract
    error_codes: list[ErrorCode]
    rate_limits: list[RateLimitDescription] = Field(default_factory=list)


class CapabilityManifest(BaseModel):
    service: str
    version: str
    operations: list[OperationCapability]

    def operation(self, name: str) -> OperationCapability:
        for op in self.operations:
            if op.name == name:
                return op
        raise KeyError(name)


def build_manifest() -> CapabilityManifest:
    prefix = settings.API_V1_PREFIX
    return CapabilityManifest(
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        operations=[
            OperationCapability(
                name="issue_signed_report_url",
                method="POST",
                path=f"{prefix}/reports/{{client_id}}/{{filename}}/signed-url",
                auth="api_key",
                # Each call mints a new token; nothing is written
                idempotency=Idempotent(),
                error_codes=[
                    ErrorCode.UNAUTHORIZED,
                    ErrorCode.INVALID_FILE_TYPE,
                    ErrorCode.INVALID_FILENAME,
                    ErrorCode.INVALID_TTL,
                    ErrorCode.CLIENT_NOT_FOUND,
                    ErrorCode.SUBSCRIPTION_INACTIVE,
                ],
                rate_limits=[RateLimitDescription(scope="ip", limit=RateLimits.SIGNED_URL_ISSUE)],
            ),
            OperationCapability(
                name="download_report",
                method="GET",
                path="/reports/{agency_id}/{client_id}/{filename}",
                auth="signed_token",
                idempotency=Idempotent(),
                error_codes=[
                    ErrorCode.PDF_TOKEN_REQUIRED,
                    ErrorCode.INVALID_FILENAME,
                    ErrorCode.INVALID_FILE_TYPE,
                    ErrorCode.PDF_TOKEN_INVALID,
                    ErrorCode.PDF_TOKEN_EXPIRED,
                    ErrorCode.PDF_TOKEN_MISMATCH,
                    ErrorCode.PDF_NOT_FOUND,
                ],
                rate_limits=[RateLimitDescription(scope="ip", limit=RateLimits.REPORT_DOWNLOAD)],
            ),
            OperationCapability(
                name="send_client_report",
                method="POST",
                path=f"{prefix}/clients/{{client_id}}/report/send",
                auth="api_key",
                idempotency=ConditionallyIdempotent(retention_seconds=settings.IDEMPOTENCY_TTL_SECONDS),
                error_codes=[
                    ErrorCode.CLIENT_NOT_FOUND,
                    ErrorCode.SUBSCRIPTION_INACTIVE,
                    ErrorCode.IDEMPOTENCY_KEY_REUSE_MISMATCH,
                    ErrorCode.IDEMPOTENCY_REQUEST_IN_PROGRESS,
                    ErrorCode.IDEMPOTENCY_CHECK_FAILED,
                    ErrorCode.RATE_LIMIT_EXCEEDED,
                    ErrorCode.STORE_UNAVAILABLE,
                    ErrorCode.REPORT_SEND_FAILED,
                ],
                rate_limits=[
                    RateLimitDescription(
                        scope="agency_client",
                        limit=f"{settings.REPORT_SEND_RATE_LIMIT}/{settings.REPORT_SEND_RATE_WINDOW_SECONDS}s",
                        headers=True,
                    ),
                    RateLimitDescription(scope="ip", limit=RateLimits.REPORT_SEND),
                ],
            ),
            OperationCapability(
                name="get_capabilities",
                method="GET",
                path=f"{prefix}/system/capabilities",
                auth="none",
                idempotency=Idempotent(),
                error_codes=[],
            ),
        ],
    )
