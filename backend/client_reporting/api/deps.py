"""API dependencies for dependency injection.

Stores live on ``app.state`` (created in the lifespan handler). Tests swap
any of these out with ``app.dependency_overrides``.
"""

import logging
import time
from typing import Annotated

from fastapi import Depends, Header, Request

from client_reporting.core.client_ip import get_client_ip
from client_reporting.core.errors import ErrorCode, UnauthorizedError, ValidationError
from client_reporting.core.logging_config import format_security_event
from client_reporting.schemas.tenants import Agency
from client_reporting.services.access_gate import AccessGate
from client_reporting.services.artifact_store import ArtifactStore, LocalArtifactStore
from client_reporting.services.idempotency import IdempotencyLedger
from client_reporting.services.kv_store import Clock, KeyValueStore, create_store
from client_reporting.services.operation_guard import ReportSendGuard
from client_reporting.services.rate_limiter import FixedWindowRateLimiter
from client_reporting.services.report_sender import ReportSender
from client_reporting.services.signed_url import SignedUrlIssuer
from client_reporting.services.tenant_directory import TenantDirectory, require_active_subscription

# Security audit logger - separate from general logging for SIEM integration
auth_logger = logging.getLogger("security.auth")

MAX_IDEMPOTENCY_KEY_LENGTH = 255


def get_clock() -> Clock:
    return time.time


def get_kv_store(request: Request) -> KeyValueStore:
    store = getattr(request.app.state, "kv_store", None)
    if store is None:
        store = create_store()
        request.app.state.kv_store = store
    return store


def get_artifact_store(request: Request) -> ArtifactStore:
    artifacts = getattr(request.app.state, "artifact_store", None)
    if artifacts is None:
        artifacts = LocalArtifactStore()
        request.app.state.artifact_store = artifacts
    return artifacts


def get_directory(
    store: Annotated[KeyValueStore, Depends(get_kv_store)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> TenantDirectory:
    return TenantDirectory(store, clock=clock)


def get_issuer(
    directory: Annotated[TenantDirectory, Depends(get_directory)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> SignedUrlIssuer:
    return SignedUrlIssuer(directory, clock=clock)


def get_access_gate(clock: Annotated[Clock, Depends(get_clock)]) -> AccessGate:
    return AccessGate(clock=clock)


def get_report_sender(
    artifacts: Annotated[ArtifactStore, Depends(get_artifact_store)],
    issuer: Annotated[SignedUrlIssuer, Depends(get_issuer)],
    directory: Annotated[TenantDirectory, Depends(get_directory)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> ReportSender:
    return ReportSender(artifacts, issuer, directory, clock=clock)


def get_report_send_guard(
    store: Annotated[KeyValueStore, Depends(get_kv_store)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> ReportSendGuard:
    return ReportSendGuard(
        IdempotencyLedger(store, clock=clock),
        FixedWindowRateLimiter(store, clock=clock),
        clock=clock,
    )


async def get_current_agency(
    request: Request,
    directory: Annotated[TenantDirectory, Depends(get_directory)],
    x_api_key: Annotated[str | None, Header()] = None,
) -> Agency:
    """Authenticate the caller by its x-api-key header."""
    if not x_api_key:
        raise UnauthorizedError(ErrorCode.MISSING_API_KEY, "Missing x-api-key header")

    agency = await directory.authenticate(x_api_key)
    if agency is None:
        auth_logger.warning(
            "Invalid API key",
            extra=format_security_event(
                event_type="security.auth.invalid_api_key",
                severity="warning",
                description="Request with unknown API key",
                ip_address=get_client_ip(request),
                reason="INVALID_API_KEY",
            ),
        )
        raise UnauthorizedError(ErrorCode.INVALID_API_KEY, "Invalid API key")
    return agency


async def get_active_agency(
    agency: Annotated[Agency, Depends(get_current_agency)],
) -> Agency:
    """Authenticated agency with a trial or active subscription."""
    require_active_subscription(agency)
    return agency


def get_idempotency_key(request: Request) -> str | None:
    """Read the Idempotency-Key header.

    Header names are case-insensitive in Starlette, so every spelling of the
    name resolves here. A blank value means no key.
    """
    value = request.headers.get("idempotency-key")
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > MAX_IDEMPOTENCY_KEY_LENGTH or not value.isprintable():
        raise ValidationError(
            ErrorCode.VALIDATION_ERROR,
            f"Idempotency-Key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} printable characters",
        )
    return value
