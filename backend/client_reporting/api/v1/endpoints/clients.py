"""
Client report delivery endpoint.

POST /clients/{client_id}/report/send renders a report and emails it. The
send is guarded:
- Optional Idempotency-Key header: same key and payload replays the first
  response with ``replayed: true``; same key with a different payload is 409
- Per-client fixed-window quota, reported on every response through
  X-RateLimit-Limit / X-RateLimit-Remaining / X-RateLimit-Reset

Without a key every call is a new send.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from client_reporting.api.deps import (
    get_active_agency,
    get_directory,
    get_idempotency_key,
    get_report_send_guard,
    get_report_sender,
)
from client_reporting.core.errors import ErrorCode, ForbiddenError, NotFoundError, create_ok_response
from client_reporting.core.rate_limit import RateLimits, limiter
from client_reporting.schemas.tenants import Agency
from client_reporting.services.operation_guard import ReportSendGuard
from client_reporting.services.report_sender import ReportSender, parse_metrics
from client_reporting.services.tenant_directory import TenantDirectory

router = APIRouter()


@router.post("/{client_id}/report/send")
@limiter.limit(RateLimits.REPORT_SEND)
async def send_client_report(
    request: Request,
    client_id: str,
    agency: Annotated[Agency, Depends(get_active_agency)],
    directory: Annotated[TenantDirectory, Depends(get_directory)],
    sender: Annotated[ReportSender, Depends(get_report_sender)],
    guard: Annotated[ReportSendGuard, Depends(get_report_send_guard)],
    idempotency_key: Annotated[str | None, Depends(get_idempotency_key)],
    payload: Annotated[dict[str, Any] | None, Body()] = None,
):
    """Generate and email a report for one client."""
    payload = payload or {}

    client = await directory.get_client(client_id)
    if client is None:
        raise NotFoundError(ErrorCode.CLIENT_NOT_FOUND, "Client not found")
    if client.agency_id != agency.id:
        raise ForbiddenError(message="Client does not belong to this agency")

    # Rejected before the guard, so bad input never spends quota
    metrics = parse_metrics(payload)

    result = await guard.execute(
        scope=agency.id,
        sub_scope=client.id,
        idempotency_key=idempotency_key,
        payload=payload,
        operation=lambda: sender.send(agency, client, metrics),
    )
    return JSONResponse(content=create_ok_response(result.body), headers=result.headers)
