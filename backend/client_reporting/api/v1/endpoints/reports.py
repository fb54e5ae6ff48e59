"""
Signed report URL endpoint.

Agencies mint short-lived download links for their clients' reports. The
link itself is the credential, so it is only handed to the authenticated
owner of the client.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from client_reporting.api.deps import get_active_agency, get_issuer
from client_reporting.core.errors import create_ok_response
from client_reporting.core.rate_limit import RateLimits, limiter
from client_reporting.schemas.tenants import Agency
from client_reporting.services.signed_url import SignedUrlIssuer

router = APIRouter()


@router.post("/{client_id}/{filename}/signed-url")
@limiter.limit(RateLimits.SIGNED_URL_ISSUE)
async def create_signed_report_url(
    request: Request,
    client_id: str,
    filename: str,
    agency: Annotated[Agency, Depends(get_active_agency)],
    issuer: Annotated[SignedUrlIssuer, Depends(get_issuer)],
    ttl: str | None = None,
):
    """
    Issue a signed download URL for one of the agency's client reports.

    ``ttl`` is in seconds: default 900, values above 3600 are capped.
    Response: ``{"url", "expiresAt", "ttl"}`` where ``ttl`` is the effective
    (capped) lifetime.
    """
    signed = await issuer.issue(
        caller_agency_id=agency.id,
        agency_id=agency.id,
        client_id=client_id,
        filename=filename,
        requested_ttl=ttl,
    )
    return create_ok_response(signed.to_wire())
