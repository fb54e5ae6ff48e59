"""
Public report downloads.

    GET /reports/{agency_id}/{client_id}/{filename}?token=...

No API key: the signed token in the query string is the credential. Links
from older emails used a doubled prefix (/reports/reports/...) and are
served by the same handler.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response

from client_reporting.api.deps import get_access_gate, get_artifact_store
from client_reporting.core.client_ip import get_client_ip
from client_reporting.core.rate_limit import RateLimits, limiter
from client_reporting.services.access_gate import AccessGate
from client_reporting.services.artifact_store import ArtifactStore

router = APIRouter()


@router.get("/reports/{agency_id}/{client_id}/{filename}")
@router.get("/reports/reports/{agency_id}/{client_id}/{filename}", include_in_schema=False)
@limiter.limit(RateLimits.REPORT_DOWNLOAD)
async def download_report(
    request: Request,
    agency_id: str,
    client_id: str,
    filename: str,
    gate: Annotated[AccessGate, Depends(get_access_gate)],
    artifacts: Annotated[ArtifactStore, Depends(get_artifact_store)],
    token: str | None = None,
):
    """Serve a report PDF to the holder of a valid signed token."""
    download = await gate.open_report(
        artifacts,
        agency_id=agency_id,
        client_id=client_id,
        filename=filename,
        token=token,
        ip_address=get_client_ip(request),
    )
    return Response(
        content=download.content,
        media_type="application/pdf",
        headers=download.headers,
    )
