"""
Generate-and-send for one client report.

This is the side-effecting operation that ReportSendGuard protects:
render the PDF, store it, mint a download link and email it.
"""

import asyncio
import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any
from xml.sax.saxutils import escape

from pydantic import ValidationError as PydanticValidationError

from client_reporting.core.config import settings
from client_reporting.core.errors import ErrorCode, ValidationError
from client_reporting.core.pdf_token import TokenPayload
from client_reporting.schemas.reports import ReportMetrics, ReportSendResult
from client_reporting.schemas.tenants import Agency, Client
from client_reporting.services.artifact_store import ArtifactStore, report_key
from client_reporting.services.email_service import EmailService
from client_reporting.services.kv_store import Clock, StoreUnavailableError
from client_reporting.services.pdf_generator import ReportPdfGenerator
from client_reporting.services.signed_url import SignedUrlIssuer
from client_reporting.services.tenant_directory import TenantDirectory

logger = logging.getLogger(__name__)


def parse_metrics(payload: dict[str, Any]) -> ReportMetrics | None:
    """Validate the optional ``metrics`` block of a send request.

    Raises:
        ValidationError: VALIDATION_ERROR
    """
    raw = payload.get("metrics")
    if raw is None:
        return None
    try:
        return ReportMetrics.model_validate(raw)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise ValidationError(
            ErrorCode.VALIDATION_ERROR,
            f"Invalid metrics fields: {', '.join(fields) or 'metrics'}",
        ) from e


def build_email_html(agency_name: str, client_name: str, download_url: str, metrics: ReportMetrics | None) -> str:
    summary = ""
    if metrics is not None:
        summary = (
            f"<p>{metrics.period_start:%b %d} to {metrics.period_end:%b %d, %Y}: "
            f"<strong>{metrics.sessions:,}</strong> sessions, "
            f"<strong>{metrics.users:,}</strong> users, "
            f"<strong>{metrics.pageviews:,}</strong> pageviews.</p>"
        )
    link_hours = settings.SIGNED_URL_MAX_TTL_SECONDS // 3600 or 1
    return (
        f"<h2>Your latest report from {escape(agency_name)}</h2>"
        f"<p>Hi {escape(client_name)},</p>"
        f"{summary}"
        f'<p><a href="{escape(download_url)}">Download the PDF report</a></p>'
        f"<p>This link expires in {link_hours} hour(s).</p>"
    )


class ReportSender:
    """Renders, stores and emails a client report."""

    def __init__(
        self,
        artifacts: ArtifactStore,
        issuer: SignedUrlIssuer,
        directory: TenantDirectory,
        email: EmailService | None = None,
        clock: Clock = time.time,
        pdf_generator: ReportPdfGenerator | None = None,
    ):
        self._artifacts = artifacts
        self._issuer = issuer
        self._directory = directory
        self._email = email or EmailService()
        self._clock = clock
        self._pdf = pdf_generator or ReportPdfGenerator()

    async def send(self, agency: Agency, client: Client, metrics: ReportMetrics | None) -> dict[str, Any]:
        """Run the send and return the response body that will be replayed."""
        now = self._clock()
        sent_at = datetime.fromtimestamp(now, tz=timezone.utc)
        report_id = str(uuid.uuid4())
        filename = f"{report_id}.pdf"
        pdf_key = report_key(agency.id, client.id, filename)

        pdf_bytes = await asyncio.get_running_loop().run_in_executor(
            None, self._pdf.generate, agency.name, client.name, metrics, sent_at
        )
        await self._artifacts.put(pdf_key, pdf_bytes, content_type="application/pdf")

        download_url = self._issuer.build_url(TokenPayload(
            agency_id=agency.id,
            client_id=client.id,
            filename=filename,
            exp=math.floor(now) + settings.SIGNED_URL_MAX_TTL_SECONDS,
        ))

        await self._email.send_report_email(
            to=client.email,
            subject=f"{client.name}: your analytics report",
            html_body=build_email_html(agency.name, client.name, download_url, metrics),
        )
        try:
            await self._directory.mark_report_sent(client)
        except StoreUnavailableError:
            # History only; the email is already out
            logger.exception(
                "Failed to record report send history",
                extra={
                    "event_type": "reports.history_write_failed",
                    "agency_id": agency.id,
                    "client_id": client.id,
                    "report_id": report_id,
                },
            )

        logger.info(
            "Report sent",
            extra={
                "event_type": "reports.sent",
                "agency_id": agency.id,
                "client_id": client.id,
                "report_id": report_id,
            },
        )
        return ReportSendResult(
            client_id=client.id,
            report_id=report_id,
            pdf_key=pdf_key,
            filename=filename,
            sent_at=sent_at.isoformat(),
        ).to_wire()
