"""
Report email delivery.

Sends through a Resend-compatible HTTP API. When no provider key is
configured the message is logged instead of sent, so development setups
never email real clients.
"""

import logging
from dataclasses import dataclass

import httpx

from client_reporting.core.config import settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """The provider rejected the message or could not be reached."""


@dataclass(frozen=True)
class EmailSendResult:
    provider: str
    message_id: str | None = None
    dev_mode: bool = False


class EmailService:
    """Thin client for the email provider."""

    def __init__(
        self,
        api_key: str | None = None,
        from_address: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = settings.EMAIL_PROVIDER_API_KEY if api_key is None else api_key
        self._from = from_address or settings.EMAIL_FROM_ADDRESS
        self._api_url = api_url or settings.EMAIL_API_URL
        self._timeout = timeout_seconds or settings.EMAIL_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def dev_mode(self) -> bool:
        return not self._api_key

    async def send_report_email(self, to: str, subject: str, html_body: str) -> EmailSendResult:
        """Send one report email.

        Raises:
            EmailDeliveryError: non-2xx response, timeout or connection failure
        """
        if self.dev_mode:
            # Recipient and body stay out of the log
            logger.info(
                "Email not sent: no provider configured",
                extra={"event_type": "email.dev_mode", "subject": subject},
            )
            return EmailSendResult(provider="log", dev_mode=True)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._api_url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={
                        "from": self._from,
                        "to": [to],
                        "subject": subject,
                        "html": html_body,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(
                "Email provider request failed: %s",
                type(e).__name__,
                extra={"event_type": "email.send_failed"},
            )
            raise EmailDeliveryError(f"Email provider unreachable: {type(e).__name__}") from e

        if response.status_code >= 300:
            logger.error(
                "Email provider rejected message",
                extra={"event_type": "email.send_rejected", "status_code": response.status_code},
            )
            raise EmailDeliveryError(f"Email provider returned HTTP {response.status_code}")

        message_id = None
        try:
            message_id = response.json().get("id")
        except (ValueError, AttributeError):
            pass

        return EmailSendResult(provider="resend", message_id=message_id)
