"""IP-level rate limits (slowapi) for public endpoints.

These are a coarse abuse guard in front of the endpoints. The per-client
report send quota is a separate, store-backed fixed window
(see ``services.rate_limiter``) whose state is shared by every instance.

Format: "X/period" where period is: second, minute, hour, day.
Multiple limits can be combined: "100/minute;1000/hour".
"""

from fastapi import Request
from slowapi import Limiter

from client_reporting.core.client_ip import get_client_ip
from client_reporting.core.config import settings


def get_ip_identifier(request: Request) -> str:
    """Rate limit key: ip:{client_ip}, proxy-aware."""
    return f"ip:{get_client_ip(request)}"


limiter = Limiter(key_func=get_ip_identifier, enabled=settings.RATE_LIMIT_ENABLED)


class RateLimits:
    """Centralized slowapi limit strings."""

    # Minting signed URLs (authenticated, cheap, but each is a capability)
    SIGNED_URL_ISSUE = "60/minute;500/hour"

    # Public downloads, reached from emailed links
    REPORT_DOWNLOAD = "120/minute;1000/hour"

    # Report generation and email (expensive). The per-client quota applies too
    REPORT_SEND = "20/minute;100/hour"
