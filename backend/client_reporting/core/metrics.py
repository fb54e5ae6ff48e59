"""Prometheus metrics.

Exposed at /metrics for scraping:
- Request latency and throughput
- Signed URL issuance and download decisions
- Idempotency and rate-limit outcomes
- Key/value store failures
"""

import re
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Capability tokens
signed_urls_issued_total = Counter(
    'signed_urls_issued_total',
    'Total signed report URLs issued'
)

pdf_access_total = Counter(
    'pdf_access_total',
    'Report download decisions',
    ['result']  # allow, token_required, invalid_filename, malformed, ...
)

# Gated report sends
idempotency_outcomes_total = Counter(
    'idempotency_outcomes_total',
    'Idempotency ledger outcomes',
    ['outcome']  # new, replay, conflict, in_progress, unavailable
)

rate_limit_decisions_total = Counter(
    'rate_limit_decisions_total',
    'Store-backed rate limit decisions',
    ['result']  # allowed, rejected
)

reports_sent_total = Counter(
    'reports_sent_total',
    'Report send operations',
    ['result']  # success, failure, cancelled
)

# Store health
store_errors_total = Counter(
    'store_errors_total',
    'Key/value store errors',
    ['operation']
)


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def track_request_metrics(method: str, endpoint: str, status: int, duration: float):
    """Track HTTP request metrics."""
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status)
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration)


def track_pdf_access(result: str):
    pdf_access_total.labels(result=result).inc()


def track_idempotency(outcome: str):
    idempotency_outcomes_total.labels(outcome=outcome).inc()


def track_rate_limit(allowed: bool):
    rate_limit_decisions_total.labels(result="allowed" if allowed else "rejected").inc()


def track_store_error(operation: str):
    store_errors_total.labels(operation=operation).inc()


_UUID_RE = re.compile(
    r'[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}'
)
_REPORT_PATH_RE = re.compile(r'^/reports/(?:reports/)?[^/]+/[^/]+/[^/]+$')


class MetricsMiddleware:
    """ASGI middleware for tracking request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if path == "/metrics":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        start_time = time.time()
        status_code = 500  # Default in case of error

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            track_request_metrics(method, self._normalize_path(path), status_code, duration)

    def _normalize_path(self, path: str) -> str:
        """Collapse identifiers so label cardinality stays bounded."""
        if _REPORT_PATH_RE.match(path):
            return "/reports/{agency_id}/{client_id}/{filename}"
        path = _UUID_RE.sub('{id}', path)
        path = re.sub(r'/\d+(?=/|$)', '/{id}', path)
        return path
