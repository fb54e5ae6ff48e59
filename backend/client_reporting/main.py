"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from client_reporting.api.deps import get_kv_store
from client_reporting.api.downloads import router as downloads_router
from client_reporting.api.v1 import api_router
from client_reporting.core.config import settings
from client_reporting.core.errors import (
    APIException,
    ErrorCode,
    api_exception_handler,
    create_error_response,
    http_exception_handler,
    validation_exception_handler,
)
from client_reporting.core.logging_config import configure_logging
from client_reporting.core.metrics import MetricsMiddleware, get_metrics
from client_reporting.core.middleware import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    install_token_redaction_logging,
    redact_exception_args,
    redact_token,
)
from client_reporting.core.rate_limit import limiter
from client_reporting.schemas.common import HealthResponse
from client_reporting.services.artifact_store import LocalArtifactStore
from client_reporting.services.kv_store import StoreUnavailableError, create_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    configure_logging(logging.DEBUG if settings.DEBUG else logging.INFO)
    # Signed download URLs appear in access logs; strip their tokens
    install_token_redaction_logging()

    logger.info(
        f"Starting {settings.APP_NAME} v{settings.APP_VERSION}",
        extra={"event_type": "system.startup", "environment": settings.ENVIRONMENT},
    )

    app.state.kv_store = create_store()
    app.state.artifact_store = LocalArtifactStore()

    yield

    logger.info("Shutting down...", extra={"event_type": "system.shutdown"})
    await app.state.kv_store.close()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Signed report links and guarded report delivery for agencies",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json" if settings.EXPOSE_DOCS else None,
    docs_url=f"{settings.API_V1_PREFIX}/docs" if settings.EXPOSE_DOCS else None,
    redoc_url=None,
    lifespan=lifespan,
)

# Rate limiting (IP level)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def ip_rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """slowapi rejections in the standard error envelope."""
    return JSONResponse(
        status_code=429,
        content=create_error_response(
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            message=f"Rate limit exceeded: {exc.detail}",
            request_id=getattr(request.state, "request_id", None),
        ),
        headers={"Retry-After": "60"},
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Store outages outside the guarded paths: retryable 503."""
    return JSONResponse(
        status_code=503,
        content=create_error_response(
            code=ErrorCode.STORE_UNAVAILABLE,
            message="Service temporarily unavailable. Please retry.",
            request_id=getattr(request.state, "request_id", None),
        ),
        headers={"Retry-After": "5"},
    )


app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions.

    Details are only returned in DEBUG, and report tokens are redacted from
    them first.
    """
    exc = redact_exception_args(exc)
    logger.error(
        "Unhandled exception on %s",
        redact_token(f"{request.url.path}?{request.url.query}"),
        exc_info=exc,
        extra={"event_type": "system.unhandled_exception"},
    )

    message = "An unexpected error occurred"
    if settings.DEBUG:
        message = redact_token(f"{type(exc).__name__}: {exc}")

    return JSONResponse(
        status_code=500,
        content=create_error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message=message,
            request_id=getattr(request.state, "request_id", None),
        ),
    )


# Middleware (last added runs first)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "Idempotency-Key", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(MetricsMiddleware)


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """
    Health check with a real store round trip.

    Returns 503 when the key/value store is unreachable so load balancers
    can take the instance out of rotation.
    """
    store = get_kv_store(request)
    store_ok = await store.ping()

    response = HealthResponse(
        status="healthy" if store_ok else "unhealthy",
        version=settings.APP_VERSION,
        store=("redis" if settings.REDIS_URL else "memory") + (":connected" if store_ok else ":error"),
        timestamp=datetime.now(timezone.utc),
    )

    if not store_ok:
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))

    return response


if settings.EXPOSE_METRICS:
    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus scrape endpoint."""
        return get_metrics()


# Include API routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)
app.include_router(downloads_router, tags=["Downloads"])


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "capabilities": f"{settings.API_V1_PREFIX}/system/capabilities",
    }
