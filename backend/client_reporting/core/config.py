"""Application configuration management."""

import json
from functools import lru_cache
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PDF_SIGNING_SECRET = "change-this-pdf-signing-secret-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Client Reporting API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # Must explicitly set to "production" in prod deployments

    # API
    API_V1_PREFIX: str = "/api/v1"
    # Public origin used when building signed report URLs
    BASE_URL: str = "http://localhost:8000"

    @field_validator("BASE_URL", mode="before")
    @classmethod
    def strip_base_url(cls, v: Any) -> Any:
        """Drop trailing slashes so URL joins never produce '//'."""
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    # Signed PDF URLs
    # Rotating this secret invalidates every outstanding download link at once
    PDF_SIGNING_SECRET: str = DEFAULT_PDF_SIGNING_SECRET
    SIGNED_URL_DEFAULT_TTL_SECONDS: int = 900  # 15 minutes
    SIGNED_URL_MAX_TTL_SECONDS: int = 3600  # hard cap, longer requests are clamped

    # Key/value store (Redis). Empty = in-process memory store (development only)
    REDIS_URL: str = ""
    STORE_TIMEOUT_SECONDS: float = 2.0

    # Idempotency ledger
    IDEMPOTENCY_TTL_SECONDS: int = 86400  # 24 hours
    IDEMPOTENCY_IN_PROGRESS_TTL_SECONDS: int = 120

    # Store-backed fixed window for report sends, per agency+client
    REPORT_SEND_RATE_LIMIT: int = 10
    REPORT_SEND_RATE_WINDOW_SECONDS: int = 3600

    # IP-level limits (slowapi) on public endpoints
    RATE_LIMIT_ENABLED: bool = True
    # Comma-separated IPs/CIDRs allowed to set X-Forwarded-For
    TRUSTED_PROXY_IPS: str = ""

    # Artifact storage (rendered PDFs)
    ARTIFACT_ROOT: str = "./data/artifacts"

    # Email delivery. Empty API key = log instead of send
    EMAIL_PROVIDER_API_KEY: str = ""
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_FROM_ADDRESS: str = "reports@example.com"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS_ORIGINS from JSON string or list."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not valid JSON, treat as comma-separated
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Endpoint exposure
    EXPOSE_DOCS: bool = True
    EXPOSE_METRICS: bool = True

    @model_validator(mode="after")
    def set_computed_defaults(self) -> "Settings":
        """Disable docs and metrics in production unless explicitly enabled."""
        import os

        if self.ENVIRONMENT == "production":
            if os.getenv("EXPOSE_DOCS", "").lower() not in ("true", "1", "yes"):
                object.__setattr__(self, "EXPOSE_DOCS", False)
            if os.getenv("EXPOSE_METRICS", "").lower() not in ("true", "1", "yes"):
                object.__setattr__(self, "EXPOSE_METRICS", False)

        return self


def _validate_production_settings(s: Settings) -> None:
    """
    CRITICAL: Fail hard if production uses a weak signing secret or no shared store.

    The signing secret is the only thing standing between a download URL and
    a forged one. The memory store is per-process, so counters and idempotency
    records would not be shared between instances.
    """
    if s.ENVIRONMENT != "production":
        return

    placeholder_patterns = [
        "change",
        "replace",
        "your-",
        "example",
        "placeholder",
        "secret",
        "password",
        "default",
        "changeme",
        "test",
        "demo",
    ]

    issues = []
    secret = s.PDF_SIGNING_SECRET or ""

    if not secret:
        issues.append("PDF_SIGNING_SECRET: not set")
    elif secret == DEFAULT_PDF_SIGNING_SECRET:
        issues.append("PDF_SIGNING_SECRET: using hardcoded default")
    elif len(secret) < 32:
        issues.append(f"PDF_SIGNING_SECRET: {len(secret)} chars (minimum 32)")
    else:
        lowered = secret.lower()
        for pattern in placeholder_patterns:
            if pattern in lowered:
                issues.append(f"PDF_SIGNING_SECRET: contains placeholder pattern '{pattern}'")
                break

    if not s.REDIS_URL:
        issues.append("REDIS_URL: not set (memory store is not shared between instances)")

    if issues:
        raise RuntimeError(
            "FATAL: Production deployment blocked - insecure configuration detected!\n\n"
            "Issues found:\n"
            f"  {chr(10).join('- ' + v for v in issues)}\n\n"
            "Generate a signing secret with:\n"
            '  python -c "import secrets; print(secrets.token_urlsafe(32))"'
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance with validation."""
    s = Settings()
    _validate_production_settings(s)
    return s


settings = get_settings()
