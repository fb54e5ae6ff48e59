"""Structured logging configuration.

Emits JSON log lines suitable for any JSON-based log aggregation system.
All logs include:
- ISO8601 timestamp
- Log level
- Logger name
- Event type (for filtering)
- Service metadata

Security events (token denials, idempotency conflicts, rate-limit rejections)
are tagged so alerting rules can select them without parsing messages.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from client_reporting.core.config import settings


class SIEMJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service metadata and event types."""

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            fmt='%(asctime)s %(levelname)s %(name)s %(message)s',
            rename_fields={
                'asctime': '@timestamp',
                'levelname': 'level',
                'name': 'logger',
            },
            **kwargs
        )

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add required fields to every log record."""
        super().add_fields(log_record, record, message_dict)

        log_record['@timestamp'] = datetime.now(timezone.utc).isoformat()

        log_record['service'] = {
            'name': settings.APP_NAME,
            'version': settings.APP_VERSION,
            'environment': settings.ENVIRONMENT,
        }

        if 'level' in log_record:
            log_record['level'] = log_record['level'].upper()

        if 'event_type' not in log_record:
            log_record['event_type'] = f"log.{record.name}"

        log_record['source'] = {
            'file': record.pathname,
            'line': record.lineno,
            'function': record.funcName,
        }


class SecurityEventFilter(logging.Filter):
    """Tag security-relevant records with ``is_security_event``."""

    SECURITY_LOGGERS = {
        'security.access',
        'security.auth',
        'security.idempotency',
        'security.ratelimit',
    }

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, 'is_security_event', False):
            record.is_security_event = any(
                record.name.startswith(name) for name in self.SECURITY_LOGGERS
            )
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured logging for the application.

    Call this at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    json_formatter = SIEMJsonFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(json_formatter)
    console_handler.addFilter(SecurityEventFilter())
    root_logger.addHandler(console_handler)

    _configure_uvicorn_loggers(json_formatter)

    logging.info(
        "Logging configured",
        extra={
            "event_type": "system.startup.logging_configured",
            "log_level": logging.getLevelName(level),
        }
    )


def _configure_uvicorn_loggers(formatter: logging.Formatter) -> None:
    """Configure uvicorn loggers to use JSON format."""
    for logger_name in ['uvicorn', 'uvicorn.error', 'uvicorn.access']:
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.propagate = False


def format_security_event(
    event_type: str,
    severity: str,
    description: str,
    agency_id: str | None = None,
    client_id: str | None = None,
    ip_address: str | None = None,
    reason: str | None = None,
    metadata: dict | None = None,
) -> dict:
    """Format a security event for structured logging.

    Only opaque identifiers belong here: no emails, names or tokens.

    Usage:
        security_logger.warning(
            "PDF access denied",
            extra=format_security_event(
                event_type="security.access.pdf_denied",
                severity="warning",
                description="Token expired",
                agency_id=agency_id,
                client_id=client_id,
                reason="TOKEN_EXPIRED",
            )
        )
    """
    event = {
        "event_type": event_type,
        "severity": severity,
        "description": description,
        "is_security_event": True,
    }

    if agency_id:
        event["agency_id"] = agency_id
    if client_id:
        event["client_id"] = client_id
    if ip_address:
        event["ip_address"] = ip_address
    if reason:
        event["reason"] = reason
    if metadata:
        event["metadata"] = metadata

    return event
