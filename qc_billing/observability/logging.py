"""
Structured Logging with Structlog.

Provides JSON-formatted logs with request context. Gateway key material and
signatures never reach the log stream: the redaction processor masks them
wherever they appear in an event.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from qc_billing.config import settings

# Event keys whose values are secrets or signatures
REDACTED_KEYS = frozenset(
    {
        "sign",
        "private_key",
        "public_key",
        "alipay_private_key",
        "alipay_public_key",
        "gemini_api_key",
    }
)
REDACTED_VALUE = "[redacted]"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "google_genai", "sqlalchemy.engine")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask key material and signatures, including inside nested param mappings."""
    for key, value in list(event_dict.items()):
        if key in REDACTED_KEYS and value:
            event_dict[key] = REDACTED_VALUE
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED_VALUE if k in REDACTED_KEYS and v else v for k, v in value.items()
            }
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "alipay_notify_credited",
        "level": "info",
        "timestamp": "2026-10-19T08:00:00.123456Z",
        "logger": "qc_billing.services.notifications",
        "service": "qc-billing-api",
        "version": "0.1.0",
        "request_id": "req-123",
        "order_id": "QC1700000000000ABC123",
        ...additional context
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("credits_granted", user_id=str(user_id), amount=12)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(request_id="req-123", order_id="QC1700000000000ABC123"):
            logger.info("processing_request")
            # All logs within this context will include request_id and order_id
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
