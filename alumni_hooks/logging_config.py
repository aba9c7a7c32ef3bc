"""
Structured logging configuration using structlog.

Every log line is a JSON object. Services bind a ``component`` field;
request and delivery handlers add tenant_id, webhook_id and delivery_id.
"""
import logging
import sys

import structlog

from alumni_hooks.config import settings


def configure_logging(level: int | None = None):
    """Configure structlog for JSON output with context."""
    if level is None:
        level = logging.DEBUG if settings.DEBUG else logging.INFO

    # Third-party libraries (uvicorn, arq, httpx) log through the stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(component="dispatcher", tenant_id=tenant_id)
        log.info("event_dispatched", deliveries=3)
    """
    return logger.bind(**context)
