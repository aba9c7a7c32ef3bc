"""
Sentry configuration for error tracking.

Captures unhandled API exceptions and delivery worker crashes, tagged with
tenant and delivery context.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from alumni_hooks.config import settings
from alumni_hooks.logging_config import get_logger


logger = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Does nothing unless SENTRY_DSN is set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.info("sentry_disabled")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=strip_secrets,
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)


def strip_secrets(event, hint):
    """Drop webhook signing secrets from request bodies before sending."""
    data = event.get("request", {}).get("data")
    if isinstance(data, dict) and "secret" in data:
        data["secret"] = "[Filtered]"
    return event


def capture_exception(exc_info=None, **tags):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            ...
        except Exception:
            capture_exception(delivery_id=delivery_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            if value is not None:
                scope.set_tag(key, str(value))
        sentry_sdk.capture_exception(exc_info)
