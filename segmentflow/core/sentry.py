"""
Sentry error tracking for the API process and the workers.

Provides:
- Automatic exception capture (FastAPI, SQLAlchemy, ERROR log records)
- Job context on exceptions that exhausted their retries
"""

import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from segmentflow.config import settings

logger = logging.getLogger(__name__)

# Global flag to track initialization
_sentry_initialized = False

SENSITIVE_FIELDS = ["accessToken", "access_token", "token", "secret", "password", "api_key"]


def init_sentry(component: str = "api") -> None:
    """
    Initialize the Sentry SDK.

    Called once from the API lifespan and from the worker entry point.
    """
    global _sentry_initialized

    if not settings.SENTRY_DSN:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=settings.VERSION,
            traces_sample_rate=0.1 if settings.is_production else 1.0,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.WARNING,
                    event_level=logging.ERROR,
                ),
            ],
            before_send=filter_sensitive_data,
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
        )
        sentry_sdk.set_tag("component", component)

        _sentry_initialized = True
        logger.info(f"Sentry initialized for {settings.ENVIRONMENT} environment ({component})")

    except Exception as e:
        logger.warning(f"Failed to initialize Sentry: {e}")


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Filter sensitive data before sending to Sentry.

    Removes store access tokens from request bodies and job payload extras.
    """
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        for header in ["authorization", "cookie", "x-shopify-access-token"]:
            if header in headers:
                headers[header] = "[Filtered]"

    for container in (event.get("request", {}).get("data"), event.get("extra", {}).get("payload")):
        if isinstance(container, dict):
            for field in SENSITIVE_FIELDS:
                if field in container:
                    container[field] = "[Filtered]"

    return event


def capture_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Capture an exception to Sentry with additional context.

    Returns:
        Sentry event ID if captured, None otherwise
    """
    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            if context:
                for key, value in context.items():
                    scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)

    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None
