"""
Sentry integration for the subscription service.
Captures failures that happen after a webhook has been acknowledged.
"""

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
import structlog

from apps.core.settings import settings

logger = structlog.get_logger(__name__)


def init_sentry(component: str = "api"):
    """Initialize Sentry when a DSN is configured."""
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, skipping Sentry initialization")
        return False

    integrations = [CeleryIntegration()] if component == "worker" else [FastApiIntegration()]

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        integrations=integrations,
    )
    sentry_sdk.set_tag("service", "cylinder-subscriptions")
    sentry_sdk.set_tag("component", component)

    logger.info("sentry_initialized", environment=settings.environment, component=component)
    return True


def capture_webhook_failure(event_id: str, event_type: str, error: Exception, dead_letter: bool):
    """Report a webhook event that could not be applied."""
    sentry_sdk.capture_exception(
        error,
        tags={"webhook_event_type": event_type, "dead_letter": str(dead_letter).lower()},
        contexts={"webhook": {"event_id": event_id}},
    )
