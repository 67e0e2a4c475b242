"""
Monitoring and observability package for the subscription service.
"""

from .sentry_config import init_sentry, capture_webhook_failure
from .prometheus_metrics import (
    metrics,
    increment_webhook_events,
    increment_subscription_transition,
    increment_deliveries_created,
    GatewayMetricsContext,
)

__all__ = [
    "init_sentry",
    "capture_webhook_failure",
    "metrics",
    "increment_webhook_events",
    "increment_subscription_transition",
    "increment_deliveries_created",
    "GatewayMetricsContext",
]
