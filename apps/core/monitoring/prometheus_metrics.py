"""
Prometheus metrics for the subscription service.
Tracks webhook handling, subscription transitions, delivery materialization
and payment gateway latency.
"""

from prometheus_client import Counter, Histogram, CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest
from fastapi import Response
import time
import structlog

logger = structlog.get_logger(__name__)

# Create custom registry for our metrics
registry = CollectorRegistry()

# Webhook Metrics
webhook_events = Counter(
    'subscriptions_webhook_events_total',
    'Total gateway webhook events processed',
    ['event_type', 'status'],
    registry=registry
)

# Lifecycle Metrics
subscription_transitions = Counter(
    'subscriptions_transitions_total',
    'Subscription status transitions applied',
    ['from_status', 'to_status'],
    registry=registry
)

# Delivery Metrics
deliveries_created = Counter(
    'subscriptions_deliveries_created_total',
    'Delivery records materialized',
    ['source'],
    registry=registry
)

# Gateway Metrics
gateway_request_duration = Histogram(
    'subscriptions_gateway_request_duration_seconds',
    'Payment gateway request duration in seconds',
    ['operation', 'outcome'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0, float('inf')],
    registry=registry
)


class MetricsCollector:
    """Centralized metrics collection and helper methods."""

    def __init__(self):
        self.registry = registry

    def get_metrics_response(self) -> Response:
        """Return Prometheus metrics as HTTP response."""
        metrics_data = generate_latest(self.registry)
        return Response(
            content=metrics_data,
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


def increment_webhook_events(event_type: str, status: str):
    """Increment webhook event counter."""
    webhook_events.labels(event_type=event_type, status=status).inc()


def increment_subscription_transition(from_status: str, to_status: str):
    """Count a status transition that was actually written."""
    subscription_transitions.labels(from_status=from_status, to_status=to_status).inc()
    logger.debug(
        "subscription_transition_recorded",
        from_status=from_status,
        to_status=to_status
    )


def increment_deliveries_created(source: str, amount: int = 1):
    """Count delivery records inserted by the planner."""
    if amount:
        deliveries_created.labels(source=source).inc(amount)


def observe_gateway_request_duration(operation: str, outcome: str, duration_seconds: float):
    """Record payment gateway request duration."""
    gateway_request_duration.labels(operation=operation, outcome=outcome).observe(duration_seconds)


class GatewayMetricsContext:
    """Context manager recording duration and outcome of a gateway call."""

    def __init__(self, operation: str):
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            duration = time.time() - self.start_time
            outcome = "error" if exc_type else "ok"
            observe_gateway_request_duration(self.operation, outcome, duration)
        return False
