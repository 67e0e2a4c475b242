"""
Celery tasks: daily fulfillment sweep, expiry sweep and webhook retries.
"""
from datetime import timedelta

from celery import Celery
from celery.schedules import crontab
from sqlmodel import Session
import structlog

from apps.core.config import WebhookEventStatus, utcnow
from apps.core.settings import settings
from apps.db.session import engine
from apps.api.services.lifecycle import SubscriptionLifecycleManager
from apps.api.services.reconciler import WebhookReconciler
from apps.api.services.store import SubscriptionStore
from apps.worker.fulfillment import DeliveryFulfillmentWorker

# Initialize Celery app
celery_app = Celery("subscriptions_worker")
celery_app.conf.broker_url = settings.redis_url
celery_app.conf.result_backend = settings.redis_url
celery_app.conf.task_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.result_serializer = "json"
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True
celery_app.conf.beat_schedule = {
    "expire-subscriptions-daily": {
        "task": "apps.worker.tasks.expire_subscriptions",
        "schedule": crontab(hour=settings.sweep_hour_utc, minute=0),
    },
    "fulfillment-sweep-daily": {
        "task": "apps.worker.tasks.run_fulfillment_sweep",
        "schedule": crontab(hour=settings.sweep_hour_utc, minute=15),
    },
    "retry-failed-webhooks-hourly": {
        "task": "apps.worker.tasks.retry_failed_webhooks",
        "schedule": crontab(minute=30),
    },
}

logger = structlog.get_logger(__name__)


def retry_delay(attempt: int) -> int:
    delays = settings.webhook_retry_delays
    if attempt < len(delays):
        return delays[attempt]
    return delays[-1]


@celery_app.task
def run_fulfillment_sweep(partition_index: int = 0, partition_total: int = 1):
    """Create today's due deliveries for one partition of subscriptions."""
    with Session(engine) as session:
        worker = DeliveryFulfillmentWorker(session, partition=(partition_index, partition_total))
        report = worker.sweep()
    return report.to_dict()


@celery_app.task
def expire_subscriptions():
    with Session(engine) as session:
        expired = SubscriptionLifecycleManager(session).expire_due()
    return {"expired": len(expired)}


@celery_app.task(bind=True, max_retries=None)
def process_webhook_event(self, event_id: str):
    """Apply a recorded webhook event, retrying until it is dead-lettered."""
    with Session(engine) as session:
        store = SubscriptionStore(session)
        if store.get_webhook_event(event_id) is None:
            logger.error("Webhook event missing from ledger", event_id=event_id)
            return {"status": "missing"}

        try:
            change = WebhookReconciler(session).process(event_id)
            status = "in_progress" if change.action == "in_progress" else "completed"
            return {"status": status, **change.to_dict()}
        except Exception as e:
            error = str(e)

        row = store.get_webhook_event(event_id)
        if row.status == WebhookEventStatus.DEAD_LETTER.value:
            logger.error("Webhook event dead-lettered", event_id=event_id, attempts=row.attempts)
            return {"status": "dead_letter", "error": error}

    delay = retry_delay(self.request.retries)
    logger.warning(
        "Webhook event processing failed, retrying",
        event_id=event_id,
        error=error,
        retry_attempt=self.request.retries + 1,
        retry_delay_seconds=delay
    )
    raise self.retry(countdown=delay)


@celery_app.task
def retry_failed_webhooks():
    """Re-enqueue failed ledger entries and those stuck past the processing lease."""
    stale_before = utcnow() - timedelta(seconds=settings.webhook_processing_lease_seconds)
    with Session(engine) as session:
        store = SubscriptionStore(session)
        events = store.list_webhook_events([WebhookEventStatus.FAILED]) + store.stale_webhook_events(stale_before)
        event_ids = [event.id for event in events]

    for event_id in event_ids:
        process_webhook_event.delay(event_id)
    logger.info("Webhook events requeued", count=len(event_ids))
    return {"requeued": len(event_ids)}
