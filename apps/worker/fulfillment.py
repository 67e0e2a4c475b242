"""
Daily delivery fulfillment sweep.

For each active subscription the worker decides whether a delivery is due
today and, if so, materializes exactly one for today. Paused subscriptions
are never selected. Running the sweep twice on the same day creates nothing
the second time.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlmodel import Session

from apps.core.config import DeliveryStatus, utcnow
from apps.core.exceptions import InvalidStateError, NotFoundError
from apps.db.models import Delivery, Subscription
from apps.api.services.planner import DeliverySchedulePlanner
from apps.api.services.store import SubscriptionStore

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Counters for one sweep run."""
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "created": self.created,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class DeliveryFulfillmentWorker:
    """
    Sweeps active subscriptions and creates due deliveries.

    partition=(index, total) restricts the sweep to the subscriptions whose
    id hashes to index, so concurrent workers never claim the same
    subscription in one run.
    """

    def __init__(
        self,
        session: Session,
        clock: Optional[Callable[[], datetime]] = None,
        partition: Tuple[int, int] = (0, 1)
    ):
        index, total = partition
        if total < 1 or not 0 <= index < total:
            raise ValueError(f"Invalid partition {partition}")
        self.store = SubscriptionStore(session)
        self.planner = DeliverySchedulePlanner(self.store)
        self.clock = clock or utcnow
        self.partition = partition

    def claims(self, subscription_id: str) -> bool:
        index, total = self.partition
        digest = hashlib.sha1(subscription_id.encode("utf-8")).hexdigest()
        return int(digest, 16) % total == index

    def sweep(self, today: Optional[date] = None) -> SweepReport:
        now = self.clock()
        if today is not None and today != now.date():
            now = datetime.combine(today, now.time())
        today = now.date()

        report = SweepReport()
        for subscription in self.store.due_for_sweep(today):
            if not self.claims(subscription.id):
                continue
            report.processed += 1
            try:
                if self.process_subscription(subscription, now):
                    report.created += 1
                else:
                    report.skipped += 1
            except Exception as e:
                self.store.rollback()
                logger.error(
                    "Fulfillment failed for subscription",
                    subscription_id=subscription.id,
                    error=str(e)
                )
                report.errors.append({"subscription_id": subscription.id, "error": str(e)})

        logger.info("Fulfillment sweep finished", day=today.isoformat(), **report.to_dict())
        return report

    def process_subscription(self, subscription: Subscription, now: datetime) -> bool:
        """Create today's delivery if one is due. Returns True if created."""
        today = now.date()
        last = self.store.last_delivery_on_or_before(subscription.id, today)
        last_at = last.scheduled_date if last else None

        if not self.planner.is_delivery_due(subscription, last_at, now):
            return False

        delivery, created = self.planner.materialize_day(subscription, today)
        if created:
            logger.info(
                "Delivery created by sweep",
                subscription_id=subscription.id,
                delivery_id=delivery.id,
                day=today.isoformat()
            )
        return created

    def reschedule_failed(self, delivery_id: str, reason: str) -> Delivery:
        """Mark a delivery failed and book a retry for the next day."""
        delivery = self.store.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError("Delivery", delivery_id)
        if not delivery.is_live or delivery.status == DeliveryStatus.DELIVERED.value:
            raise InvalidStateError(
                "Only open deliveries can be marked as failed",
                current_status=delivery.status
            )

        subscription = self.store.require(delivery.subscription_id)
        self.store.void_delivery(delivery, DeliveryStatus.FAILED, reason=reason)

        retry_day = self.clock().date() + timedelta(days=1)
        retry = self.planner.build_delivery(
            subscription,
            datetime.combine(retry_day, delivery.scheduled_date.time()),
            retry_count=delivery.retry_count + 1,
            previous_attempt_id=delivery.id,
            is_retry=True
        )
        retry, created = self.store.insert_delivery(retry)
        logger.info(
            "Failed delivery rescheduled",
            delivery_id=delivery.id,
            retry_id=retry.id,
            created=created,
            retry_count=retry.retry_count
        )
        return retry
