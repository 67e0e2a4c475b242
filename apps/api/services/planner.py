"""
Delivery schedule planning.

Date arithmetic is pure; materialization writes through the store and is
idempotent per (subscription, day).
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple, Union

import structlog
from dateutil.relativedelta import relativedelta

from apps.core.config import DAYS_PER_PERIOD, DeliveryStatus, Frequency
from apps.core.monitoring import increment_deliveries_created
from apps.core.settings import settings
from apps.db.models import Delivery, Subscription
from apps.api.services.store import SubscriptionStore

logger = structlog.get_logger(__name__)

_CADENCE = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.BI_WEEKLY: relativedelta(weeks=2),
    Frequency.MONTHLY: relativedelta(months=1),
}


def to_ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


@dataclass
class MaterializationResult:
    """Outcome of writing a schedule."""
    created: List[Delivery] = field(default_factory=list)
    skipped: List[date] = field(default_factory=list)
    capped: bool = False


class DeliverySchedulePlanner:
    """Computes delivery dates and turns them into delivery records."""

    def __init__(self, store: SubscriptionStore, max_deliveries: Optional[int] = None):
        self.store = store
        self.max_deliveries = max_deliveries or settings.max_deliveries_per_run

    @staticmethod
    def cadence_step(frequency: Union[str, Frequency]) -> relativedelta:
        frequency = Frequency.parse(frequency)
        if frequency not in _CADENCE:
            raise ValueError("One-Time deliveries have no cadence")
        return _CADENCE[frequency]

    @classmethod
    def next_delivery_date(cls, current: datetime, frequency: Union[str, Frequency]) -> datetime:
        return current + cls.cadence_step(frequency)

    @staticmethod
    def calculate_end_date(start: datetime, frequency: Union[str, Frequency], subscription_period: int) -> datetime:
        """
        End of the term bought at start.

        Daily, Weekly and Bi-Weekly terms are a fixed number of days per
        month of period (30, 28 and 56); Monthly terms are calendar months.
        """
        frequency = Frequency.parse(frequency)
        if frequency == Frequency.ONE_TIME:
            return start
        if frequency == Frequency.MONTHLY:
            return start + relativedelta(months=subscription_period)
        return start + timedelta(days=DAYS_PER_PERIOD[frequency] * subscription_period)

    def schedule_dates(self, subscription: Subscription, today: date) -> Tuple[List[datetime], bool]:
        """
        Delivery instants from max(anchor, today) through end_date inclusive.

        Returns (dates, capped). Dates are stepped from the schedule anchor by
        multiples of the cadence so month-end clamping never drifts.
        """
        if subscription.is_one_time:
            return [subscription.start_date], False

        step = self.cadence_step(subscription.frequency)
        anchor = subscription.anchor_date
        dates: List[datetime] = []
        n = 0
        while True:
            candidate = anchor + step * n
            n += 1
            if candidate > subscription.end_date:
                return dates, False
            if candidate.date() < today:
                continue
            if len(dates) >= self.max_deliveries:
                return dates, True
            dates.append(candidate)

    def build_delivery(self, subscription: Subscription, scheduled: datetime, **fields) -> Delivery:
        return Delivery(
            subscription_id=subscription.id,
            owner_id=subscription.owner_id,
            scheduled_date=scheduled,
            delivery_day=scheduled.date(),
            delivery_key=Delivery.make_key(subscription.id, scheduled.date()),
            plan_name=subscription.plan_name,
            size=subscription.size,
            frequency=subscription.frequency,
            price=subscription.price,
            **fields
        )

    def materialize(
        self,
        subscription: Subscription,
        today: date,
        override: bool = False,
        source: str = "schedule"
    ) -> MaterializationResult:
        """
        Insert a delivery for every scheduled day that has none.

        With override, an existing live delivery for a day is cancelled and
        replaced by a fresh record.
        """
        dates, capped = self.schedule_dates(subscription, today)
        result = MaterializationResult(capped=capped)

        for scheduled in dates:
            existing = self.store.find_live_delivery(subscription.id, scheduled.date())
            if existing is not None:
                if not override:
                    result.skipped.append(scheduled.date())
                    continue
                self.store.void_delivery(existing, DeliveryStatus.CANCELLED, reason="Replaced by reschedule")

            delivery, created = self.store.insert_delivery(self.build_delivery(subscription, scheduled))
            if created:
                result.created.append(delivery)
            else:
                result.skipped.append(scheduled.date())

        increment_deliveries_created(source, len(result.created))
        if capped:
            logger.warning(
                "Delivery schedule capped",
                subscription_id=subscription.id,
                max_deliveries=self.max_deliveries
            )
        logger.info(
            "Delivery schedule materialized",
            subscription_id=subscription.id,
            created=len(result.created),
            skipped=len(result.skipped),
            override=override
        )
        return result

    def materialize_day(self, subscription: Subscription, day: date) -> Tuple[Delivery, bool]:
        """Insert the delivery for a single day unless one already exists."""
        existing = self.store.find_live_delivery(subscription.id, day)
        if existing is not None:
            return existing, False

        scheduled = datetime.combine(day, subscription.anchor_date.time())
        delivery, created = self.store.insert_delivery(self.build_delivery(subscription, scheduled))
        if created:
            increment_deliveries_created("sweep")
        return delivery, created

    def next_in_sequence(self, subscription: Subscription, after: Optional[date]) -> datetime:
        """First cadence date stepped from the anchor that falls on a day after `after`."""
        anchor = subscription.anchor_date
        if after is None:
            return anchor
        step = self.cadence_step(subscription.frequency)
        n = 0
        candidate = anchor
        while candidate.date() <= after:
            n += 1
            candidate = anchor + step * n
        return candidate

    def anchor_after_pause(
        self,
        subscription: Subscription,
        last_delivery: Optional[datetime],
        paused_at: datetime,
        resumed_at: datetime
    ) -> datetime:
        """
        First delivery of the sequence that continues after a pause.

        The next cadence date after the last delivery is pushed later by the
        time spent paused. A delivery that fell due before the pause started, or
        a subscription that never had one, is served on resume.
        """
        if last_delivery is None:
            return resumed_at
        following = self.next_in_sequence(subscription, last_delivery.date())
        if following >= paused_at:
            following += resumed_at - paused_at
        return max(following, resumed_at)

    @staticmethod
    def paused_ms_since(subscription: Subscription, since: datetime, now: datetime) -> int:
        """Milliseconds of [since, now] the subscription spent paused."""
        intervals = [(record.paused_at, record.resumed_at) for record in subscription.pause_records()]
        if subscription.paused_at is not None:
            intervals.append((subscription.paused_at, now))

        total = 0
        for paused_at, resumed_at in intervals:
            overlap_start = max(paused_at, since)
            overlap_end = min(resumed_at, now)
            if overlap_end > overlap_start:
                total += to_ms(overlap_end - overlap_start)
        return total

    def is_delivery_due(
        self,
        subscription: Subscription,
        last_delivery: Optional[datetime],
        now: datetime
    ) -> bool:
        """
        Whether a new delivery is due today.

        The next date comes from the same anchored sequence as the
        materialized schedule, shifted by time spent paused since the last
        delivery (or the anchor). Compared by day.
        """
        if subscription.is_one_time:
            return last_delivery is None

        anchor = subscription.anchor_date
        if last_delivery is None:
            candidate, since = anchor, anchor
        else:
            candidate = self.next_in_sequence(subscription, last_delivery.date())
            since = max(anchor, datetime.combine(last_delivery.date(), time.min))

        due = candidate + timedelta(milliseconds=self.paused_ms_since(subscription, since, now))
        return due.date() <= now.date() and due <= subscription.end_date
