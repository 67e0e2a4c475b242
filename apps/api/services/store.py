"""
Persistence for subscriptions, deliveries, transactions and the webhook ledger.

Every status change goes through a conditional UPDATE so concurrent
writers (duplicate webhooks, a user pausing while a payment lands) can
never both win. Delivery inserts are guarded by the unique delivery_key.
"""
from datetime import date, datetime, time
from typing import Any, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from apps.core.config import (
    DeliveryStatus,
    SubscriptionStatus,
    TransactionStatus,
    VOID_DELIVERY_STATUSES,
    WebhookEventStatus,
    utcnow,
)
from apps.core.exceptions import NotFoundError
from apps.db.models import Delivery, PaymentTransaction, Subscription, WebhookEvent

logger = structlog.get_logger(__name__)

_LIVE_DELIVERY_STATUSES = [s.value for s in DeliveryStatus if s not in VOID_DELIVERY_STATUSES]


def _values(statuses: Iterable[Any]) -> List[str]:
    return [getattr(s, "value", s) for s in statuses]


class SubscriptionStore:
    """Data access for the subscription engine, bound to one Session."""

    def __init__(self, session: Session):
        self.session = session

    def rollback(self) -> None:
        self.session.rollback()

    # Subscriptions

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self.session.get(Subscription, subscription_id)

    def require(self, subscription_id: str) -> Subscription:
        subscription = self.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def get_for_owner(self, subscription_id: str, owner_id: str) -> Subscription:
        """Load a subscription, hiding records that belong to someone else."""
        subscription = self.get(subscription_id)
        if subscription is None or subscription.owner_id != owner_id:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def list_for_owner(self, owner_id: str) -> List[Subscription]:
        statement = (
            select(Subscription)
            .where(Subscription.owner_id == owner_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(self.session.exec(statement).all())

    def find_by_reference(
        self,
        reference: str,
        status: Optional[SubscriptionStatus] = None
    ) -> Optional[Subscription]:
        statement = select(Subscription).where(Subscription.payment_reference == reference)
        if status is not None:
            statement = statement.where(Subscription.status == status.value)
        return self.session.exec(statement.order_by(Subscription.created_at.desc())).first()

    def find_active_for_owner_plan(self, owner_id: str, plan_id: str) -> Optional[Subscription]:
        statement = select(Subscription).where(
            Subscription.owner_id == owner_id,
            Subscription.plan_id == plan_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value
        )
        return self.session.exec(statement).first()

    def add(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        return subscription

    def delete(self, subscription: Subscription) -> None:
        self.session.delete(subscription)
        self.session.commit()

    def compare_and_set(
        self,
        subscription_id: str,
        expected: Iterable[SubscriptionStatus],
        new_status: SubscriptionStatus,
        **fields: Any
    ) -> bool:
        """
        Move a subscription to new_status only if its current status is one
        of expected. Returns True when this call performed the transition.
        """
        expected_values = _values(expected)
        statement = (
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .where(Subscription.status.in_(expected_values))
            .values(status=new_status.value, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(statement)
        self.session.commit()
        won = result.rowcount == 1
        logger.debug(
            "Subscription status compare-and-set",
            subscription_id=subscription_id,
            expected=expected_values,
            new_status=new_status.value,
            won=won
        )
        return won

    def update_fields(self, subscription_id: str, **fields: Any) -> None:
        """Write non-status fields (order_id and friends)."""
        statement = (
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(statement)
        self.session.commit()

    def due_for_sweep(self, today: date) -> List[Subscription]:
        """Active subscriptions whose term has not ended before today."""
        statement = (
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .where(Subscription.end_date >= datetime.combine(today, time.min))
            .order_by(Subscription.created_at)
        )
        return list(self.session.exec(statement).all())

    def past_term(self, today: date) -> List[Subscription]:
        """Active subscriptions whose end date falls before today."""
        statement = (
            select(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .where(Subscription.end_date < datetime.combine(today, time.min))
        )
        return list(self.session.exec(statement).all())

    # Deliveries

    def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        return self.session.get(Delivery, delivery_id)

    def find_live_delivery(self, subscription_id: str, day: date) -> Optional[Delivery]:
        statement = select(Delivery).where(Delivery.delivery_key == Delivery.make_key(subscription_id, day))
        return self.session.exec(statement).first()

    def insert_delivery(self, delivery: Delivery) -> Tuple[Delivery, bool]:
        """
        Insert a delivery unless its (subscription, day) slot is taken.

        Returns (delivery, created). When another writer got there first the
        existing record is returned with created=False.
        """
        self.session.add(delivery)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.find_live_delivery(delivery.subscription_id, delivery.delivery_day)
            if existing is None:
                raise
            logger.info(
                "Delivery already scheduled for day",
                subscription_id=delivery.subscription_id,
                delivery_day=delivery.delivery_day.isoformat()
            )
            return existing, False
        self.session.refresh(delivery)
        return delivery, True

    def last_delivery_on_or_before(self, subscription_id: str, day: date) -> Optional[Delivery]:
        statement = (
            select(Delivery)
            .where(Delivery.subscription_id == subscription_id)
            .where(Delivery.status.in_(_LIVE_DELIVERY_STATUSES))
            .where(Delivery.delivery_day <= day)
            .order_by(Delivery.delivery_day.desc())
        )
        return self.session.exec(statement).first()

    def first_live_delivery(self, subscription_id: str, from_day: date) -> Optional[Delivery]:
        statement = (
            select(Delivery)
            .where(Delivery.subscription_id == subscription_id)
            .where(Delivery.status.in_(_LIVE_DELIVERY_STATUSES))
            .where(Delivery.delivery_day >= from_day)
            .order_by(Delivery.delivery_day)
        )
        return self.session.exec(statement).first()

    def future_live_deliveries(self, subscription_id: str, after_day: date) -> List[Delivery]:
        statement = (
            select(Delivery)
            .where(Delivery.subscription_id == subscription_id)
            .where(Delivery.status.in_([DeliveryStatus.PENDING.value, DeliveryStatus.ASSIGNED.value]))
            .where(Delivery.delivery_day > after_day)
        )
        return list(self.session.exec(statement).all())

    def list_deliveries(
        self,
        subscription_id: str,
        page: int = 1,
        page_size: int = 20,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> Tuple[List[Delivery], int]:
        """Deliveries of a subscription in schedule order, one page at a time."""
        conditions = [Delivery.subscription_id == subscription_id]
        if date_from is not None:
            conditions.append(Delivery.delivery_day >= date_from)
        if date_to is not None:
            conditions.append(Delivery.delivery_day <= date_to)

        total = self.session.exec(select(func.count()).select_from(Delivery).where(*conditions)).one()
        statement = (
            select(Delivery)
            .where(*conditions)
            .order_by(Delivery.scheduled_date, Delivery.created_at)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(self.session.exec(statement).all()), int(total)

    def void_delivery(
        self,
        delivery: Delivery,
        status: DeliveryStatus = DeliveryStatus.CANCELLED,
        reason: Optional[str] = None
    ) -> Delivery:
        """Cancel or fail a delivery and free its day for a new record."""
        now = utcnow()
        delivery.status = status.value
        delivery.failed_reason = reason
        if status == DeliveryStatus.FAILED:
            delivery.failed_at = now
        delivery.updated_at = now
        delivery.release_key()
        self.session.add(delivery)
        self.session.commit()
        self.session.refresh(delivery)
        return delivery

    # Payment transactions

    def add_transaction(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.session.add(transaction)
        self.session.commit()
        self.session.refresh(transaction)
        return transaction

    def delete_transaction(self, transaction: PaymentTransaction) -> None:
        self.session.delete(transaction)
        self.session.commit()

    def find_transaction(self, reference: str) -> Optional[PaymentTransaction]:
        statement = select(PaymentTransaction).where(PaymentTransaction.reference == reference)
        return self.session.exec(statement).first()

    def transaction_compare_and_set(
        self,
        reference: str,
        expected: Iterable[TransactionStatus],
        new_status: TransactionStatus,
        **fields: Any
    ) -> bool:
        statement = (
            update(PaymentTransaction)
            .where(PaymentTransaction.reference == reference)
            .where(PaymentTransaction.status.in_(_values(expected)))
            .values(status=new_status.value, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(statement)
        self.session.commit()
        return result.rowcount == 1

    # Webhook ledger

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self.session.get(WebhookEvent, event_id)

    def save_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        event.updated_at = utcnow()
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def list_webhook_events(self, statuses: Iterable[Any]) -> List[WebhookEvent]:
        statement = (
            select(WebhookEvent)
            .where(WebhookEvent.status.in_(_values(statuses)))
            .order_by(WebhookEvent.created_at)
        )
        return list(self.session.exec(statement).all())

    def claim_webhook_event(self, event_id: str, now: datetime, stale_before: datetime) -> bool:
        """
        Move an event to processing and count the attempt. Fails when the
        event is finished or another worker holds a claim taken after
        stale_before.
        """
        claimable = or_(
            WebhookEvent.status.in_(_values([WebhookEventStatus.RECEIVED, WebhookEventStatus.FAILED])),
            and_(
                WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                or_(WebhookEvent.claimed_at.is_(None), WebhookEvent.claimed_at < stale_before)
            )
        )
        statement = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .where(claimable)
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                attempts=WebhookEvent.attempts + 1,
                claimed_at=now,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(statement)
        self.session.commit()
        return result.rowcount == 1

    def stale_webhook_events(self, stale_before: datetime) -> List[WebhookEvent]:
        """Events never picked up, or left processing by a worker that died."""
        statement = (
            select(WebhookEvent)
            .where(or_(
                and_(
                    WebhookEvent.status == WebhookEventStatus.RECEIVED.value,
                    WebhookEvent.created_at < stale_before
                ),
                and_(
                    WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                    or_(WebhookEvent.claimed_at.is_(None), WebhookEvent.claimed_at < stale_before)
                )
            ))
            .order_by(WebhookEvent.created_at)
        )
        return list(self.session.exec(statement).all())
