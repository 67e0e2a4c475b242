"""
Subscription lifecycle: create, pause, resume, cancel, renew and expire.

State machine:

    pending --payment success--> active --pause--> paused --resume--> active
    pending|active|paused --cancel--> cancelled
    active --end of term--> expired
    pending --payment failure--> cancelled

cancelled and expired are terminal; renew reactivates them through a new
payment.
"""
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Union
import uuid

import structlog
from sqlmodel import Session

from apps.core.config import (
    PaymentPurpose,
    SubscriptionStatus,
    DeliveryStatus,
    utcnow,
)
from apps.core.exceptions import (
    ConflictError,
    ConsistencyError,
    GatewayError,
    InvalidStateError,
)
from apps.core.monitoring import increment_subscription_transition
from apps.core.settings import settings
from apps.db.models import Delivery, PauseRecord, PaymentTransaction, Subscription
from apps.api.services.catalog import PlanCatalog
from apps.api.services.gateway import PaymentGatewayClient
from apps.api.services.metadata import SubscriptionPurchase, SubscriptionRenewal, encode_metadata
from apps.api.services.planner import DeliverySchedulePlanner, MaterializationResult, to_ms
from apps.api.services.store import SubscriptionStore

logger = structlog.get_logger(__name__)


def new_reference(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


@dataclass
class CheckoutSession:
    """A pending subscription and the gateway checkout that will pay for it."""
    subscription: Subscription
    authorization_url: str
    reference: str

    def to_dict(self) -> dict:
        return {
            "authorization_url": self.authorization_url,
            "reference": self.reference,
            "subscription": self.subscription.to_dict(),
        }


@dataclass
class DeliveryPage:
    items: List[Delivery]
    total: int
    page: int
    page_size: int

    def to_dict(self) -> dict:
        return {
            "items": [d.to_dict() for d in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
        }


class SubscriptionLifecycleManager:
    """Orchestrates subscription state changes for owners and admins."""

    def __init__(
        self,
        session: Session,
        gateway: Optional[PaymentGatewayClient] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = SubscriptionStore(session)
        self.catalog = PlanCatalog(session)
        self.planner = DeliverySchedulePlanner(self.store)
        self.gateway = gateway or PaymentGatewayClient()
        self.clock = clock or utcnow

    def _load(self, subscription_id: str, owner_id: Optional[str]) -> Subscription:
        if owner_id is None:
            return self.store.require(subscription_id)
        return self.store.get_for_owner(subscription_id, owner_id)

    def _lost_race(self, subscription_id: str, operation: str) -> InvalidStateError:
        current = self.store.require(subscription_id)
        return InvalidStateError(
            f"Subscription changed state during {operation}",
            current_status=current.status
        )

    def create(
        self,
        owner_id: str,
        owner_email: str,
        plan_id: str,
        size: Union[str, int],
        frequency: str,
        subscription_period: Optional[int] = None
    ) -> CheckoutSession:
        """Open a pending subscription and a gateway checkout for it."""
        plan = self.catalog.get_plan(plan_id)
        size_kg, parsed_frequency, period = self.catalog.validate_request(
            plan, size, frequency, subscription_period
        )

        if self.store.find_active_for_owner_plan(owner_id, plan.id):
            raise ConflictError(
                "You already have an active subscription for this plan",
                details={"plan_id": plan.id}
            )

        price = self.catalog.calculate_price(plan, size_kg)
        now = self.clock()
        reference = new_reference("SUB")

        subscription = self.store.add(Subscription(
            owner_id=owner_id,
            owner_email=owner_email,
            plan_id=plan.id,
            plan_name=plan.name,
            size=size_kg,
            frequency=parsed_frequency.value,
            subscription_period=period,
            price=price,
            status=SubscriptionStatus.PENDING.value,
            start_date=now,
            end_date=self.planner.calculate_end_date(now, parsed_frequency, period),
            payment_reference=reference
        ))

        metadata = SubscriptionPurchase(
            owner_id=owner_id,
            plan_id=plan.id,
            size=size_kg,
            frequency=parsed_frequency.value,
            subscription_period=period,
            subscription_id=subscription.id
        )
        checkout = self._open_checkout(subscription, metadata, PaymentPurpose.PURCHASE, subscription.id)

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            owner_id=owner_id,
            plan_id=plan.id,
            frequency=parsed_frequency.value,
            reference=reference
        )
        return checkout

    def _open_checkout(
        self,
        subscription: Subscription,
        metadata: Union[SubscriptionPurchase, SubscriptionRenewal],
        purpose: PaymentPurpose,
        target_subscription_id: str
    ) -> CheckoutSession:
        """Record the transaction and initialize it; undo both on gateway failure."""
        encoded = encode_metadata(metadata)
        transaction = self.store.add_transaction(PaymentTransaction(
            reference=subscription.payment_reference,
            owner_id=subscription.owner_id,
            email=subscription.owner_email,
            amount=subscription.price,
            amount_minor=to_minor_units(subscription.price),
            currency=settings.currency,
            purpose=purpose.value,
            subscription_id=target_subscription_id,
            metadata_json=json.dumps(encoded)
        ))

        try:
            result = self.gateway.initialize(
                email=subscription.owner_email,
                amount_minor=transaction.amount_minor,
                metadata=encoded,
                callback_url=settings.payment_callback_url,
                webhook_url=settings.payment_webhook_url,
                reference=subscription.payment_reference
            )
        except GatewayError:
            logger.warning(
                "Gateway initialize failed, rolling back pending subscription",
                subscription_id=subscription.id,
                reference=subscription.payment_reference
            )
            self.store.delete_transaction(transaction)
            self.store.delete(subscription)
            raise

        return CheckoutSession(
            subscription=subscription,
            authorization_url=result["authorization_url"],
            reference=result.get("reference") or subscription.payment_reference
        )

    def pause(self, subscription_id: str, owner_id: Optional[str] = None) -> Subscription:
        """Freeze the remaining term of an active subscription."""
        subscription = self._load(subscription_id, owner_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Cannot pause a {subscription.status} subscription",
                current_status=subscription.status
            )
        if subscription.is_one_time:
            raise InvalidStateError("One-time deliveries cannot be paused", current_status=subscription.status)

        now = self.clock()
        remaining = max(to_ms(subscription.end_date - now), 0)
        if not self.store.compare_and_set(
            subscription.id,
            [SubscriptionStatus.ACTIVE],
            SubscriptionStatus.PAUSED,
            paused_at=now,
            remaining_duration_ms=remaining
        ):
            raise self._lost_race(subscription.id, "pause")

        increment_subscription_transition(SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAUSED.value)
        voided = self._void_future_deliveries(subscription.id, now.date(), "Subscription paused")
        logger.info(
            "Subscription paused",
            subscription_id=subscription.id,
            remaining_duration_ms=remaining,
            deliveries_cancelled=voided
        )
        return self.store.require(subscription.id)

    def resume(self, subscription_id: str, owner_id: Optional[str] = None) -> Subscription:
        """
        Restart the term from now with the time that was left at pause.

        Deliveries continue one cadence step after the last delivery, pushed
        later by the time spent paused.
        """
        subscription = self._load(subscription_id, owner_id)
        if subscription.status != SubscriptionStatus.PAUSED.value:
            raise InvalidStateError(
                f"Cannot resume a {subscription.status} subscription",
                current_status=subscription.status
            )
        if subscription.remaining_duration_ms is None:
            raise ConsistencyError(
                "Paused subscription has no remaining duration recorded",
                details={"subscription_id": subscription.id}
            )

        now = self.clock()
        paused_at = subscription.paused_at or now
        record = PauseRecord(
            paused_at=paused_at,
            resumed_at=now,
            duration_ms=max(to_ms(now - paused_at), 0)
        )
        history = list(subscription.pause_history or []) + [record.to_json()]
        new_end = now + timedelta(milliseconds=subscription.remaining_duration_ms)
        last = self.store.last_delivery_on_or_before(subscription.id, now.date())
        anchor = self.planner.anchor_after_pause(
            subscription,
            last.scheduled_date if last else None,
            paused_at,
            now
        )

        if not self.store.compare_and_set(
            subscription.id,
            [SubscriptionStatus.PAUSED],
            SubscriptionStatus.ACTIVE,
            paused_at=None,
            remaining_duration_ms=None,
            pause_history=history,
            start_date=now,
            end_date=new_end,
            schedule_anchor=anchor
        ):
            raise self._lost_race(subscription.id, "resume")

        increment_subscription_transition(SubscriptionStatus.PAUSED.value, SubscriptionStatus.ACTIVE.value)
        resumed = self.store.require(subscription.id)
        self.planner.materialize(resumed, today=now.date(), source="resume")
        logger.info(
            "Subscription resumed",
            subscription_id=subscription.id,
            paused_ms=record.duration_ms,
            end_date=new_end.isoformat(),
            next_delivery=anchor.isoformat()
        )
        return self.store.require(subscription.id)

    def cancel(self, subscription_id: str, owner_id: Optional[str] = None) -> Subscription:
        subscription = self._load(subscription_id, owner_id)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise InvalidStateError("Subscription is already cancelled", current_status=subscription.status)
        if subscription.status == SubscriptionStatus.EXPIRED.value:
            raise InvalidStateError("Expired subscriptions cannot be cancelled", current_status=subscription.status)

        previous = subscription.status
        now = self.clock()
        if not self.store.compare_and_set(
            subscription.id,
            [SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED],
            SubscriptionStatus.CANCELLED,
            cancelled_at=now,
            paused_at=None,
            remaining_duration_ms=None
        ):
            raise self._lost_race(subscription.id, "cancel")

        increment_subscription_transition(previous, SubscriptionStatus.CANCELLED.value)
        self._void_future_deliveries(subscription.id, now.date(), "Subscription cancelled")
        logger.info("Subscription cancelled", subscription_id=subscription.id, previous_status=previous)
        return self.store.require(subscription.id)

    def renew(self, subscription_id: str, owner_id: Optional[str] = None) -> CheckoutSession:
        """Open a renewal checkout for a cancelled or expired subscription."""
        existing = self._load(subscription_id, owner_id)
        if existing.status not in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
            raise ConsistencyError(
                "Only cancelled or expired subscriptions can be renewed",
                details={"subscription_id": existing.id, "current_status": existing.status}
            )

        plan = self.catalog.get_plan(existing.plan_id)
        if self.store.find_active_for_owner_plan(existing.owner_id, plan.id):
            raise ConflictError(
                "You already have an active subscription for this plan",
                details={"plan_id": plan.id}
            )

        now = self.clock()
        reference = new_reference("RNW")
        price = self.catalog.calculate_price(plan, existing.size)

        placeholder = self.store.add(Subscription(
            owner_id=existing.owner_id,
            owner_email=existing.owner_email,
            plan_id=plan.id,
            plan_name=plan.name,
            size=existing.size,
            frequency=existing.frequency,
            subscription_period=existing.subscription_period,
            price=price,
            status=SubscriptionStatus.PENDING.value,
            start_date=now,
            end_date=self.planner.calculate_end_date(now, existing.frequency, existing.subscription_period),
            payment_reference=reference,
            renewed_from_id=existing.id
        ))

        metadata = SubscriptionRenewal(
            owner_id=existing.owner_id,
            plan_id=plan.id,
            subscription_id=existing.id,
            new_subscription_id=placeholder.id
        )
        checkout = self._open_checkout(placeholder, metadata, PaymentPurpose.RENEWAL, existing.id)
        logger.info(
            "Subscription renewal started",
            subscription_id=existing.id,
            placeholder_id=placeholder.id,
            reference=reference
        )
        return checkout

    def expire_due(self, now: Optional[datetime] = None) -> List[str]:
        """Move active subscriptions whose term ended before today to expired."""
        now = now or self.clock()
        expired = []
        for subscription in self.store.past_term(now.date()):
            if self.store.compare_and_set(
                subscription.id,
                [SubscriptionStatus.ACTIVE],
                SubscriptionStatus.EXPIRED,
                expired_at=now
            ):
                increment_subscription_transition(SubscriptionStatus.ACTIVE.value, SubscriptionStatus.EXPIRED.value)
                expired.append(subscription.id)

        logger.info("Expiry sweep finished", expired=len(expired))
        return expired

    def schedule(self, subscription_id: str, override: bool = False) -> MaterializationResult:
        """Admin: (re)materialize the schedule of an active subscription."""
        subscription = self.store.require(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidStateError(
                "Only active subscriptions can be scheduled",
                current_status=subscription.status
            )
        return self.planner.materialize(subscription, today=self.clock().date(), override=override, source="admin")

    def get(self, subscription_id: str, owner_id: str) -> Subscription:
        return self.store.get_for_owner(subscription_id, owner_id)

    def list_mine(self, owner_id: str) -> List[Subscription]:
        return self.store.list_for_owner(owner_id)

    def get_deliveries(
        self,
        owner_id: str,
        subscription_id: str,
        page: int = 1,
        page_size: int = 20,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> DeliveryPage:
        self.store.get_for_owner(subscription_id, owner_id)
        items, total = self.store.list_deliveries(subscription_id, page, page_size, date_from, date_to)
        return DeliveryPage(items=items, total=total, page=page, page_size=page_size)

    def _void_future_deliveries(self, subscription_id: str, today: date, reason: str) -> int:
        deliveries = self.store.future_live_deliveries(subscription_id, today)
        for delivery in deliveries:
            self.store.void_delivery(delivery, DeliveryStatus.CANCELLED, reason=reason)
        return len(deliveries)
