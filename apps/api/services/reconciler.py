"""
Reconciliation of payment gateway notifications with subscription state.

Webhooks arrive at least once, possibly out of order and concurrently.
Each handler reads the current status and writes its transition through a
compare-and-set, so replays and races collapse into no-ops.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from apps.core.config import (
    SubscriptionStatus,
    TransactionStatus,
    WebhookEventStatus,
    utcnow,
)
from apps.core.exceptions import AuthenticationError, NotFoundError, ValidationError
from apps.core.monitoring import (
    capture_webhook_failure,
    increment_subscription_transition,
    increment_webhook_events,
)
from apps.core.settings import settings
from apps.db.models import Subscription, WebhookEvent
from apps.api.services.gateway import PaymentGatewayClient
from apps.api.services.metadata import (
    OtherPurchase,
    SubscriptionPurchase,
    SubscriptionRenewal,
    decode_metadata,
)
from apps.api.services.planner import DeliverySchedulePlanner
from apps.api.services.store import SubscriptionStore

logger = structlog.get_logger(__name__)

CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"
SUBSCRIPTION_DISABLE = "subscription.disable"


@dataclass
class GatewayEvent:
    """A decoded gateway notification."""
    event: str
    reference: str
    amount_minor: int = 0
    status: str = ""
    metadata: Union[SubscriptionPurchase, SubscriptionRenewal, OtherPurchase] = field(default_factory=OtherPurchase)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayEvent":
        data = payload.get("data") or {}
        event = payload.get("event")
        reference = data.get("reference") or data.get("subscription_code")
        if not event or not reference:
            raise ValidationError("Webhook payload is missing event or reference")
        return cls(
            event=event,
            reference=reference,
            amount_minor=int(data.get("amount") or 0),
            status=data.get("status") or "",
            metadata=decode_metadata(data.get("metadata"))
        )


@dataclass
class StateChange:
    """What applying an event did to a subscription."""
    subscription_id: Optional[str]
    previous_status: Optional[str]
    new_status: Optional[str]
    action: str

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "action": self.action,
        }


class EventHandler:
    """Base for handlers registered per gateway event type."""

    def __init__(self, store: SubscriptionStore, planner: DeliverySchedulePlanner, clock: Callable[[], datetime]):
        self.store = store
        self.planner = planner
        self.clock = clock

    def apply(self, event: GatewayEvent) -> StateChange:
        raise NotImplementedError

    def resolve_metadata(self, event: GatewayEvent):
        """Fall back to the metadata stored with our transaction when the event carries none."""
        if not isinstance(event.metadata, OtherPurchase):
            return event.metadata
        transaction = self.store.find_transaction(event.reference)
        if transaction is None:
            return event.metadata
        return decode_metadata(transaction.get_metadata())

    def noop(self, subscription: Optional[Subscription], action: str = "noop") -> StateChange:
        status = subscription.status if subscription else None
        return StateChange(subscription.id if subscription else None, status, status, action)


class ChargeSuccessHandler(EventHandler):
    """Activates purchases and reactivates renewed subscriptions."""

    def apply(self, event: GatewayEvent) -> StateChange:
        metadata = self.resolve_metadata(event)
        self._settle_transaction(event)

        if isinstance(metadata, SubscriptionRenewal):
            return self._apply_renewal(event, metadata)
        if isinstance(metadata, SubscriptionPurchase):
            return self._apply_purchase(event, metadata)

        logger.info("Ignoring non-subscription payment", reference=event.reference)
        return StateChange(None, None, None, "ignored")

    def _settle_transaction(self, event: GatewayEvent) -> None:
        transaction = self.store.find_transaction(event.reference)
        if transaction is None:
            return
        if event.amount_minor and event.amount_minor != transaction.amount_minor:
            logger.warning(
                "Paid amount differs from transaction amount",
                reference=event.reference,
                expected=transaction.amount_minor,
                paid=event.amount_minor
            )
        now = self.clock()
        self.store.transaction_compare_and_set(
            event.reference,
            [TransactionStatus.PENDING],
            TransactionStatus.SUCCESS,
            verified_at=now,
            completed_at=now
        )

    def _apply_purchase(self, event: GatewayEvent, metadata: SubscriptionPurchase) -> StateChange:
        subscription = None
        if metadata.subscription_id:
            subscription = self.store.get(metadata.subscription_id)
        if subscription is None:
            subscription = self.store.find_by_reference(event.reference, SubscriptionStatus.PENDING)
        if subscription is None:
            subscription = self.store.find_by_reference(event.reference)
        if subscription is None:
            raise NotFoundError("Subscription", event.reference)

        if subscription.status != SubscriptionStatus.PENDING.value:
            logger.info(
                "Purchase already reconciled",
                subscription_id=subscription.id,
                reference=event.reference,
                status=subscription.status
            )
            return self.noop(subscription)

        now = self.clock()
        if not self.store.compare_and_set(
            subscription.id,
            [SubscriptionStatus.PENDING],
            SubscriptionStatus.ACTIVE,
            paid_at=now
        ):
            return self.noop(self.store.get(subscription.id))

        increment_subscription_transition(SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value)
        self._schedule(subscription.id, now)
        logger.info("Subscription activated", subscription_id=subscription.id, reference=event.reference)
        return StateChange(subscription.id, SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value, "activated")

    def _apply_renewal(self, event: GatewayEvent, metadata: SubscriptionRenewal) -> StateChange:
        existing = self.store.require(metadata.subscription_id)
        now = self.clock()
        self._retire_placeholder(metadata, now)

        previous = existing.status
        if previous not in (
            SubscriptionStatus.CANCELLED.value,
            SubscriptionStatus.EXPIRED.value,
            SubscriptionStatus.PENDING.value,
        ):
            logger.info("Renewal already applied", subscription_id=existing.id, status=previous)
            return self.noop(existing)

        other = self.store.find_active_for_owner_plan(existing.owner_id, existing.plan_id)
        if other is not None and other.id != existing.id:
            logger.warning(
                "Renewal paid while another subscription for the plan is active",
                subscription_id=existing.id,
                active_subscription_id=other.id,
                reference=event.reference
            )
            return self.noop(existing, action="conflict")

        end_date = self.planner.calculate_end_date(now, existing.frequency, existing.subscription_period)
        if not self.store.compare_and_set(
            existing.id,
            [SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED, SubscriptionStatus.PENDING],
            SubscriptionStatus.ACTIVE,
            start_date=now,
            end_date=end_date,
            schedule_anchor=None,
            payment_reference=event.reference,
            paid_at=now,
            cancelled_at=None,
            expired_at=None,
            paused_at=None,
            remaining_duration_ms=None
        ):
            return self.noop(self.store.get(existing.id))

        increment_subscription_transition(previous, SubscriptionStatus.ACTIVE.value)
        self._schedule(existing.id, now)
        logger.info("Subscription renewed", subscription_id=existing.id, reference=event.reference)
        return StateChange(existing.id, previous, SubscriptionStatus.ACTIVE.value, "renewed")

    def _retire_placeholder(self, metadata: SubscriptionRenewal, now: datetime) -> None:
        if not metadata.new_subscription_id or metadata.new_subscription_id == metadata.subscription_id:
            return
        if self.store.compare_and_set(
            metadata.new_subscription_id,
            [SubscriptionStatus.PENDING],
            SubscriptionStatus.CANCELLED,
            cancelled_at=now
        ):
            logger.info(
                "Renewal placeholder retired",
                placeholder_id=metadata.new_subscription_id,
                subscription_id=metadata.subscription_id
            )

    def _schedule(self, subscription_id: str, now: datetime) -> None:
        subscription = self.store.require(subscription_id)
        result = self.planner.materialize(subscription, today=now.date(), source="activation")
        first = result.created[0] if result.created else self.store.first_live_delivery(subscription_id, now.date())
        if first is not None:
            self.store.update_fields(subscription_id, order_id=first.id)


class ChargeFailedHandler(EventHandler):
    """Cancels the pending subscription a failed charge was paying for."""

    def apply(self, event: GatewayEvent) -> StateChange:
        metadata = self.resolve_metadata(event)
        now = self.clock()
        self.store.transaction_compare_and_set(
            event.reference,
            [TransactionStatus.PENDING],
            TransactionStatus.FAILED,
            failed_at=now
        )

        subscription = None
        if isinstance(metadata, SubscriptionRenewal):
            if metadata.new_subscription_id:
                subscription = self.store.get(metadata.new_subscription_id)
        elif isinstance(metadata, SubscriptionPurchase) and metadata.subscription_id:
            subscription = self.store.get(metadata.subscription_id)
        if subscription is None:
            subscription = self.store.find_by_reference(event.reference, SubscriptionStatus.PENDING)
        if subscription is None:
            return StateChange(None, None, None, "ignored")

        if not self.store.compare_and_set(
            subscription.id,
            [SubscriptionStatus.PENDING],
            SubscriptionStatus.CANCELLED,
            cancelled_at=now
        ):
            return self.noop(self.store.get(subscription.id))

        increment_subscription_transition(SubscriptionStatus.PENDING.value, SubscriptionStatus.CANCELLED.value)
        logger.info("Pending subscription cancelled after failed charge", subscription_id=subscription.id)
        return StateChange(subscription.id, SubscriptionStatus.PENDING.value, SubscriptionStatus.CANCELLED.value, "cancelled")


class SubscriptionDisableHandler(EventHandler):
    """Gateway-side cancellation of a recurring subscription."""

    def apply(self, event: GatewayEvent) -> StateChange:
        metadata = self.resolve_metadata(event)
        subscription = None
        if getattr(metadata, "subscription_id", None):
            subscription = self.store.get(metadata.subscription_id)
        if subscription is None:
            subscription = self.store.find_by_reference(event.reference)
        if subscription is None:
            return StateChange(None, None, None, "ignored")

        previous = subscription.status
        if not self.store.compare_and_set(
            subscription.id,
            [SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED],
            SubscriptionStatus.CANCELLED,
            cancelled_at=self.clock(),
            paused_at=None,
            remaining_duration_ms=None
        ):
            return self.noop(self.store.get(subscription.id))

        increment_subscription_transition(previous, SubscriptionStatus.CANCELLED.value)
        return StateChange(subscription.id, previous, SubscriptionStatus.CANCELLED.value, "cancelled")


class WebhookReconciler:
    """Verifies, records and applies gateway notifications."""

    def __init__(
        self,
        session: Session,
        gateway: Optional[PaymentGatewayClient] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = SubscriptionStore(session)
        self.planner = DeliverySchedulePlanner(self.store)
        self.gateway = gateway or PaymentGatewayClient()
        self.clock = clock or utcnow
        self.handlers: Dict[str, EventHandler] = {}

        self.register(CHARGE_SUCCESS, ChargeSuccessHandler(self.store, self.planner, self.clock))
        self.register(CHARGE_FAILED, ChargeFailedHandler(self.store, self.planner, self.clock))
        self.register(SUBSCRIPTION_DISABLE, SubscriptionDisableHandler(self.store, self.planner, self.clock))

    def register(self, event_type: str, handler: EventHandler) -> None:
        self.handlers[event_type] = handler

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self.gateway.verify_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise AuthenticationError("Invalid webhook signature")

    def parse(self, raw_body: Union[bytes, str]) -> GatewayEvent:
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON", details={"reason": str(e)})
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be an object")
        return GatewayEvent.from_payload(payload)

    def record(self, event: GatewayEvent, raw_body: Union[bytes, str]) -> WebhookEvent:
        """Store the event in the ledger before it is acknowledged."""
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        event_id = WebhookEvent.make_id(event.event, event.reference)

        row = self.store.get_webhook_event(event_id)
        if row is None:
            row = WebhookEvent(
                id=event_id,
                event_type=event.event,
                reference=event.reference,
                payload_json=payload
            )
            try:
                row = self.store.save_webhook_event(row)
                logger.info("Webhook event recorded", event_id=event_id)
                return row
            except IntegrityError:
                self.store.rollback()
                row = self.store.get_webhook_event(event_id)
                if row is None:
                    raise

        row.deliveries_received += 1
        logger.info("Duplicate webhook event received", event_id=event_id, times=row.deliveries_received)
        return self.store.save_webhook_event(row)

    def apply(self, event: GatewayEvent) -> StateChange:
        """Apply an event through its registered handler. Safe to repeat."""
        handler = self.handlers.get(event.event)
        if handler is None:
            logger.info("No handler for webhook event", event_type=event.event)
            increment_webhook_events(event.event, "ignored")
            return StateChange(None, None, None, "ignored")

        change = handler.apply(event)
        increment_webhook_events(event.event, change.action)
        logger.info(
            "Webhook event applied",
            event_type=event.event,
            reference=event.reference,
            **change.to_dict()
        )
        return change

    def process(self, event_id: str) -> StateChange:
        """Apply a recorded event, tracking attempts in the ledger."""
        row = self.store.get_webhook_event(event_id)
        if row is None:
            raise NotFoundError("Webhook event", event_id)
        if self._finished(row):
            return StateChange(None, None, None, "already_processed")

        now = self.clock()
        stale_before = now - timedelta(seconds=settings.webhook_processing_lease_seconds)
        if not self.store.claim_webhook_event(event_id, now, stale_before):
            row = self.store.get_webhook_event(event_id)
            if self._finished(row):
                return StateChange(None, None, None, "already_processed")
            logger.info("Webhook event claimed by another worker", event_id=event_id)
            return StateChange(None, None, None, "in_progress")

        row = self.store.get_webhook_event(event_id)
        payload = row.payload_json

        try:
            change = self.apply(self.parse(payload))
        except Exception as e:
            self.store.rollback()
            row = self.store.get_webhook_event(event_id)
            dead_letter = row.attempts >= settings.webhook_max_attempts
            row.status = (WebhookEventStatus.DEAD_LETTER if dead_letter else WebhookEventStatus.FAILED).value
            row.last_error = str(e)
            self.store.save_webhook_event(row)

            increment_webhook_events(row.event_type, "dead_letter" if dead_letter else "failed")
            logger.error(
                "Webhook event processing failed",
                event_id=event_id,
                attempts=row.attempts,
                dead_letter=dead_letter,
                error=str(e)
            )
            capture_webhook_failure(event_id, row.event_type, e, dead_letter)
            raise

        row.status = WebhookEventStatus.COMPLETED.value
        row.completed_at = utcnow()
        row.last_error = None
        self.store.save_webhook_event(row)
        return change

    @staticmethod
    def _finished(row: WebhookEvent) -> bool:
        return row.status in (WebhookEventStatus.COMPLETED.value, WebhookEventStatus.DEAD_LETTER.value)

    def verify_payment(self, reference: str, owner_id: Optional[str] = None) -> StateChange:
        """
        Synchronous path: ask the gateway and apply the same success logic.

        With owner_id, references opened by someone else are reported as
        unknown before anything is changed.
        """
        if owner_id is not None:
            transaction = self.store.find_transaction(reference)
            if transaction is None or transaction.owner_id != owner_id:
                raise NotFoundError("Payment", reference)

        result = self.gateway.verify(reference)
        if result["status"] != "success":
            raise ValidationError(
                "Payment has not succeeded",
                details={"reference": reference, "gateway_status": result["status"]}
            )

        event = GatewayEvent(
            event=CHARGE_SUCCESS,
            reference=reference,
            amount_minor=result["amount_minor"],
            status=result["status"],
            metadata=decode_metadata(result["metadata"])
        )
        return self.apply(event)
