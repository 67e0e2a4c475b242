"""
Tests for webhook verification, event reconciliation and the event ledger.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from apps.core.config import PlanType, SubscriptionStatus, WebhookEventStatus
from apps.core.exceptions import AuthenticationError, NotFoundError, ValidationError
from apps.core.settings import settings
from apps.db.models import Delivery, PaymentTransaction, Subscription, SubscriptionPlan, WebhookEvent
from apps.api.services.lifecycle import SubscriptionLifecycleManager
from apps.api.services.metadata import OtherPurchase, SubscriptionRenewal, decode_metadata
from apps.api.services.reconciler import StateChange, WebhookReconciler
from apps.worker.tasks import retry_failed_webhooks
from tests.conftest import FakeClock, charge_event, make_subscription, sign
from tests.mocks import MockPaymentGateway


@pytest.fixture
def reconciler(session, gateway, clock):
    return WebhookReconciler(session, gateway=gateway, clock=clock)


@pytest.fixture
def lifecycle(session, gateway, clock):
    return SubscriptionLifecycleManager(session, gateway=gateway, clock=clock)


def checkout_metadata(gateway: MockPaymentGateway) -> dict:
    return gateway.initialize_calls[-1]["metadata"]


def count_deliveries(session, subscription_id: str) -> int:
    return len(session.exec(select(Delivery).where(Delivery.subscription_id == subscription_id)).all())


def mark_processing(reconciler, event_id: str, claimed_at: datetime) -> None:
    row = reconciler.store.get_webhook_event(event_id)
    row.status = WebhookEventStatus.PROCESSING.value
    row.attempts = 1
    row.claimed_at = claimed_at
    reconciler.store.save_webhook_event(row)


class TestSignatureAndParsing:

    def test_valid_signature_passes(self, reconciler):
        body = charge_event("REF123", {})
        reconciler.verify(body.encode(), sign(body))

    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_bad_signature_is_rejected(self, reconciler, signature):
        body = charge_event("REF123", {})
        with pytest.raises(AuthenticationError):
            reconciler.verify(body.encode(), signature)

    def test_signature_covers_exact_bytes(self, reconciler):
        body = charge_event("REF123", {})
        with pytest.raises(AuthenticationError):
            reconciler.verify((body + " ").encode(), sign(body))

    def test_parse_rejects_bad_payloads(self, reconciler):
        with pytest.raises(ValidationError):
            reconciler.parse(b"not json")
        with pytest.raises(ValidationError):
            reconciler.parse(json.dumps({"event": "charge.success", "data": {}}).encode())

    def test_metadata_is_decoded_by_type(self):
        renewal = decode_metadata(json.dumps({
            "type": "renewal", "owner_id": "u", "plan_id": "p", "subscription_id": "s"
        }))
        assert isinstance(renewal, SubscriptionRenewal)
        assert isinstance(decode_metadata({"order_id": "o-1"}), OtherPurchase)
        assert isinstance(decode_metadata(None), OtherPurchase)
        with pytest.raises(ValidationError):
            decode_metadata({"type": "renewal", "owner_id": "u"})


class TestPurchaseSuccess:

    def test_success_activates_and_schedules(self, reconciler, lifecycle, session, gateway, clock, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        event = reconciler.parse(charge_event(checkout.reference, checkout_metadata(gateway), amount=1800000))

        change = reconciler.apply(event)

        assert change == StateChange(checkout.subscription.id, "pending", "active", "activated")
        session.expire_all()
        subscription = session.get(Subscription, checkout.subscription.id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.paid_at == clock.now
        delivery = session.exec(select(Delivery)).one()
        assert subscription.order_id == delivery.id
        transaction = session.exec(select(PaymentTransaction)).one()
        assert transaction.status == "success"

    def test_duplicate_success_is_a_noop(self, reconciler, lifecycle, session, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        event = reconciler.parse(charge_event(checkout.reference, checkout_metadata(gateway)))

        reconciler.apply(event)
        second = reconciler.apply(event)

        assert second.action == "noop"
        assert second.new_status == SubscriptionStatus.ACTIVE.value
        assert count_deliveries(session, checkout.subscription.id) == 1

    def test_weekly_activation_materializes_term(self, reconciler, lifecycle, session, gateway, preset_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", preset_plan.id, "12kg", "Weekly", 1)

        reconciler.apply(reconciler.parse(charge_event(checkout.reference, checkout_metadata(gateway))))

        assert count_deliveries(session, checkout.subscription.id) == 5

    def test_falls_back_to_pending_reference_lookup(self, reconciler, lifecycle, session, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        metadata = dict(checkout_metadata(gateway))
        metadata.pop("subscription_id")

        change = reconciler.apply(reconciler.parse(charge_event(checkout.reference, metadata)))

        assert change.subscription_id == checkout.subscription.id
        assert change.action == "activated"

    def test_event_without_metadata_uses_stored_transaction(self, reconciler, lifecycle, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")

        change = reconciler.apply(reconciler.parse(charge_event(checkout.reference, None)))

        assert change.action == "activated"

    def test_unknown_subscription_raises_not_found(self, reconciler):
        metadata = {
            "type": "subscription", "owner_id": "u", "plan_id": "p",
            "size": 12, "frequency": "Weekly", "subscription_period": 1
        }
        with pytest.raises(NotFoundError):
            reconciler.apply(reconciler.parse(charge_event("REF-UNKNOWN", metadata)))

    def test_non_subscription_payment_is_ignored(self, reconciler):
        change = reconciler.apply(reconciler.parse(charge_event("ORDER-1", {"order_id": "o-1"})))
        assert change.action == "ignored"

    def test_unregistered_event_type_is_ignored(self, reconciler):
        change = reconciler.apply(reconciler.parse(charge_event("TRF-1", {}, event="transfer.success")))
        assert change.action == "ignored"


class TestFailureAndDisable:

    def test_failed_charge_cancels_pending(self, reconciler, lifecycle, session, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        metadata = checkout_metadata(gateway)

        change = reconciler.apply(reconciler.parse(charge_event(checkout.reference, metadata, event="charge.failed")))
        duplicate = reconciler.apply(reconciler.parse(charge_event(checkout.reference, metadata, event="charge.failed")))
        late_success = reconciler.apply(reconciler.parse(charge_event(checkout.reference, metadata)))

        assert change.action == "cancelled"
        assert duplicate.action == "noop"
        assert late_success.action == "noop"
        session.expire_all()
        assert session.get(Subscription, checkout.subscription.id).status == SubscriptionStatus.CANCELLED.value
        assert session.exec(select(PaymentTransaction)).one().status == "failed"
        assert count_deliveries(session, checkout.subscription.id) == 0

    def test_subscription_disable_cancels_active(self, reconciler, session, preset_plan):
        subscription = make_subscription(session, preset_plan)

        change = reconciler.apply(reconciler.parse(charge_event(
            "REF-TEST", {"type": "subscription", "owner_id": "user-1", "plan_id": preset_plan.id,
                         "size": 12, "frequency": "Weekly", "subscription_id": subscription.id},
            event="subscription.disable"
        )))

        assert change.previous_status == SubscriptionStatus.ACTIVE.value
        assert change.new_status == SubscriptionStatus.CANCELLED.value


class TestRenewal:

    def test_renewal_reactivates_existing_record(self, reconciler, lifecycle, session, gateway, clock, preset_plan):
        existing = make_subscription(session, preset_plan, status=SubscriptionStatus.CANCELLED.value)
        clock.advance(days=40)
        checkout = lifecycle.renew(existing.id)
        event = reconciler.parse(charge_event(checkout.reference, checkout_metadata(gateway)))

        change = reconciler.apply(event)
        duplicate = reconciler.apply(event)

        assert change == StateChange(existing.id, "cancelled", "active", "renewed")
        assert duplicate.action == "noop"

        session.expire_all()
        renewed = session.get(Subscription, existing.id)
        assert renewed.start_date == clock.now
        assert renewed.end_date == clock.now + timedelta(days=28)
        assert renewed.payment_reference == checkout.reference
        assert renewed.cancelled_at is None
        placeholder = session.get(Subscription, checkout.subscription.id)
        assert placeholder.status == SubscriptionStatus.CANCELLED.value
        assert count_deliveries(session, existing.id) == 5
        assert count_deliveries(session, placeholder.id) == 0

    def test_failed_renewal_leaves_existing_untouched(self, reconciler, lifecycle, session, gateway, preset_plan):
        existing = make_subscription(session, preset_plan, status=SubscriptionStatus.EXPIRED.value)
        checkout = lifecycle.renew(existing.id)

        reconciler.apply(reconciler.parse(
            charge_event(checkout.reference, checkout_metadata(gateway), event="charge.failed")
        ))

        session.expire_all()
        assert session.get(Subscription, existing.id).status == SubscriptionStatus.EXPIRED.value
        assert session.get(Subscription, checkout.subscription.id).status == SubscriptionStatus.CANCELLED.value


    def test_renewal_paid_while_plan_is_active_elsewhere_is_not_applied(self, reconciler, lifecycle, session, gateway, preset_plan):
        existing = make_subscription(session, preset_plan, status=SubscriptionStatus.CANCELLED.value)
        checkout = lifecycle.renew(existing.id)
        current = make_subscription(session, preset_plan, payment_reference="REF-CURRENT")

        change = reconciler.apply(reconciler.parse(charge_event(checkout.reference, checkout_metadata(gateway))))

        assert change == StateChange(existing.id, "cancelled", "cancelled", "conflict")
        session.expire_all()
        assert session.get(Subscription, existing.id).status == SubscriptionStatus.CANCELLED.value
        assert session.get(Subscription, current.id).status == SubscriptionStatus.ACTIVE.value
        assert session.get(Subscription, checkout.subscription.id).status == SubscriptionStatus.CANCELLED.value


class TestLedger:

    def test_record_deduplicates_events(self, reconciler):
        body = charge_event("REF123", {})
        event = reconciler.parse(body)

        first = reconciler.record(event, body.encode())
        second = reconciler.record(event, body.encode())

        assert first.id == second.id == "charge.success:REF123"
        assert second.deliveries_received == 2

    def test_process_marks_completed(self, reconciler, lifecycle, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        body = charge_event(checkout.reference, checkout_metadata(gateway))
        row = reconciler.record(reconciler.parse(body), body)

        change = reconciler.process(row.id)
        again = reconciler.process(row.id)

        assert change.action == "activated"
        assert again.action == "already_processed"
        assert reconciler.store.get_webhook_event(row.id).status == WebhookEventStatus.COMPLETED.value

    def test_failures_are_dead_lettered_after_max_attempts(self, reconciler, monkeypatch):
        monkeypatch.setattr(settings, "webhook_max_attempts", 2)
        metadata = {
            "type": "subscription", "owner_id": "u", "plan_id": "p",
            "size": 12, "frequency": "Weekly", "subscription_period": 1
        }
        body = charge_event("REF-LATE", metadata)
        row = reconciler.record(reconciler.parse(body), body)

        with pytest.raises(NotFoundError):
            reconciler.process(row.id)
        assert reconciler.store.get_webhook_event(row.id).status == WebhookEventStatus.FAILED.value

        with pytest.raises(NotFoundError):
            reconciler.process(row.id)
        dead = reconciler.store.get_webhook_event(row.id)
        assert dead.status == WebhookEventStatus.DEAD_LETTER.value
        assert dead.attempts == 2
        assert "REF-LATE" in dead.last_error


    def test_stuck_processing_event_is_reclaimed_after_lease(self, reconciler, lifecycle, gateway, clock, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        body = charge_event(checkout.reference, checkout_metadata(gateway))
        row = reconciler.record(reconciler.parse(body), body)
        mark_processing(reconciler, row.id, claimed_at=clock.now - timedelta(seconds=settings.webhook_processing_lease_seconds + 60))

        change = reconciler.process(row.id)

        assert change.action == "activated"
        done = reconciler.store.get_webhook_event(row.id)
        assert done.status == WebhookEventStatus.COMPLETED.value
        assert done.attempts == 2
        assert done.claimed_at == clock.now

    def test_live_claim_is_left_alone(self, reconciler, lifecycle, gateway, clock, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")
        body = charge_event(checkout.reference, checkout_metadata(gateway))
        row = reconciler.record(reconciler.parse(body), body)
        mark_processing(reconciler, row.id, claimed_at=clock.now - timedelta(seconds=30))

        change = reconciler.process(row.id)

        assert change.action == "in_progress"
        held = reconciler.store.get_webhook_event(row.id)
        assert held.status == WebhookEventStatus.PROCESSING.value
        assert held.attempts == 1
        assert reconciler.store.get(checkout.subscription.id).status == SubscriptionStatus.PENDING.value

    def test_stale_events_are_listed_for_retry(self, reconciler, session):
        cutoff = datetime(2024, 1, 1, 10, 0)
        old, fresh = cutoff - timedelta(hours=1), cutoff + timedelta(minutes=1)
        rows = {
            "received-old": dict(status=WebhookEventStatus.RECEIVED.value, created_at=old),
            "received-new": dict(status=WebhookEventStatus.RECEIVED.value, created_at=fresh),
            "processing-old": dict(status=WebhookEventStatus.PROCESSING.value, created_at=old, claimed_at=old),
            "processing-new": dict(status=WebhookEventStatus.PROCESSING.value, created_at=old, claimed_at=fresh),
            "completed": dict(status=WebhookEventStatus.COMPLETED.value, created_at=old),
        }
        for event_id, values in rows.items():
            session.add(WebhookEvent(id=event_id, event_type="charge.success", reference=event_id, payload_json="{}", **values))
        session.commit()

        stale = reconciler.store.stale_webhook_events(cutoff)

        assert sorted(event.id for event in stale) == ["processing-old", "received-old"]

    def test_retry_task_requeues_failed_and_stale_events(self, setup_test_database, session):
        old = datetime(2024, 1, 1, 10, 0)
        session.add(WebhookEvent(id="failed", event_type="charge.success", reference="a", payload_json="{}",
                                 status=WebhookEventStatus.FAILED.value))
        session.add(WebhookEvent(id="stuck", event_type="charge.success", reference="b", payload_json="{}",
                                 status=WebhookEventStatus.PROCESSING.value, created_at=old, claimed_at=old))
        session.add(WebhookEvent(id="done", event_type="charge.success", reference="c", payload_json="{}",
                                 status=WebhookEventStatus.COMPLETED.value, created_at=old))
        session.commit()

        with patch("apps.worker.tasks.engine", setup_test_database), \
                patch("apps.worker.tasks.process_webhook_event") as task:
            result = retry_failed_webhooks()

        assert result == {"requeued": 2}
        assert sorted(c.args[0] for c in task.delay.call_args_list) == ["failed", "stuck"]


class TestVerifyPayment:

    def test_verify_applies_success(self, reconciler, lifecycle, session, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")

        change = reconciler.verify_payment(checkout.reference)

        assert gateway.verify_calls == [checkout.reference]
        assert change.action == "activated"
        assert count_deliveries(session, checkout.subscription.id) == 1

    def test_verify_rejects_unsuccessful_payment(self, session, clock, one_time_plan):
        gateway = MockPaymentGateway("declined")
        lifecycle = SubscriptionLifecycleManager(session, gateway=gateway, clock=clock)
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")

        with pytest.raises(ValidationError):
            WebhookReconciler(session, gateway=gateway, clock=clock).verify_payment(checkout.reference)

        session.expire_all()
        assert session.get(Subscription, checkout.subscription.id).status == SubscriptionStatus.PENDING.value


    def test_verify_for_another_owner_changes_nothing(self, reconciler, lifecycle, session, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")

        with pytest.raises(NotFoundError):
            reconciler.verify_payment(checkout.reference, owner_id="user-2")

        assert gateway.verify_calls == []
        session.expire_all()
        assert session.get(Subscription, checkout.subscription.id).status == SubscriptionStatus.PENDING.value

    def test_verify_for_the_owner_applies_success(self, reconciler, lifecycle, gateway, one_time_plan):
        checkout = lifecycle.create("user-1", "user1@example.com", one_time_plan.id, "12kg", "One-Time")

        change = reconciler.verify_payment(checkout.reference, owner_id="user-1")

        assert change.action == "activated"
        assert gateway.verify_calls == [checkout.reference]


class TestConcurrentDuplicates:
    """Two copies of the same webhook applied at the same time."""

    def test_concurrent_duplicate_webhooks_converge(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'concurrency.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        SQLModel.metadata.create_all(engine)
        clock = FakeClock(datetime(2024, 1, 1, 10, 0, 0))
        gateway = MockPaymentGateway()

        with Session(engine) as setup_session:
            plan = SubscriptionPlan(
                name="Single Refill",
                type=PlanType.ONE_TIME.value,
                price_per_kg=1500.0,
                delivery_frequencies=["One-Time"],
                cylinder_sizes=[12],
            )
            setup_session.add(plan)
            setup_session.commit()
            setup_session.refresh(plan)
            checkout = SubscriptionLifecycleManager(setup_session, gateway=gateway, clock=clock).create(
                "user-1", "user1@example.com", plan.id, "12kg", "One-Time"
            )
            subscription_id = checkout.subscription.id
            reference = checkout.reference
        body = charge_event(reference, checkout_metadata(gateway))
        barrier = threading.Barrier(2)

        def deliver_webhook():
            with Session(engine) as worker_session:
                reconciler = WebhookReconciler(worker_session, gateway=gateway, clock=clock)
                event = reconciler.parse(body)
                barrier.wait()
                return reconciler.apply(event).action

        with ThreadPoolExecutor(max_workers=2) as executor:
            actions = sorted(f.result() for f in [executor.submit(deliver_webhook) for _ in range(2)])

        assert actions == ["activated", "noop"]
        with Session(engine) as check_session:
            assert check_session.get(Subscription, subscription_id).status == SubscriptionStatus.ACTIVE.value
            assert count_deliveries(check_session, subscription_id) == 1
        engine.dispose()
