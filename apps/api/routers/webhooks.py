"""
Payment gateway webhook endpoint.

The signature is checked over the raw body and the event is written to the
ledger before the gateway gets its acknowledgement. Applying the event
happens after the response is sent; failures are retried by the worker.
"""
from typing import Callable, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from sqlmodel import Session

from apps.core.settings import settings
from apps.db.session import get_session_factory
from apps.api.dependencies import get_gateway, get_reconciler
from apps.api.services.gateway import PaymentGatewayClient
from apps.api.services.reconciler import WebhookReconciler
from apps.api.services.store import SubscriptionStore
from apps.worker.tasks import process_webhook_event, retry_delay

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = structlog.get_logger(__name__)


def apply_recorded_event(
    event_id: str,
    session_factory: Callable[[], Session],
    gateway: PaymentGatewayClient
) -> None:
    """Background step: apply the event, hand it to the worker if that fails."""
    with session_factory() as session:
        try:
            WebhookReconciler(session, gateway=gateway).process(event_id)
            return
        except Exception as e:
            logger.warning("Deferred webhook apply failed", event_id=event_id, error=str(e))

        row = SubscriptionStore(session).get_webhook_event(event_id)
        if row is None or row.attempts >= settings.webhook_max_attempts:
            return

    process_webhook_event.apply_async(args=[event_id], countdown=retry_delay(0))


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_paystack_signature: Optional[str] = Header(None),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    gateway: PaymentGatewayClient = Depends(get_gateway),
    session_factory: Callable[[], Session] = Depends(get_session_factory)
):
    """Verify, record and acknowledge a gateway notification."""
    payload = await request.body()
    reconciler.verify(payload, x_paystack_signature)

    event = reconciler.parse(payload)
    row = reconciler.record(event, payload)
    logger.info("Webhook acknowledged", event_id=row.id, event_type=event.event, reference=event.reference)

    background_tasks.add_task(apply_recorded_event, row.id, session_factory, gateway)
    return {"status": True}
