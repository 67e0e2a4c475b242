"""
Administrative endpoints for operations staff.
"""
from typing import List

import structlog
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from apps.core.exceptions import ValidationError
from apps.core.security import CurrentUser, require_admin
from apps.db.models import DeliveryFailure
from apps.db.session import get_session
from apps.api.dependencies import get_fulfillment_worker, get_lifecycle
from apps.api.services.lifecycle import SubscriptionLifecycleManager
from apps.worker.fulfillment import DeliveryFulfillmentWorker

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/fulfillment/sweep")
def run_sweep(
    partition_index: int = Query(0, ge=0),
    partition_total: int = Query(1, ge=1),
    admin: CurrentUser = Depends(require_admin),
    session: Session = Depends(get_session)
):
    """Run the fulfillment sweep now instead of waiting for the schedule."""
    if partition_index >= partition_total:
        raise ValidationError(
            "partition_index must be lower than partition_total",
            details={"partition_index": partition_index, "partition_total": partition_total}
        )
    worker = DeliveryFulfillmentWorker(session, partition=(partition_index, partition_total))
    report = worker.sweep()
    logger.info("Manual fulfillment sweep", admin_id=admin.id, **report.to_dict())
    return report.to_dict()


@router.post("/subscriptions/expire")
def expire_subscriptions(
    admin: CurrentUser = Depends(require_admin),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    expired: List[str] = lifecycle.expire_due()
    return {"expired": expired, "count": len(expired)}


@router.post("/subscriptions/{subscription_id}/schedule")
def schedule_subscription(
    subscription_id: str,
    override: bool = Query(False),
    admin: CurrentUser = Depends(require_admin),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    """Materialize a subscription's schedule; override replaces existing deliveries."""
    result = lifecycle.schedule(subscription_id, override=override)
    logger.info(
        "Schedule materialized by admin",
        admin_id=admin.id,
        subscription_id=subscription_id,
        override=override
    )
    return {
        "created": [d.to_dict() for d in result.created],
        "skipped": [d.isoformat() for d in result.skipped],
        "capped": result.capped,
    }


@router.put("/deliveries/{delivery_id}/failed")
def mark_delivery_failed(
    delivery_id: str,
    request: DeliveryFailure,
    admin: CurrentUser = Depends(require_admin),
    worker: DeliveryFulfillmentWorker = Depends(get_fulfillment_worker)
):
    """Fail a delivery and book its retry for the next day."""
    reason = request.reason if not request.notes else f"{request.reason}: {request.notes}"
    retry = worker.reschedule_failed(delivery_id, reason)
    return {"retry": retry.to_dict()}
