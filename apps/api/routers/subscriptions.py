"""
Subscription lifecycle endpoints for authenticated owners.
"""
from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from apps.core.exceptions import NotFoundError
from apps.core.security import CurrentUser, get_current_user
from apps.db.models import CheckoutResponse, SubscriptionCreate
from apps.api.dependencies import get_lifecycle, get_reconciler
from apps.api.services.lifecycle import SubscriptionLifecycleManager
from apps.api.services.reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    request: SubscriptionCreate,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    """Create a pending subscription and return the gateway checkout URL."""
    checkout = lifecycle.create(
        owner_id=current_user.id,
        owner_email=current_user.email,
        plan_id=request.plan_id,
        size=request.size,
        frequency=request.frequency,
        subscription_period=request.subscription_period
    )
    return checkout.to_dict()


@router.get("/verify")
def verify_payment(
    reference: str = Query(..., min_length=1),
    current_user: CurrentUser = Depends(get_current_user),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    """Confirm a payment with the gateway after the checkout redirect."""
    change = reconciler.verify_payment(reference, owner_id=current_user.id)
    response = {"status": "success", "action": change.action, "subscription": None}

    if change.subscription_id:
        subscription = reconciler.store.get(change.subscription_id)
        if subscription is None or subscription.owner_id != current_user.id:
            raise NotFoundError("Subscription", change.subscription_id)
        response["subscription"] = subscription.to_dict()
    return response


@router.get("/mine")
def list_my_subscriptions(
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    subscriptions = lifecycle.list_mine(current_user.id)
    return {"items": [s.to_dict() for s in subscriptions], "total": len(subscriptions)}


@router.get("/{subscription_id}")
def get_subscription(
    subscription_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    return lifecycle.get(subscription_id, current_user.id).to_dict()


@router.get("/{subscription_id}/deliveries")
def get_deliveries(
    subscription_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    """Deliveries of one subscription, optionally limited to a date range."""
    deliveries = lifecycle.get_deliveries(
        current_user.id,
        subscription_id,
        page=page,
        page_size=page_size,
        date_from=date_from,
        date_to=date_to
    )
    return deliveries.to_dict()


@router.put("/{subscription_id}/pause")
def pause_subscription(
    subscription_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    return lifecycle.pause(subscription_id, owner_id=current_user.id).to_dict()


@router.put("/{subscription_id}/resume")
def resume_subscription(
    subscription_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    return lifecycle.resume(subscription_id, owner_id=current_user.id).to_dict()


@router.put("/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    return lifecycle.cancel(subscription_id, owner_id=current_user.id).to_dict()


@router.post("/{subscription_id}/renew", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def renew_subscription(
    subscription_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    lifecycle: SubscriptionLifecycleManager = Depends(get_lifecycle)
):
    """Start a renewal checkout for a cancelled or expired subscription."""
    return lifecycle.renew(subscription_id, owner_id=current_user.id).to_dict()
