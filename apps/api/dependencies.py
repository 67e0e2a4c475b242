"""
FastAPI dependency providers for the subscription services.
"""
from fastapi import Depends
from sqlmodel import Session

from apps.db.session import get_session
from apps.api.services.gateway import PaymentGatewayClient
from apps.api.services.lifecycle import SubscriptionLifecycleManager
from apps.api.services.reconciler import WebhookReconciler
from apps.worker.fulfillment import DeliveryFulfillmentWorker


def get_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient()


def get_lifecycle(
    session: Session = Depends(get_session),
    gateway: PaymentGatewayClient = Depends(get_gateway)
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(session, gateway=gateway)


def get_reconciler(
    session: Session = Depends(get_session),
    gateway: PaymentGatewayClient = Depends(get_gateway)
) -> WebhookReconciler:
    return WebhookReconciler(session, gateway=gateway)


def get_fulfillment_worker(session: Session = Depends(get_session)) -> DeliveryFulfillmentWorker:
    return DeliveryFulfillmentWorker(session)
