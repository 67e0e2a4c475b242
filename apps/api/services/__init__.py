"""
Services package for the subscription engine.
"""

from .store import SubscriptionStore
from .catalog import PlanCatalog
from .gateway import PaymentGatewayClient
from .planner import DeliverySchedulePlanner, MaterializationResult
from .reconciler import WebhookReconciler, GatewayEvent, StateChange
from .lifecycle import SubscriptionLifecycleManager, CheckoutSession, DeliveryPage

__all__ = [
    'CheckoutSession',
    'DeliveryPage',
    'DeliverySchedulePlanner',
    'GatewayEvent',
    'MaterializationResult',
    'PaymentGatewayClient',
    'PlanCatalog',
    'StateChange',
    'SubscriptionLifecycleManager',
    'SubscriptionStore',
    'WebhookReconciler',
]
