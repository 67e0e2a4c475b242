# Database models
from .plan import SubscriptionPlan, parse_cylinder_size
from .subscription import Subscription, PauseRecord, SubscriptionCreate, CheckoutResponse
from .delivery import Delivery, DeliveryFailure
from .transaction import PaymentTransaction
from .webhook_event import WebhookEvent

__all__ = [
    # Catalog
    "SubscriptionPlan", "parse_cylinder_size",
    # Subscription models
    "Subscription", "PauseRecord", "SubscriptionCreate", "CheckoutResponse",
    # Delivery models
    "Delivery", "DeliveryFailure",
    # Payments
    "PaymentTransaction", "WebhookEvent",
]
