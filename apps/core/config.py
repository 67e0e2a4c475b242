"""
Application configuration constants and enums.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Union


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Frequency(str, Enum):
    """Delivery cadence of a subscription."""
    DAILY = "Daily"
    WEEKLY = "Weekly"
    BI_WEEKLY = "Bi-Weekly"
    MONTHLY = "Monthly"
    ONE_TIME = "One-Time"

    @classmethod
    def parse(cls, value: Union[str, "Frequency"]) -> "Frequency":
        """Accept members and the spellings used by the catalog ("Bi-weekly", "one-time")."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unknown frequency: {value}")


class PlanType(str, Enum):
    """Catalog plan types."""
    PRESET = "preset"
    CUSTOM = "custom"
    ONE_TIME = "one-time"
    EMERGENCY = "emergency"


class PaymentPurpose(str, Enum):
    """Why a gateway transaction was opened."""
    PURCHASE = "subscription"
    RENEWAL = "renewal"
    OTHER = "other"


class TransactionStatus(str, Enum):
    """Gateway transaction status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Fulfillment order status."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WebhookEventStatus(str, Enum):
    """Processing status of a received gateway notification."""
    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


# Deliveries that no longer hold their (subscription, day) slot
VOID_DELIVERY_STATUSES = {DeliveryStatus.CANCELLED, DeliveryStatus.FAILED}

# Days of service bought per subscription month, by cadence
DAYS_PER_PERIOD = {
    Frequency.DAILY: 30,
    Frequency.WEEKLY: 7 * 4,
    Frequency.BI_WEEKLY: 7 * 2 * 4,
}

MAX_SUBSCRIPTION_PERIOD = 12

MS_PER_DAY = 24 * 60 * 60 * 1000


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
