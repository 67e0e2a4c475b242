"""
Delivery (fulfillment order) model.

A live delivery owns the slot (subscription_id, day) through its
delivery_key, which is unique in the table. Voided deliveries release the
slot; a retry is always a new record.
"""

from datetime import date, datetime
from typing import Optional
import uuid

from sqlmodel import SQLModel, Field

from apps.core.config import DeliveryStatus, VOID_DELIVERY_STATUSES, utcnow


class Delivery(SQLModel, table=True):
    """One scheduled cylinder delivery for a subscription."""
    __tablename__ = "deliveries"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique delivery identifier"
    )

    subscription_id: str = Field(foreign_key="subscriptions.id", index=True)
    owner_id: str = Field(index=True)

    scheduled_date: datetime
    delivery_day: date = Field(index=True)
    delivery_key: str = Field(
        unique=True,
        index=True,
        description="<subscription_id>:<YYYY-MM-DD> while the delivery is live"
    )

    status: str = Field(default=DeliveryStatus.PENDING.value, index=True)

    # Plan snapshot at scheduling time
    plan_name: str = Field(default="")
    size: int = Field(default=0)
    frequency: str = Field(default="")
    price: float = Field(default=0.0)

    # Retry tracking
    retry_count: int = Field(default=0)
    previous_attempt_id: Optional[str] = Field(default=None)
    is_retry: bool = Field(default=False)

    failed_reason: Optional[str] = Field(default=None)
    failed_at: Optional[datetime] = Field(default=None)
    delivered_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def make_key(subscription_id: str, day: date) -> str:
        return f"{subscription_id}:{day.isoformat()}"

    @property
    def is_live(self) -> bool:
        return DeliveryStatus(self.status) not in VOID_DELIVERY_STATUSES

    def release_key(self) -> None:
        """Free the (subscription, day) slot held by this record."""
        self.delivery_key = f"{Delivery.make_key(self.subscription_id, self.delivery_day)}#void-{self.id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "scheduled_date": self.scheduled_date.isoformat(),
            "delivery_day": self.delivery_day.isoformat(),
            "status": self.status,
            "plan_name": self.plan_name,
            "size": f"{self.size}kg",
            "frequency": self.frequency,
            "price": self.price,
            "retry_count": self.retry_count,
            "previous_attempt_id": self.previous_attempt_id,
            "is_retry": self.is_retry,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at.isoformat()
        }


class DeliveryFailure(SQLModel):
    """Admin request marking a delivery failed."""
    reason: str
    notes: Optional[str] = None
