"""
Subscription model for recurring cylinder deliveries.

A subscription is created pending at checkout, activated by the payment
gateway's confirmation, and can then be paused, resumed, cancelled,
renewed or expire at the end of its term.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import BigInteger
from sqlmodel import SQLModel, Field, Column, JSON

from apps.core.config import Frequency, SubscriptionStatus, utcnow


class PauseRecord(SQLModel):
    """One finished pause, appended to the history when the subscription resumes."""
    paused_at: datetime
    resumed_at: datetime
    duration_ms: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "paused_at": self.paused_at.isoformat(),
            "resumed_at": self.resumed_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


class Subscription(SQLModel, table=True):
    """
    Recurring delivery agreement.

    remaining_duration_ms is only set while the subscription is paused; it
    holds the time left on the term at the moment of pausing.
    """
    __tablename__ = "subscriptions"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique subscription identifier"
    )

    owner_id: str = Field(index=True, description="User who owns this subscription")
    owner_email: str = Field(default="", description="Billing email handed to the gateway")

    plan_id: str = Field(index=True)
    plan_name: str
    size: int = Field(description="Cylinder size in kg")
    frequency: str = Field(description="Daily, Weekly, Bi-Weekly, Monthly or One-Time")
    subscription_period: int = Field(default=1, ge=1, le=12, description="Term length in months")
    price: float

    status: str = Field(default=SubscriptionStatus.PENDING.value, index=True)

    start_date: datetime
    end_date: datetime = Field(index=True)
    schedule_anchor: Optional[datetime] = Field(
        default=None,
        description="First delivery of the current cadence sequence; start_date when unset"
    )

    payment_reference: str = Field(index=True, description="Gateway reference of the paying transaction")

    paused_at: Optional[datetime] = Field(default=None)
    remaining_duration_ms: Optional[int] = Field(
        default=None,
        sa_column=Column(BigInteger, nullable=True)
    )
    pause_history: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    paid_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)
    expired_at: Optional[datetime] = Field(default=None)

    order_id: Optional[str] = Field(default=None, description="First fulfillment order of the current term")
    renewed_from_id: Optional[str] = Field(default=None, description="Subscription this record renews")

    # Metadata
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def frequency_enum(self) -> Frequency:
        return Frequency.parse(self.frequency)

    @property
    def is_one_time(self) -> bool:
        return self.frequency_enum == Frequency.ONE_TIME

    @property
    def anchor_date(self) -> datetime:
        return self.schedule_anchor or self.start_date

    def pause_records(self) -> List[PauseRecord]:
        """Pause history parsed into typed records."""
        return [PauseRecord.model_validate(entry) for entry in self.pause_history or []]

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        if self.status == SubscriptionStatus.PAUSED.value and self.remaining_duration_ms is not None:
            return self.remaining_duration_ms // (24 * 60 * 60 * 1000)
        delta = self.end_date - (now or utcnow())
        return max(0, delta.days)

    def to_dict(self) -> dict:
        """Convert subscription to dictionary for API responses."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "size": f"{self.size}kg",
            "frequency": self.frequency,
            "subscription_period": self.subscription_period,
            "price": self.price,
            "status": self.status,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "schedule_anchor": self.schedule_anchor.isoformat() if self.schedule_anchor else None,
            "payment_reference": self.payment_reference,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "remaining_duration_ms": self.remaining_duration_ms,
            "pause_history": list(self.pause_history or []),
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "order_id": self.order_id,
            "renewed_from_id": self.renewed_from_id,
            "days_remaining": self.days_remaining(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }


# Pydantic models for API
class SubscriptionCreate(SQLModel):
    """Checkout request for a new subscription."""
    plan_id: str
    size: str
    frequency: str
    subscription_period: Optional[int] = None


class CheckoutResponse(SQLModel):
    """Gateway checkout handed back to the client."""
    authorization_url: str
    reference: str
    subscription: Dict[str, Any]
