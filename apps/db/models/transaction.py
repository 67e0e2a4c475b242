"""
Payment transaction model.

The reference is the idempotency key shared with the gateway; every
webhook or verification for the same reference resolves to this row.
"""

from datetime import datetime
from typing import Optional
import json
import uuid

from sqlmodel import SQLModel, Field, Column, Text

from apps.core.config import PaymentPurpose, TransactionStatus, utcnow


class PaymentTransaction(SQLModel, table=True):
    """A gateway transaction opened for a purchase or renewal."""
    __tablename__ = "payment_transactions"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    reference: str = Field(unique=True, index=True)
    owner_id: str = Field(index=True)
    email: str = Field(default="")

    amount: float = Field(description="Amount in major currency units")
    amount_minor: int = Field(description="Amount in minor units as sent to the gateway")
    currency: str = Field(default="NGN")

    status: str = Field(default=TransactionStatus.PENDING.value, index=True)
    purpose: str = Field(default=PaymentPurpose.PURCHASE.value)
    subscription_id: Optional[str] = Field(default=None, index=True)

    metadata_json: str = Field(default="{}", sa_column=Column(Text))
    gateway_payload_json: Optional[str] = Field(default=None, sa_column=Column(Text))

    verified_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    failed_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_metadata(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}
