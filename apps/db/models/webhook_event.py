"""
Ledger of received gateway notifications.

Events are recorded before the gateway is acknowledged so that work which
fails afterwards can be retried internally and, past the retry budget,
parked as dead letters.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field, Column, Text

from apps.core.config import WebhookEventStatus, utcnow


class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_events"

    id: str = Field(primary_key=True, description="<event type>:<reference>")
    event_type: str = Field(index=True)
    reference: str = Field(index=True)
    status: str = Field(default=WebhookEventStatus.RECEIVED.value, index=True)
    attempts: int = Field(default=0)
    deliveries_received: int = Field(default=1, description="Times the gateway sent this event")
    payload_json: str = Field(sa_column=Column(Text))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = Field(default=None, description="When the current processing attempt started")
    completed_at: Optional[datetime] = Field(default=None)

    @staticmethod
    def make_id(event_type: str, reference: str) -> str:
        return f"{event_type}:{reference}"
