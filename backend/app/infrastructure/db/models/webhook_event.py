"""
Webhook Event Database Models

processed_webhook_events: one marker per handled Stripe event id.
unprocessed_webhook_events: operator queue for events that could not be
applied.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime
from sqlmodel import Field, SQLModel

from app.infrastructure.db.models.base import UUIDMixin, utc_now


class ProcessedWebhookEventModel(SQLModel, table=True):
    """Maps to the 'processed_webhook_events' table."""

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100)
    outcome: str = Field(default="processed", max_length=20)
    processed_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        index=True,
        sa_type=DateTime(timezone=True),
    )


class UnprocessedWebhookEventModel(UUIDMixin, table=True):
    """Maps to the 'unprocessed_webhook_events' table."""

    __tablename__ = "unprocessed_webhook_events"

    event_id: str = Field(max_length=255, index=True)
    event_type: str = Field(max_length=100)
    reason: str
    payload: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    attempts: int = Field(default=1)
    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_type=DateTime(timezone=True),
    )
    resolved_at: Optional[datetime] = Field(
        default=None,
        index=True,
        sa_type=DateTime(timezone=True),
    )
