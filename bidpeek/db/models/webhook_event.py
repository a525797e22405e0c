"""
Processed payment provider events, kept for idempotency and audit.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field, Column, Text

from bidpeek.core.timeutils import utcnow


class WebhookEvent(SQLModel, table=True):
    """
    Provider event that has been applied (or deliberately ignored).

    The row is committed in the same transaction as the event's effect, so
    its presence means the effect is durable.
    """
    __tablename__ = "webhook_events"

    event_id: str = Field(
        primary_key=True,
        description="Provider-assigned event identifier"
    )

    event_type: str = Field(
        index=True,
        description="Provider event type (e.g. checkout.session.completed)"
    )

    principal: Optional[str] = Field(
        default=None,
        index=True,
        description="Principal the event was applied to, if any"
    )

    action: str = Field(
        description="What the reconciler did: subscription_superseded, credits_granted, ignored, stale, ..."
    )

    provider_created_at: Optional[datetime] = Field(
        default=None,
        description="Provider event creation time"
    )

    raw_payload_json: str = Field(
        sa_column=Column(Text),
        description="Raw JSON payload from payment provider webhook for debugging"
    )

    processed_at: datetime = Field(
        default_factory=utcnow,
        description="When the event was applied"
    )
