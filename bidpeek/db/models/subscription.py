"""
Subscription state model, superseded in place by the webhook reconciler.

Holds the single current tier/status/billing period per principal together
with the provider references used to map incoming webhook events back to
the principal.
"""
from datetime import datetime
from typing import Optional
import uuid

from sqlmodel import SQLModel, Field

from bidpeek.core.config import Tier, SubscriptionStatus
from bidpeek.core.timeutils import utcnow


class SubscriptionState(SQLModel, table=True):
    """
    Current subscription for a principal.

    One row per principal, never deleted. Every reconciled webhook event
    overwrites the row; ``last_event_at`` holds the provider timestamp of
    the newest applied event so older deliveries cannot roll it back.
    """
    __tablename__ = "subscription_states"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique subscription state identifier"
    )

    principal: str = Field(
        unique=True,
        index=True,
        description="Canonical principal key that owns this subscription"
    )

    tier: str = Field(
        default=Tier.FREE.value,
        index=True,
        description="free, hobby, pro, business or unlimited"
    )

    status: str = Field(
        default=SubscriptionStatus.ACTIVE.value,
        index=True,
        description="active, past_due or canceled"
    )

    period_start: datetime = Field(
        description="Start of the current billing period (inclusive)"
    )

    period_end: datetime = Field(
        description="End of the current billing period (exclusive)"
    )

    billing_interval: Optional[str] = Field(
        default=None,
        description="monthly or yearly for paid tiers"
    )

    external_subscription_ref: Optional[str] = Field(
        default=None,
        index=True,
        description="Provider subscription ID"
    )

    external_customer_ref: Optional[str] = Field(
        default=None,
        index=True,
        description="Provider customer ID"
    )

    last_event_id: Optional[str] = Field(
        default=None,
        description="Provider event that last superseded this row"
    )

    last_event_at: Optional[datetime] = Field(
        default=None,
        description="Provider creation time of the last applied event"
    )

    # Metadata
    created_at: datetime = Field(
        default_factory=utcnow,
        description="When this subscription row was created"
    )

    updated_at: datetime = Field(
        default_factory=utcnow,
        description="When this subscription row was last superseded"
    )

    def is_active(self) -> bool:
        """Active or past_due both keep the tier's allotment."""
        return self.status != SubscriptionStatus.CANCELED.value

    def to_dict(self) -> dict:
        """Convert subscription to dictionary for API responses."""
        return {
            "id": self.id,
            "principal": self.principal,
            "tier": self.tier,
            "status": self.status,
            "is_active": self.is_active(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "billing_interval": self.billing_interval,
            "auto_renew": bool(self.external_subscription_ref),
            "external_subscription_ref": self.external_subscription_ref,
            "external_customer_ref": self.external_customer_ref,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat()
        }
