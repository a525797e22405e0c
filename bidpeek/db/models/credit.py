"""
Credit grant model for purchased bonus scans.
"""
from datetime import datetime
from typing import Optional
import uuid

from sqlmodel import SQLModel, Field

from bidpeek.core.timeutils import utcnow


class CreditGrant(SQLModel, table=True):
    """
    Append-only bonus credit grant from a one-off scan pack purchase.

    Credits never expire and are summed rather than consumed individually.
    ``source_reference`` (the checkout session ID) can be applied only once.
    """
    __tablename__ = "credit_grants"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique grant identifier"
    )

    principal: str = Field(
        index=True,
        description="Canonical principal key the credits belong to"
    )

    quantity: int = Field(
        gt=0,
        description="Number of bonus scans granted"
    )

    granted_at: datetime = Field(
        default_factory=utcnow,
        description="When the grant was applied"
    )

    source_reference: str = Field(
        unique=True,
        index=True,
        description="Idempotency key tied to the originating purchase"
    )

    source: str = Field(
        default="scan_pack_purchase",
        description="Origin of the grant"
    )

    pack_id: Optional[str] = Field(
        default=None,
        description="Scan pack identifier, when known"
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "principal": self.principal,
            "quantity": self.quantity,
            "granted_at": self.granted_at.isoformat(),
            "source_reference": self.source_reference,
            "source": self.source,
            "pack_id": self.pack_id
        }
