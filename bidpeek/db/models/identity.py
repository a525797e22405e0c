"""
Device to user links created by merge-on-login.
"""
from datetime import datetime

from sqlmodel import SQLModel, Field

from bidpeek.core.timeutils import utcnow


class DeviceLink(SQLModel, table=True):
    """A device that has been claimed by an authenticated user."""
    __tablename__ = "device_links"

    device_id: str = Field(
        primary_key=True,
        description="Per-install device identifier"
    )

    user_id: str = Field(
        index=True,
        description="User that absorbed the device's history"
    )

    linked_at: datetime = Field(
        default_factory=utcnow,
        description="When the merge happened"
    )

    scans_moved: int = Field(default=0)
    credits_moved: int = Field(default=0)
    subscription_moved: bool = Field(default=False)
