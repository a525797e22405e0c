"""
Scan ledger model: one immutable row per completed metered scan.
"""
from datetime import datetime
from typing import Optional
import uuid

from sqlmodel import SQLModel, Field, Column, JSON

from bidpeek.core.timeutils import utcnow


class ScanRecord(SQLModel, table=True):
    """
    Append-only record of a metered scan.

    Consumption for a billing period is the count of these rows whose
    ``occurred_at`` falls inside the period. ``correlation_id`` is unique so
    retried client submissions collapse into a single row.
    """
    __tablename__ = "scan_records"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique scan record identifier"
    )

    principal: str = Field(
        index=True,
        description="Canonical principal key (user:<id> or device:<id>)"
    )

    action_kind: str = Field(
        index=True,
        description="text_search_current, image_search_current or text_search_sold"
    )

    occurred_at: datetime = Field(
        default_factory=utcnow,
        index=True,
        description="When the scan happened (naive UTC)"
    )

    correlation_id: str = Field(
        unique=True,
        index=True,
        description="Client-supplied idempotency key"
    )

    scan_metadata: Optional[dict] = Field(
        default=None,
        sa_column=Column(JSON),
        description="Free-form client metadata (query, result count, ...)"
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        description="When this row was written"
    )

    def to_dict(self) -> dict:
        """Convert scan record to dictionary for API responses."""
        return {
            "id": self.id,
            "principal": self.principal,
            "action_kind": self.action_kind,
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": self.correlation_id,
            "metadata": self.scan_metadata,
            "created_at": self.created_at.isoformat()
        }
