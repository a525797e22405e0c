"""
Scan ledger: append-only log of metered scans.

Recording is fire-and-forget from the client's point of view. A scan that
cannot be written is logged and reported as not recorded; it never turns
into an error for the user action that already happened.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, func, select
import structlog

from bidpeek.core.config import ActionKind, parse_action_kind
from bidpeek.core.locks import principal_locks
from bidpeek.core.monitoring import increment_scans_recorded
from bidpeek.core.timeutils import to_naive_utc, utcnow
from bidpeek.db.models import ScanRecord
from bidpeek.api.services.identity import IdentityResolver, Principal

logger = structlog.get_logger(__name__)


@dataclass
class ScanRecordResult:
    recorded: bool
    duplicate: bool = False
    record_id: Optional[str] = None


class ScanLedgerService:
    """Writes and counts ScanRecords for a principal."""

    def __init__(self, session: Session):
        self.session = session
        self.identity = IdentityResolver(session)

    def record_scan(
        self,
        principal: Principal,
        action_kind,
        correlation_id: str,
        metadata: Optional[dict] = None,
        occurred_at: Optional[datetime] = None
    ) -> ScanRecordResult:
        """
        Append one scan to the ledger, idempotent on ``correlation_id``.

        Args:
            principal: Canonical principal the scan counts against
            action_kind: ActionKind or its string name (legacy names accepted)
            correlation_id: Client idempotency key
            metadata: Optional free-form client metadata
            occurred_at: When the scan happened (defaults to now)

        Returns:
            ScanRecordResult; ``recorded`` is False only when the store failed
            or the input could not be recorded
        """
        kind = action_kind if isinstance(action_kind, ActionKind) else parse_action_kind(action_kind)
        if kind is None or not correlation_id:
            logger.error(
                "Rejected scan record",
                principal=principal.key,
                action_kind=str(action_kind),
                has_correlation_id=bool(correlation_id)
            )
            increment_scans_recorded(str(action_kind), "invalid")
            return ScanRecordResult(recorded=False)

        try:
            # merges hold this lock; the link is re-read so a scan never lands on a linked device
            with principal_locks.hold(principal.key):
                owner = self.identity.canonical(principal)
                if owner == principal:
                    existing = self._get_by_correlation(correlation_id)
                    if existing is not None:
                        return self._duplicate(existing, principal, kind)

                    record = ScanRecord(
                        principal=principal.key,
                        action_kind=kind.value,
                        correlation_id=correlation_id,
                        occurred_at=to_naive_utc(occurred_at) if occurred_at else utcnow(),
                        scan_metadata=metadata or None
                    )
                    self.session.add(record)
                    self.session.commit()
                    self.session.refresh(record)

        except IntegrityError:
            # concurrent submission with the same correlation_id won the insert
            self.session.rollback()
            try:
                existing = self._get_by_correlation(correlation_id)
            except SQLAlchemyError:
                self.session.rollback()
                existing = None
            if existing is not None:
                return self._duplicate(existing, principal, kind)
            logger.error("Scan record conflict without a stored duplicate", correlation_id=correlation_id)
            increment_scans_recorded(kind.value, "error")
            return ScanRecordResult(recorded=False)

        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to record scan",
                principal=principal.key,
                action_kind=kind.value,
                correlation_id=correlation_id,
                error=str(e)
            )
            increment_scans_recorded(kind.value, "error")
            return ScanRecordResult(recorded=False)

        if owner != principal:
            logger.info("Scan re-attributed to linked user", device=principal.key, user=owner.key)
            return self.record_scan(owner, kind, correlation_id, metadata=metadata, occurred_at=occurred_at)

        increment_scans_recorded(kind.value, "recorded")
        logger.info(
            "Scan recorded",
            principal=principal.key,
            action_kind=kind.value,
            correlation_id=correlation_id,
            record_id=record.id
        )
        return ScanRecordResult(recorded=True, record_id=record.id)

    def breakdown_in_period(self, principal: Principal, period_start: datetime, period_end: datetime) -> Dict[str, int]:
        """Per-kind counts for the period; every kind is present."""
        statement = select(ScanRecord.action_kind, func.count()).where(
            ScanRecord.principal == principal.key,
            ScanRecord.occurred_at >= period_start,
            ScanRecord.occurred_at < period_end
        ).group_by(ScanRecord.action_kind)

        breakdown = {kind.value: 0 for kind in ActionKind}
        for action_kind, count in self.session.exec(statement).all():
            breakdown[action_kind] = int(count)
        return breakdown

    def _get_by_correlation(self, correlation_id: str) -> Optional[ScanRecord]:
        return self.session.exec(
            select(ScanRecord).where(ScanRecord.correlation_id == correlation_id)
        ).first()

    @staticmethod
    def _duplicate(existing: ScanRecord, principal: Principal, kind: ActionKind) -> ScanRecordResult:
        increment_scans_recorded(kind.value, "duplicate")
        logger.info(
            "Duplicate scan ignored",
            principal=principal.key,
            correlation_id=existing.correlation_id,
            record_id=existing.id
        )
        return ScanRecordResult(recorded=True, duplicate=True, record_id=existing.id)
