"""
Credit store: bonus scans from one-off pack purchases.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select
import structlog

from bidpeek.core.exceptions import ValidationError
from bidpeek.core.monitoring import increment_credit_grants
from bidpeek.core.timeutils import to_naive_utc, utcnow
from bidpeek.db.models import CreditGrant
from bidpeek.api.services.identity import Principal

logger = structlog.get_logger(__name__)


class CreditService:
    """Appends and sums CreditGrants. Credits never expire."""

    def __init__(self, session: Session):
        self.session = session

    def grant_credits(
        self,
        principal: Principal,
        quantity: int,
        source_reference: str,
        granted_at: Optional[datetime] = None,
        pack_id: Optional[str] = None,
        commit: bool = True
    ) -> CreditGrant:
        """
        Apply a credit grant once per ``source_reference``.

        With ``commit=False`` the grant is only flushed, so the caller can
        commit it together with other writes (the webhook reconciler does).

        Raises:
            ValidationError: If quantity is not a positive integer or the
                source reference is empty
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "Credit quantity must be a positive integer",
                details={"quantity": quantity}
            )
        if not source_reference:
            raise ValidationError("Credit grant requires a source reference")

        existing = self.get_by_source(source_reference)
        if existing is not None:
            increment_credit_grants("duplicate")
            logger.info(
                "Duplicate credit grant ignored",
                principal=principal.key,
                source_reference=source_reference,
                grant_id=existing.id
            )
            return existing

        grant = CreditGrant(
            principal=principal.key,
            quantity=quantity,
            source_reference=source_reference,
            granted_at=to_naive_utc(granted_at) if granted_at else utcnow(),
            pack_id=pack_id
        )
        self.session.add(grant)

        if not commit:
            self.session.flush()
            increment_credit_grants("granted")
            return grant

        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get_by_source(source_reference)
            if existing is None:
                raise
            increment_credit_grants("duplicate")
            return existing

        self.session.refresh(grant)
        increment_credit_grants("granted")
        logger.info(
            "Credits granted",
            principal=principal.key,
            quantity=quantity,
            source_reference=source_reference
        )
        return grant

    def bonus_credits(self, principal: Principal) -> int:
        """All-time sum of granted credits."""
        statement = select(func.coalesce(func.sum(CreditGrant.quantity), 0)).where(
            CreditGrant.principal == principal.key
        )
        return int(self.session.exec(statement).one() or 0)

    def get_by_source(self, source_reference: str) -> Optional[CreditGrant]:
        return self.session.exec(
            select(CreditGrant).where(CreditGrant.source_reference == source_reference)
        ).first()
