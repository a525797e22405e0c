"""
Subscription state access: one current row per principal.
"""

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
import structlog

from bidpeek.core.config import BillingInterval, SubscriptionStatus, Tier
from bidpeek.core.timeutils import advance_window, calendar_month_window, metering_window, utcnow
from bidpeek.db.models import SubscriptionState
from bidpeek.api.services.identity import Principal

logger = structlog.get_logger(__name__)


class SubscriptionStore:
    """Reads, creates and supersedes SubscriptionState rows."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, principal: Principal, for_update: bool = False) -> Optional[SubscriptionState]:
        statement = select(SubscriptionState).where(SubscriptionState.principal == principal.key)
        if for_update:
            # rendered as FOR UPDATE where the dialect supports it
            statement = statement.with_for_update()
        return self.session.exec(statement).first()

    def get_or_create(self, principal: Principal, now: Optional[datetime] = None) -> SubscriptionState:
        """
        Load the principal's row, creating a free one on first observation.

        The new row covers the current calendar month.
        """
        subscription = self.get(principal)
        if subscription is not None:
            return subscription

        now = now or utcnow()
        period_start, period_end = calendar_month_window(now)
        subscription = SubscriptionState(
            principal=principal.key,
            tier=Tier.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            period_start=period_start,
            period_end=period_end
        )
        self.session.add(subscription)
        try:
            self.session.commit()
        except IntegrityError:
            # a concurrent request created it first
            self.session.rollback()
            return self.get(principal)

        self.session.refresh(subscription)
        logger.info(
            "Created free subscription",
            principal=principal.key,
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat()
        )
        return subscription

    def effective_window(self, subscription: SubscriptionState, now: datetime) -> Tuple[datetime, datetime]:
        """
        Monthly usage window that contains ``now``.

        Lapsed free rows are rolled forward and persisted. Paid rows are only
        evaluated on the advanced window; the provider's renewal event is what
        supersedes them. Periods longer than a month (yearly billing) are
        metered one month at a time.
        """
        window = advance_window(subscription.period_start, subscription.period_end, now)
        rolled = window != (subscription.period_start, subscription.period_end)

        if rolled and subscription.tier == Tier.FREE.value:
            subscription.period_start, subscription.period_end = window
            subscription.updated_at = utcnow()
            self.session.add(subscription)
            self.session.commit()
            self.session.refresh(subscription)
            logger.info(
                "Rolled free period forward",
                principal=subscription.principal,
                period_start=window[0].isoformat(),
                period_end=window[1].isoformat()
            )
        return metering_window(*window, now)

    def find_by_external_ref(
        self,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None
    ) -> Optional[SubscriptionState]:
        """Look up the stored mapping from a provider reference to a row."""
        if subscription_ref:
            subscription = self.session.exec(
                select(SubscriptionState).where(
                    SubscriptionState.external_subscription_ref == subscription_ref
                )
            ).first()
            if subscription is not None:
                return subscription
        if customer_ref:
            return self.session.exec(
                select(SubscriptionState)
                .where(SubscriptionState.external_customer_ref == customer_ref)
                .order_by(SubscriptionState.updated_at.desc())
            ).first()
        return None

    def supersede(
        self,
        principal: Principal,
        tier: Tier,
        status: SubscriptionStatus,
        period_start: datetime,
        period_end: datetime,
        event_id: Optional[str] = None,
        event_at: Optional[datetime] = None,
        billing_interval: Optional[BillingInterval] = None,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        existing: Optional[SubscriptionState] = None
    ) -> SubscriptionState:
        """
        Overwrite (or create) the principal's row in the current transaction.

        Provider references that are not supplied keep their stored values.
        The caller commits.
        """
        if period_end <= period_start:
            period_start, period_end = calendar_month_window(period_start)

        subscription = existing if existing is not None else self.get(principal, for_update=True)
        if subscription is None:
            subscription = SubscriptionState(
                principal=principal.key,
                period_start=period_start,
                period_end=period_end
            )

        subscription.tier = tier.value
        subscription.status = status.value
        subscription.period_start = period_start
        subscription.period_end = period_end
        if billing_interval is not None:
            subscription.billing_interval = billing_interval.value
        elif tier == Tier.FREE:
            subscription.billing_interval = None
        if subscription_ref:
            subscription.external_subscription_ref = subscription_ref
        if customer_ref:
            subscription.external_customer_ref = customer_ref
        if event_id:
            subscription.last_event_id = event_id
        if event_at is not None:
            subscription.last_event_at = event_at
        subscription.updated_at = utcnow()

        self.session.add(subscription)
        self.session.flush()
        return subscription
