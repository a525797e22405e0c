"""
Entitlement resolution: how many scans a principal may still perform.

This service handles:
- Combining the tier's base allotment with all-time bonus credits
- Counting consumption over the calendar-month billing window
- Short-circuiting unlimited tiers
- Failing open when the store cannot be read

The answer is a best-effort pre-check, not a reservation. Two concurrent
checks may both pass for the last remaining scan.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
import structlog

from bidpeek.core.config import ActionKind, SubscriptionStatus, Tier
from bidpeek.core.locks import principal_locks
from bidpeek.core.monitoring import increment_entitlement_checks, increment_entitlement_degraded
from bidpeek.core.plans import UNLIMITED_SCANS, base_allotment, display_name, get_feature_flags
from bidpeek.core.timeutils import calendar_month_window, utcnow
from bidpeek.db.models import SubscriptionState
from bidpeek.db.session import engine
from bidpeek.api.services.credits import CreditService
from bidpeek.api.services.identity import Principal
from bidpeek.api.services.scans import ScanLedgerService
from bidpeek.api.services.subscriptions import SubscriptionStore

logger = structlog.get_logger(__name__)


def _wire(value: Optional[int]) -> int:
    return UNLIMITED_SCANS if value is None else value


@dataclass
class Entitlement:
    """Derived allowance for one principal at one moment. Never cached."""
    principal: str
    tier: Tier
    status: SubscriptionStatus
    base_allotment: Optional[int]
    bonus_credits: int
    used_this_period: int
    remaining: Optional[int]
    can_consume: bool
    period_start: datetime
    period_end: datetime
    breakdown: Dict[str, int] = field(default_factory=dict)
    degraded: bool = False

    @property
    def unlimited(self) -> bool:
        return self.base_allotment is None

    @property
    def total_allowance(self) -> Optional[int]:
        if self.base_allotment is None:
            return None
        return self.base_allotment + self.bonus_credits

    def usage_info(self) -> dict:
        """Client-facing usage block; unlimited values are -1."""
        return {
            "tier": self.tier.value,
            "status": self.status.value,
            "used": self.used_this_period,
            "limit": _wire(self.total_allowance),
            "baseLimit": _wire(self.base_allotment),
            "bonusScans": self.bonus_credits,
            "remaining": _wire(self.remaining),
            "breakdown": dict(self.breakdown),
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "degraded": self.degraded,
        }


@dataclass
class ScanDecision:
    can_scan: bool
    entitlement: Entitlement
    reason: Optional[str] = None


class EntitlementsService:
    """
    Service computing entitlements from subscription, ledger and credits.
    """

    def __init__(self, session: Session = None):
        """
        Initialize entitlements service.

        Args:
            session: Database session (optional, will create if not provided)
        """
        self.session = session
        self._should_close_session = session is None

        if self.session is None:
            self.session = Session(engine)

        self.subscriptions = SubscriptionStore(self.session)
        self.scans = ScanLedgerService(self.session)
        self.credits = CreditService(self.session)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._should_close_session and self.session:
            self.session.close()

    def get_entitlement(self, principal: Principal, now: Optional[datetime] = None) -> Entitlement:
        """
        Compute the entitlement for a principal.

        Args:
            principal: Canonical principal
            now: Evaluation time (naive UTC, defaults to now)

        Returns:
            Entitlement; when the store is unreachable a permissive one with
            ``degraded=True``
        """
        now = now or utcnow()

        try:
            # merges hold this lock, so a read never sees half-moved history
            with principal_locks.hold(principal.key):
                subscription = self.subscriptions.get_or_create(principal, now)
                entitlement = self._compute(principal, subscription, now)
        except SQLAlchemyError as e:
            self.session.rollback()
            increment_entitlement_degraded()
            logger.warning(
                "Entitlement store unavailable, failing open",
                principal=principal.key,
                error=str(e)
            )
            return self._fail_open(principal, now)

        increment_entitlement_checks(
            entitlement.tier.value,
            "allowed" if entitlement.can_consume else "denied"
        )
        logger.info(
            "Entitlement computed",
            principal=principal.key,
            tier=entitlement.tier.value,
            used=entitlement.used_this_period,
            bonus=entitlement.bonus_credits,
            remaining=entitlement.remaining,
            can_consume=entitlement.can_consume
        )
        return entitlement

    def _compute(self, principal: Principal, subscription: SubscriptionState, now: datetime) -> Entitlement:
        status = SubscriptionStatus(subscription.status)
        # canceled rows keep their last tier on record but only earn the free allotment
        tier = Tier.FREE if status == SubscriptionStatus.CANCELED else Tier(subscription.tier)
        period_start, period_end = self.subscriptions.effective_window(subscription, now)

        base = base_allotment(tier)
        if base is None:
            # unlimited: no counting at all
            return Entitlement(
                principal=principal.key,
                tier=tier,
                status=status,
                base_allotment=None,
                bonus_credits=0,
                used_this_period=0,
                remaining=None,
                can_consume=True,
                period_start=period_start,
                period_end=period_end,
                breakdown={}
            )

        breakdown = self.scans.breakdown_in_period(principal, period_start, period_end)
        used = sum(breakdown.values())
        bonus = self.credits.bonus_credits(principal)
        total = base + bonus

        return Entitlement(
            principal=principal.key,
            tier=tier,
            status=status,
            base_allotment=base,
            bonus_credits=bonus,
            used_this_period=used,
            remaining=max(0, total - used),
            can_consume=used < total,
            period_start=period_start,
            period_end=period_end,
            breakdown=breakdown
        )

    @staticmethod
    def _fail_open(principal: Principal, now: datetime) -> Entitlement:
        period_start, period_end = calendar_month_window(now)
        return Entitlement(
            principal=principal.key,
            tier=Tier.FREE,
            status=SubscriptionStatus.ACTIVE,
            base_allotment=None,
            bonus_credits=0,
            used_this_period=0,
            remaining=None,
            can_consume=True,
            period_start=period_start,
            period_end=period_end,
            breakdown={kind.value: 0 for kind in ActionKind},
            degraded=True
        )

    def can_scan(self, principal: Principal, action_kind: Optional[ActionKind] = None,
                 now: Optional[datetime] = None) -> ScanDecision:
        """
        Pre-check for one more scan. All kinds share a single pool, so
        ``action_kind`` only shows up in logs.
        """
        entitlement = self.get_entitlement(principal, now)
        if entitlement.can_consume:
            return ScanDecision(can_scan=True, entitlement=entitlement)

        reason = (
            f"You've reached your {display_name(entitlement.tier)} plan limit of "
            f"{entitlement.total_allowance} scans this month "
            f"({entitlement.base_allotment} base + {entitlement.bonus_credits} bonus). "
            "Upgrade to continue scanning."
        )
        logger.info(
            "Scan denied",
            principal=principal.key,
            action_kind=action_kind.value if action_kind else None,
            tier=entitlement.tier.value,
            used=entitlement.used_this_period
        )
        return ScanDecision(can_scan=False, entitlement=entitlement, reason=reason)

    def get_status_snapshot(self, principal: Principal, now: Optional[datetime] = None) -> dict:
        """Combined subscription, usage and entitlement view."""
        now = now or utcnow()
        entitlement = self.get_entitlement(principal, now)

        subscription = None
        if not entitlement.degraded:
            try:
                row = self.subscriptions.get(principal)
                subscription = row.to_dict() if row is not None else None
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.warning("Subscription row unavailable for snapshot", principal=principal.key, error=str(e))

        return {
            "principal": principal.key,
            "subscription": subscription,
            "tier": entitlement.tier.value,
            "status": entitlement.status.value,
            "usage": {
                "used": entitlement.used_this_period,
                "breakdown": dict(entitlement.breakdown),
                "month": entitlement.period_start.strftime("%Y-%m"),
                "periodStart": entitlement.period_start.isoformat(),
                "periodEnd": entitlement.period_end.isoformat(),
            },
            "scans": {
                "baseLimit": _wire(entitlement.base_allotment),
                "bonusScans": entitlement.bonus_credits,
                "totalLimit": _wire(entitlement.total_allowance),
                "used": entitlement.used_this_period,
                "remaining": _wire(entitlement.remaining),
            },
            "features": get_feature_flags(entitlement.tier),
            "canScan": entitlement.can_consume,
            "degraded": entitlement.degraded,
        }
