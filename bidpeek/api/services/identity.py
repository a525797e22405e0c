"""
Identity resolution: maps a request to one canonical principal.

An authenticated user always wins over the per-install device ID. The first
time a device shows up alongside a user token, its anonymous history (scans,
credits, subscription) is re-attributed to the user in a single transaction
and the device is linked to that user for good.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select
import structlog

from bidpeek.core.config import PrincipalKind, TIER_RANK, Tier
from bidpeek.core.exceptions import AuthenticationError
from bidpeek.core.locks import principal_locks
from bidpeek.core.monitoring import increment_identity_merges
from bidpeek.core.security import SecurityUtils
from bidpeek.core.settings import settings
from bidpeek.core.timeutils import utcnow
from bidpeek.db.models import CreditGrant, DeviceLink, ScanRecord, SubscriptionState

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """Canonical identity that usage and entitlements are tracked against."""
    kind: PrincipalKind
    id: str

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @property
    def is_user(self) -> bool:
        return self.kind == PrincipalKind.USER

    @classmethod
    def user(cls, user_id: str) -> "Principal":
        return cls(PrincipalKind.USER, str(user_id))

    @classmethod
    def device(cls, device_id: str) -> "Principal":
        return cls(PrincipalKind.DEVICE, str(device_id))

    @classmethod
    def parse(cls, key: str) -> Optional["Principal"]:
        """Parse ``user:<id>`` / ``device:<id>``; None for anything else."""
        if not key or ":" not in key:
            return None
        kind, _, identifier = key.partition(":")
        try:
            return cls(PrincipalKind(kind), identifier) if identifier else None
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.key


class IdentityResolver:
    """
    Resolves request credentials to a Principal and performs merge-on-login.
    """

    def __init__(self, session: Session):
        self.session = session

    def resolve(self, auth_header: Optional[str], device_id: Optional[str]) -> Principal:
        """
        Resolve the canonical principal for a request.

        Args:
            auth_header: Raw Authorization header value (``Bearer <jwt>``), if any
            device_id: Per-install device identifier, if any

        Returns:
            User principal when a valid token is present, otherwise the device
            principal (or the user a linked device belongs to)

        Raises:
            AuthenticationError: If a token is present but invalid, or no
                identity was supplied at all
        """
        device_id = self._clean_device_id(device_id)
        token = SecurityUtils.extract_bearer_token(auth_header)

        if token is not None:
            if not token:
                raise AuthenticationError("Malformed Authorization header")
            payload = SecurityUtils.verify_token(token)
            if payload is None:
                raise AuthenticationError("Invalid or expired token")
            user_id = payload.get("sub")
            if not user_id:
                raise AuthenticationError("Token has no subject")

            principal = Principal.user(user_id)
            if device_id:
                self.link_device(device_id, principal.id)
            return principal

        if not device_id:
            raise AuthenticationError("No user token or device identifier supplied")

        linked_user = self._linked_user(device_id)
        if linked_user:
            return Principal.user(linked_user)
        return Principal.device(device_id)

    def canonical(self, principal: Principal) -> Principal:
        """Follow a device link, if one exists."""
        if principal.is_user:
            return principal
        linked_user = self._linked_user(principal.id)
        return Principal.user(linked_user) if linked_user else principal

    def link_device(self, device_id: str, user_id: str) -> Optional[DeviceLink]:
        """
        Link a device to a user, moving the device's history the first time.

        Scans, credits and the subscription row move in one transaction while
        both principals are locked, so concurrent readers see either the old
        or the new attribution. A device already claimed by a different user
        stays with that user.

        Returns:
            The DeviceLink, or None when the merge could not be written (it is
            retried on the next authenticated request)
        """
        existing = self._get_link(device_id)
        if existing is not None:
            if existing.user_id != user_id:
                logger.warning(
                    "Device already linked to a different user",
                    device_id=device_id,
                    linked_user_id=existing.user_id,
                    requesting_user_id=user_id
                )
            return existing

        device = Principal.device(device_id)
        user = Principal.user(user_id)

        with principal_locks.hold(device.key, user.key):
            try:
                existing = self.session.get(DeviceLink, device_id)
                if existing is not None:
                    return existing
                link = self._merge(device, user)
                self.session.commit()
            except IntegrityError:
                # another worker linked the device first
                self.session.rollback()
                return self.session.get(DeviceLink, device_id)
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(
                    "Failed to merge device history",
                    device_id=device_id,
                    user_id=user_id,
                    error=str(e)
                )
                return None

        increment_identity_merges()
        logger.info(
            "Merged device history into user",
            device_id=device_id,
            user_id=user_id,
            scans_moved=link.scans_moved,
            credits_moved=link.credits_moved,
            subscription_moved=link.subscription_moved
        )
        return link

    def _merge(self, device: Principal, user: Principal) -> DeviceLink:
        scans_moved = self.session.execute(
            update(ScanRecord)
            .where(ScanRecord.principal == device.key)
            .values(principal=user.key)
        ).rowcount or 0

        credits_moved = self.session.execute(
            update(CreditGrant)
            .where(CreditGrant.principal == device.key)
            .values(principal=user.key)
        ).rowcount or 0

        subscription_moved = self._merge_subscription(device, user)

        link = DeviceLink(
            device_id=device.id,
            user_id=user.id,
            linked_at=utcnow(),
            scans_moved=scans_moved,
            credits_moved=credits_moved,
            subscription_moved=subscription_moved
        )
        self.session.add(link)
        self.session.flush()
        return link

    def _merge_subscription(self, device: Principal, user: Principal) -> bool:
        """
        Carry the device's subscription over to the user.

        Without a user row the device row is re-keyed. With both present the
        higher tier wins; ties keep the user's row. When the device row wins,
        its state supersedes the user row and the device row gives up its
        provider references so webhook lookups land on the user.
        """
        device_sub = self.session.exec(
            select(SubscriptionState).where(SubscriptionState.principal == device.key)
        ).first()
        if device_sub is None:
            return False

        user_sub = self.session.exec(
            select(SubscriptionState).where(SubscriptionState.principal == user.key)
        ).first()

        if user_sub is None:
            device_sub.principal = user.key
            device_sub.updated_at = utcnow()
            self.session.add(device_sub)
            return True

        if TIER_RANK[Tier(device_sub.tier)] <= TIER_RANK[Tier(user_sub.tier)]:
            return False

        for field in (
            "tier", "status", "period_start", "period_end", "billing_interval",
            "external_subscription_ref", "external_customer_ref",
            "last_event_id", "last_event_at",
        ):
            setattr(user_sub, field, getattr(device_sub, field))
        user_sub.updated_at = utcnow()

        device_sub.external_subscription_ref = None
        device_sub.external_customer_ref = None
        device_sub.updated_at = utcnow()

        self.session.add(user_sub)
        self.session.add(device_sub)
        return True

    def _get_link(self, device_id: str) -> Optional[DeviceLink]:
        try:
            return self.session.get(DeviceLink, device_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning("Device link lookup failed", device_id=device_id, error=str(e))
            return None

    def _linked_user(self, device_id: str) -> Optional[str]:
        link = self._get_link(device_id)
        return link.user_id if link else None

    @staticmethod
    def _clean_device_id(device_id: Optional[str]) -> Optional[str]:
        if device_id is None:
            return None
        device_id = str(device_id).strip()
        if not device_id:
            return None
        if len(device_id) > settings.device_id_max_length or ":" in device_id:
            raise AuthenticationError("Invalid device identifier")
        return device_id
