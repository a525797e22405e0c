"""
Webhook reconciler: applies payment provider lifecycle events.

Each event is verified, mapped to a principal and applied under that
principal's lock. The processed-event row is written in the same
transaction as the effect, so a delivery either lands completely (and later
deliveries of the same event are acknowledged as duplicates) or not at all
(and the provider's retry applies it).
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session
import structlog

from bidpeek.core.config import (
    PROVIDER_STATUS_MAP,
    BillingInterval,
    SubscriptionStatus,
    Tier,
    parse_tier,
)
from bidpeek.core.exceptions import (
    StoreUnavailableError,
    WebhookPayloadError,
    WebhookSignatureError,
    WebhookUnresolvedPrincipalError,
)
from bidpeek.core.locks import principal_locks
from bidpeek.core.monitoring import increment_webhook_events
from bidpeek.core.plans import get_scan_pack, interval_for_price_id, tier_for_price_id
from bidpeek.core.security import verify_webhook_signature
from bidpeek.core.settings import settings
from bidpeek.core.timeutils import add_months, calendar_month_window, from_unix, utcnow
from bidpeek.db.models import SubscriptionState, WebhookEvent
from bidpeek.api.services.credits import CreditService
from bidpeek.api.services.identity import IdentityResolver, Principal
from bidpeek.api.services.subscriptions import SubscriptionStore

logger = structlog.get_logger(__name__)


@dataclass
class WebhookResult:
    """Acknowledgement for a provider event."""
    event_id: str
    event_type: str
    action: str
    principal: Optional[str] = None
    duplicate: bool = False

    def to_response(self) -> dict:
        return {
            "received": True,
            "duplicate": self.duplicate,
            "action": self.action,
            "event_id": self.event_id,
        }


@dataclass
class _EventContext:
    event_id: str
    event_type: str
    event_at: Optional[datetime]
    obj: Dict[str, Any]
    raw_payload: str
    now: datetime

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.obj.get("metadata") or {}


class WebhookReconciler:
    """
    Consumes provider events and supersedes SubscriptionState / appends
    CreditGrants.
    """

    def __init__(self, session: Session, secret: Optional[str] = None,
                 tolerance_seconds: Optional[int] = None):
        self.session = session
        self.secret = settings.stripe_webhook_secret if secret is None else secret
        self.tolerance_seconds = (
            settings.webhook_signature_tolerance_seconds
            if tolerance_seconds is None else tolerance_seconds
        )
        self.subscriptions = SubscriptionStore(session)
        self.credits = CreditService(session)
        self.identity = IdentityResolver(session)

        self._handlers: Dict[str, Callable[[_EventContext], WebhookResult]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
        }

    def handle_provider_event(self, raw_payload: bytes, signature: Optional[str],
                              now: Optional[datetime] = None) -> WebhookResult:
        """
        Verify and apply one provider event.

        Args:
            raw_payload: Raw request body exactly as received
            signature: Value of the Stripe-Signature header
            now: Business clock override (naive UTC); signature freshness
                always uses the real clock

        Returns:
            WebhookResult to acknowledge with 200

        Raises:
            WebhookSignatureError: Signature missing or invalid (no state change)
            WebhookPayloadError: Payload is not a well-formed event (not retryable)
            WebhookUnresolvedPrincipalError: No principal mapping yet (retryable)
            StoreUnavailableError: Store failed; nothing was recorded (retryable)
        """
        self._verify_signature(raw_payload, signature)
        ctx = self._parse(raw_payload, now or utcnow())

        logger.info(
            "Received provider webhook",
            event_id=ctx.event_id,
            event_type=ctx.event_type
        )

        try:
            if self._already_processed(ctx.event_id):
                result = self._duplicate(ctx)
            else:
                handler = self._handlers.get(ctx.event_type, self._on_unhandled)
                result = handler(ctx)
        except WebhookUnresolvedPrincipalError:
            self.session.rollback()
            increment_webhook_events(ctx.event_type, "unresolved")
            logger.warning("Webhook principal not resolvable yet", event_id=ctx.event_id)
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            increment_webhook_events(ctx.event_type, "error")
            logger.error(
                "Failed to apply webhook event",
                event_id=ctx.event_id,
                event_type=ctx.event_type,
                error=str(e)
            )
            raise StoreUnavailableError("webhook reconciliation", str(e))

        increment_webhook_events(ctx.event_type, "duplicate" if result.duplicate else result.action)
        logger.info(
            "Webhook event applied",
            event_id=ctx.event_id,
            event_type=ctx.event_type,
            action=result.action,
            principal=result.principal,
            duplicate=result.duplicate
        )
        return result

    # Verification and parsing

    def _verify_signature(self, raw_payload: bytes, signature: Optional[str]) -> None:
        # unsigned delivery is tolerated only on a development box without a secret
        if settings.is_development and not self.secret:
            return
        if not signature:
            logger.warning("Missing webhook signature header")
            raise WebhookSignatureError("Missing signature header")
        if not verify_webhook_signature(raw_payload, signature, self.secret, self.tolerance_seconds):
            logger.warning("Invalid webhook signature", signature=signature[:20] + "...")
            raise WebhookSignatureError()

    @staticmethod
    def _parse(raw_payload: bytes, now: datetime) -> _EventContext:
        try:
            text = raw_payload.decode("utf-8")
            event = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Invalid JSON payload", error=str(e))
            raise WebhookPayloadError("Invalid JSON payload")

        if not isinstance(event, dict):
            raise WebhookPayloadError("Webhook payload must be a JSON object")

        obj = (event.get("data") or {}).get("object") if isinstance(event.get("data"), dict) else None
        missing = [
            name for name, value in (("id", event.get("id")), ("type", event.get("type")), ("data.object", obj))
            if not value
        ]
        if missing or not isinstance(obj, dict):
            logger.error("Missing required fields", missing=missing)
            raise WebhookPayloadError(f"Missing required fields: {missing}", details={"missing": missing})

        return _EventContext(
            event_id=str(event["id"]),
            event_type=str(event["type"]),
            event_at=from_unix(event.get("created")),
            obj=obj,
            raw_payload=text,
            now=now
        )

    # Bookkeeping

    def _already_processed(self, event_id: str) -> bool:
        return self.session.get(WebhookEvent, event_id) is not None

    @staticmethod
    def _duplicate(ctx: _EventContext, principal: Optional[Principal] = None) -> WebhookResult:
        logger.info("Event already processed (idempotent)", event_id=ctx.event_id)
        return WebhookResult(
            event_id=ctx.event_id,
            event_type=ctx.event_type,
            action="duplicate",
            principal=principal.key if principal else None,
            duplicate=True
        )

    def _record(self, ctx: _EventContext, action: str,
                principal: Optional[Principal] = None) -> WebhookResult:
        """Write the processed-event row and commit it with the pending effect."""
        self.session.add(WebhookEvent(
            event_id=ctx.event_id,
            event_type=ctx.event_type,
            principal=principal.key if principal else None,
            action=action,
            provider_created_at=ctx.event_at,
            raw_payload_json=ctx.raw_payload,
            processed_at=utcnow()
        ))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            # the same event was committed by a concurrent delivery
            if self._already_processed(ctx.event_id):
                return self._duplicate(ctx, principal)
            raise

        return WebhookResult(
            event_id=ctx.event_id,
            event_type=ctx.event_type,
            action=action,
            principal=principal.key if principal else None
        )

    def _apply(self, ctx: _EventContext, principal: Principal,
               effect: Callable[[Principal], str]) -> WebhookResult:
        """
        Run ``effect`` and record the event while holding the principal's lock.

        The device link is re-read under the lock: a merge-on-login that
        committed after resolution moves the effect onto the user.
        """
        with principal_locks.hold(principal.key):
            owner = self.identity.canonical(principal)
            if owner == principal:
                if self._already_processed(ctx.event_id):
                    return self._duplicate(ctx, principal)
                action = effect(principal)
                return self._record(ctx, action, principal)

        logger.info(
            "Device linked while event was in flight",
            event_id=ctx.event_id,
            device=principal.key,
            user=owner.key
        )
        return self._apply(ctx, owner, effect)

    # Principal resolution

    def _resolve_principal(self, ctx: _EventContext, metadata: Dict[str, Any],
                           subscription_ref: Optional[str] = None,
                           customer_ref: Optional[str] = None) -> Principal:
        """
        Map an event to a principal: explicit metadata first, then the stored
        provider subscription reference, then the customer reference.
        """
        principal = Principal.parse(metadata.get("principal") or "")
        if principal is None:
            user_id = metadata.get("userId") or metadata.get("user_id")
            device_id = metadata.get("deviceId") or metadata.get("device_id")
            if user_id:
                principal = Principal.user(user_id)
            elif device_id:
                principal = Principal.device(device_id)

        if principal is None:
            row = self.subscriptions.find_by_external_ref(subscription_ref, customer_ref)
            if row is not None:
                principal = Principal.parse(row.principal)

        if principal is None:
            raise WebhookUnresolvedPrincipalError(ctx.event_id, subscription_ref or customer_ref)

        return self.identity.canonical(principal)

    # Event handlers

    def _on_unhandled(self, ctx: _EventContext) -> WebhookResult:
        logger.info("Unhandled webhook event type", event_type=ctx.event_type)
        return self._record(ctx, "ignored")

    def _on_checkout_completed(self, ctx: _EventContext) -> WebhookResult:
        session_obj = ctx.obj
        metadata = ctx.metadata
        mode = session_obj.get("mode")

        tier = parse_tier(metadata.get("tier"))
        pack = get_scan_pack(
            pack_id=metadata.get("packId") or metadata.get("pack_id"),
            price_id=metadata.get("priceId") or metadata.get("price_id")
        )
        scan_count = metadata.get("scanCount") or metadata.get("scan_count")

        if tier is not None or (mode == "subscription" and pack is None and not scan_count):
            return self._checkout_subscription(ctx, tier)
        if pack is not None or scan_count or mode == "payment":
            return self._checkout_scan_pack(ctx, pack, scan_count)

        logger.warning("Checkout session without tier or pack", event_id=ctx.event_id)
        return self._record(ctx, "ignored")

    def _checkout_subscription(self, ctx: _EventContext, tier: Optional[Tier]) -> WebhookResult:
        subscription_ref = ctx.obj.get("subscription")
        customer_ref = ctx.obj.get("customer")
        principal = self._resolve_principal(ctx, ctx.metadata, subscription_ref, customer_ref)
        interval = self._billing_interval(ctx.metadata)

        def effect(principal: Principal) -> str:
            existing = self.subscriptions.get(principal, for_update=True)
            if self._is_stale(existing, ctx):
                return "stale"
            period_start, period_end = self._default_period(ctx.now, interval)
            self.subscriptions.supersede(
                principal,
                tier=tier or self._fallback_tier(existing),
                status=SubscriptionStatus.ACTIVE,
                period_start=period_start,
                period_end=period_end,
                event_id=ctx.event_id,
                event_at=ctx.event_at,
                billing_interval=interval,
                subscription_ref=subscription_ref,
                customer_ref=customer_ref,
                existing=existing
            )
            return "subscription_superseded"

        return self._apply(ctx, principal, effect)

    def _checkout_scan_pack(self, ctx: _EventContext, pack: Optional[dict], scan_count) -> WebhookResult:
        try:
            quantity = int(scan_count) if scan_count else (pack["scan_count"] if pack else 0)
        except (TypeError, ValueError):
            quantity = 0
        if quantity <= 0:
            logger.warning("Scan pack checkout without a usable scan count", event_id=ctx.event_id)
            return self._record(ctx, "ignored")

        source_reference = ctx.obj.get("id") or ctx.event_id
        principal = self._resolve_principal(ctx, ctx.metadata, customer_ref=ctx.obj.get("customer"))

        def effect(principal: Principal) -> str:
            self.credits.grant_credits(
                principal,
                quantity,
                source_reference,
                granted_at=ctx.event_at or ctx.now,
                pack_id=pack["id"] if pack else None,
                commit=False
            )
            return "credits_granted"

        return self._apply(ctx, principal, effect)

    def _on_subscription_changed(self, ctx: _EventContext) -> WebhookResult:
        subscription_obj = ctx.obj
        subscription_ref = subscription_obj.get("id")
        customer_ref = subscription_obj.get("customer")
        principal = self._resolve_principal(ctx, ctx.metadata, subscription_ref, customer_ref)

        price_id, recurring_interval = self._price(subscription_obj)
        interval = (
            self._billing_interval(ctx.metadata)
            or interval_for_price_id(price_id)
            or recurring_interval
        )
        provider_status = PROVIDER_STATUS_MAP.get(str(subscription_obj.get("status") or "").lower())
        provider_period = self._provider_period(subscription_obj)

        def effect(principal: Principal) -> str:
            existing = self.subscriptions.get(principal, for_update=True)
            if self._is_stale(existing, ctx):
                return "stale"

            status = provider_status or (
                SubscriptionStatus(existing.status) if existing is not None else SubscriptionStatus.ACTIVE
            )
            if status == SubscriptionStatus.CANCELED:
                tier = Tier.FREE
                period_start, period_end = calendar_month_window(ctx.now)
            else:
                tier = (
                    parse_tier(ctx.metadata.get("tier"))
                    or tier_for_price_id(price_id)
                    or self._fallback_tier(existing)
                )
                period_start, period_end = provider_period or self._default_period(ctx.now, interval)

            self.subscriptions.supersede(
                principal,
                tier=tier,
                status=status,
                period_start=period_start,
                period_end=period_end,
                event_id=ctx.event_id,
                event_at=ctx.event_at,
                billing_interval=interval,
                subscription_ref=subscription_ref,
                customer_ref=customer_ref,
                existing=existing
            )
            return "subscription_superseded"

        return self._apply(ctx, principal, effect)

    def _on_subscription_deleted(self, ctx: _EventContext) -> WebhookResult:
        subscription_ref = ctx.obj.get("id")
        customer_ref = ctx.obj.get("customer")
        principal = self._resolve_principal(ctx, ctx.metadata, subscription_ref, customer_ref)

        def effect(principal: Principal) -> str:
            existing = self.subscriptions.get(principal, for_update=True)
            if self._is_stale(existing, ctx):
                return "stale"
            period_start, period_end = calendar_month_window(ctx.now)
            self.subscriptions.supersede(
                principal,
                tier=Tier.FREE,
                status=SubscriptionStatus.CANCELED,
                period_start=period_start,
                period_end=period_end,
                event_id=ctx.event_id,
                event_at=ctx.event_at,
                existing=existing
            )
            return "subscription_canceled"

        return self._apply(ctx, principal, effect)

    def _on_invoice_paid(self, ctx: _EventContext) -> WebhookResult:
        return self._invoice_status(ctx, SubscriptionStatus.ACTIVE)

    def _on_invoice_failed(self, ctx: _EventContext) -> WebhookResult:
        return self._invoice_status(ctx, SubscriptionStatus.PAST_DUE)

    def _invoice_status(self, ctx: _EventContext, status: SubscriptionStatus) -> WebhookResult:
        """
        Invoices only touch status (and the period on renewal); usage is
        counted by date range so nothing is reset.
        """
        invoice = ctx.obj
        subscription_ref = self._invoice_subscription_ref(invoice)
        if not subscription_ref:
            logger.info("Invoice without subscription ignored", event_id=ctx.event_id)
            return self._record(ctx, "ignored")

        metadata = invoice.get("metadata") or {}
        subscription_details = invoice.get("subscription_details") or {}
        metadata = {**(subscription_details.get("metadata") or {}), **metadata}
        principal = self._resolve_principal(ctx, metadata, subscription_ref, invoice.get("customer"))
        invoice_period = self._invoice_period(invoice)

        def effect(principal: Principal) -> str:
            existing = self.subscriptions.get(principal, for_update=True)
            if existing is None:
                return "ignored"
            if self._is_stale(existing, ctx):
                return "stale"
            if existing.status == SubscriptionStatus.CANCELED.value:
                return "ignored"

            period_start, period_end = existing.period_start, existing.period_end
            if status == SubscriptionStatus.ACTIVE and invoice_period and invoice_period[1] > period_end:
                period_start, period_end = invoice_period

            self.subscriptions.supersede(
                principal,
                tier=Tier(existing.tier),
                status=status,
                period_start=period_start,
                period_end=period_end,
                event_id=ctx.event_id,
                event_at=ctx.event_at,
                existing=existing
            )
            return "status_active" if status == SubscriptionStatus.ACTIVE else "status_past_due"

        return self._apply(ctx, principal, effect)

    # Helpers

    @staticmethod
    def _is_stale(existing: Optional[SubscriptionState], ctx: _EventContext) -> bool:
        if existing is None or existing.last_event_at is None or ctx.event_at is None:
            return False
        if ctx.event_at < existing.last_event_at:
            logger.info(
                "Skipping out-of-order event",
                event_id=ctx.event_id,
                event_at=ctx.event_at.isoformat(),
                last_event_at=existing.last_event_at.isoformat()
            )
            return True
        return False

    @staticmethod
    def _fallback_tier(existing: Optional[SubscriptionState]) -> Tier:
        if existing is not None and existing.tier != Tier.FREE.value:
            return Tier(existing.tier)
        return Tier.HOBBY

    @staticmethod
    def _billing_interval(metadata: Dict[str, Any]) -> Optional[BillingInterval]:
        value = metadata.get("billing") or metadata.get("billing_interval")
        if not value:
            return None
        try:
            return BillingInterval(str(value).strip().lower())
        except ValueError:
            return None

    @staticmethod
    def _default_period(now: datetime, interval: Optional[BillingInterval]) -> Tuple[datetime, datetime]:
        months = 12 if interval == BillingInterval.YEARLY else 1
        return now, add_months(now, months)

    @staticmethod
    def _first_item(subscription_obj: Dict[str, Any]) -> Dict[str, Any]:
        items = (subscription_obj.get("items") or {}).get("data") or []
        return items[0] if items and isinstance(items[0], dict) else {}

    def _price(self, subscription_obj: Dict[str, Any]) -> Tuple[Optional[str], Optional[BillingInterval]]:
        price = self._first_item(subscription_obj).get("price") or subscription_obj.get("plan") or {}
        recurring = (price.get("recurring") or {}).get("interval") or price.get("interval")
        interval = {"month": BillingInterval.MONTHLY, "year": BillingInterval.YEARLY}.get(recurring)
        return price.get("id"), interval

    def _provider_period(self, subscription_obj: Dict[str, Any]) -> Optional[Tuple[datetime, datetime]]:
        # newer API versions carry the period on the subscription item
        for source in (subscription_obj, self._first_item(subscription_obj)):
            start = from_unix(source.get("current_period_start"))
            end = from_unix(source.get("current_period_end"))
            if start and end and end > start:
                return start, end
        return None

    @staticmethod
    def _invoice_subscription_ref(invoice: Dict[str, Any]) -> Optional[str]:
        subscription_ref = invoice.get("subscription")
        if isinstance(subscription_ref, dict):
            subscription_ref = subscription_ref.get("id")
        if not subscription_ref:
            details = ((invoice.get("parent") or {}).get("subscription_details") or {})
            subscription_ref = details.get("subscription")
        return subscription_ref

    @staticmethod
    def _invoice_period(invoice: Dict[str, Any]) -> Optional[Tuple[datetime, datetime]]:
        lines = (invoice.get("lines") or {}).get("data") or []
        for line in lines:
            period = line.get("period") or {}
            start, end = from_unix(period.get("start")), from_unix(period.get("end"))
            if start and end and end > start:
                return start, end
        return None
