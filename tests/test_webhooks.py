"""
Tests for payment provider webhook reconciliation.

Tests cover:
- Signature verification
- Idempotent event handling
- Subscription lifecycle (checkout, update, delete, invoices)
- Scan pack credit grants
- Principal resolution and retryable failures
- Out-of-order delivery
"""

import time
from datetime import datetime

import pytest
from sqlmodel import select

from bidpeek.api.services import (
    CreditService,
    EntitlementsService,
    IdentityResolver,
    Principal,
    SubscriptionStore,
    WebhookReconciler,
)
from bidpeek.core.exceptions import (
    WebhookPayloadError,
    WebhookSignatureError,
    WebhookUnresolvedPrincipalError,
)
from bidpeek.core.security import build_signature_header, verify_webhook_signature
from bidpeek.db.models import CreditGrant, SubscriptionState, WebhookEvent


NOW = datetime(2024, 1, 15, 12, 0)
USER = Principal.user("user-42")


def _checkout_subscription(tier="pro", billing="monthly", user_id="user-42", sub="sub_123", customer="cus_123"):
    return {
        "id": "cs_sub_1",
        "object": "checkout.session",
        "mode": "subscription",
        "subscription": sub,
        "customer": customer,
        "metadata": {"userId": user_id, "tier": tier, "billing": billing},
    }


def _subscription(status="active", sub="sub_123", customer="cus_123", metadata=None, price="price_1RWQvYR96MkVj8srXJdwKnPi",
                  start=datetime(2024, 1, 10), end=datetime(2024, 2, 10)):
    return {
        "id": sub,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "current_period_start": int((start - datetime(1970, 1, 1)).total_seconds()),
        "current_period_end": int((end - datetime(1970, 1, 1)).total_seconds()),
        "items": {"data": [{"price": {"id": price, "recurring": {"interval": "month"}}}]},
    }


class TestSignatures:
    """Signature header verification."""

    def test_valid_signature(self):
        payload = b'{"id": "evt_1"}'
        header = build_signature_header(payload, "whsec_x")
        assert verify_webhook_signature(payload, header, "whsec_x") is True

    def test_tampered_payload(self):
        header = build_signature_header(b'{"id": "evt_1"}', "whsec_x")
        assert verify_webhook_signature(b'{"id": "evt_2"}', header, "whsec_x") is False

    def test_expired_timestamp(self):
        payload = b'{"id": "evt_1"}'
        header = build_signature_header(payload, "whsec_x", timestamp=int(time.time()) - 3600)
        assert verify_webhook_signature(payload, header, "whsec_x", tolerance_seconds=300) is False

    def test_any_v1_candidate_matches(self):
        payload = b'{"id": "evt_1"}'
        good = build_signature_header(payload, "whsec_x")
        timestamp, signature = good.split(",")
        header = f"{timestamp},v1=deadbeef,{signature}"
        assert verify_webhook_signature(payload, header, "whsec_x") is True

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "t=123"])
    def test_malformed_headers(self, header):
        assert verify_webhook_signature(b"{}", header, "whsec_x") is False


class TestWebhookReconciler:
    """Service-level reconciliation."""

    def _deliver(self, session, helpers, event_id, event_type, obj, created=None, now=NOW):
        payload = helpers.event(event_id, event_type, obj, created=created)
        return WebhookReconciler(session).handle_provider_event(payload, helpers.sign(payload), now=now)

    def test_invalid_signature_changes_nothing(self, session, helpers):
        payload = helpers.event("evt_bad", "checkout.session.completed", _checkout_subscription())

        with pytest.raises(WebhookSignatureError):
            WebhookReconciler(session).handle_provider_event(payload, helpers.sign(payload, secret="wrong"))

        assert session.exec(select(SubscriptionState)).all() == []
        assert session.exec(select(WebhookEvent)).all() == []

    def test_missing_signature(self, session, helpers):
        payload = helpers.event("evt_nosig", "checkout.session.completed", _checkout_subscription())

        with pytest.raises(WebhookSignatureError):
            WebhookReconciler(session).handle_provider_event(payload, None)

    def test_malformed_event(self, session, helpers):
        payload = b'{"type": "checkout.session.completed"}'

        with pytest.raises(WebhookPayloadError) as exc_info:
            WebhookReconciler(session).handle_provider_event(payload, helpers.sign(payload))

        assert exc_info.value.status_code == 400
        assert exc_info.value.details["retryable"] is False
        assert session.exec(select(WebhookEvent)).all() == []

    def test_checkout_creates_subscription(self, session, helpers):
        result = self._deliver(session, helpers, "evt_checkout", "checkout.session.completed", _checkout_subscription())

        assert result.action == "subscription_superseded"
        row = SubscriptionStore(session).get(USER)
        assert row.tier == "pro"
        assert row.status == "active"
        assert row.billing_interval == "monthly"
        assert row.external_subscription_ref == "sub_123"
        assert row.external_customer_ref == "cus_123"
        assert row.period_start == NOW
        assert row.period_end == datetime(2024, 2, 15, 12, 0)

    def test_yearly_checkout_period(self, session, helpers):
        self._deliver(session, helpers, "evt_yearly", "checkout.session.completed",
                      _checkout_subscription(tier="business", billing="yearly"))

        row = SubscriptionStore(session).get(USER)
        assert row.tier == "business"
        assert row.period_end == datetime(2025, 1, 15, 12, 0)

    def test_replayed_event_applies_once(self, session, helpers):
        payload = helpers.event("evt_replay", "checkout.session.completed", {
            "id": "cs_pack_1",
            "mode": "payment",
            "metadata": {"userId": "user-42", "packId": "pack_10", "scanCount": "10"},
        })
        reconciler = WebhookReconciler(session)

        first = reconciler.handle_provider_event(payload, helpers.sign(payload), now=NOW)
        second = reconciler.handle_provider_event(payload, helpers.sign(payload), now=NOW)

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.to_response()["received"] is True
        assert CreditService(session).bonus_credits(USER) == 10
        assert len(session.exec(select(WebhookEvent)).all()) == 1

    def test_scan_pack_by_pack_id(self, session, helpers):
        result = self._deliver(session, helpers, "evt_pack30", "checkout.session.completed", {
            "id": "cs_pack_30",
            "mode": "payment",
            "metadata": {"deviceId": "bp_anon", "packId": "pack_30"},
        })

        assert result.action == "credits_granted"
        grant = session.exec(select(CreditGrant)).one()
        assert grant.principal == "device:bp_anon"
        assert grant.quantity == 30
        assert grant.source_reference == "cs_pack_30"
        assert grant.pack_id == "pack_30"

    def test_same_checkout_session_under_new_event_id(self, session, helpers):
        obj = {"id": "cs_twice", "mode": "payment", "metadata": {"userId": "user-42", "scanCount": "10"}}
        self._deliver(session, helpers, "evt_a", "checkout.session.completed", obj)
        self._deliver(session, helpers, "evt_b", "checkout.session.completed", obj)

        assert CreditService(session).bonus_credits(USER) == 10

    def test_subscription_deleted_downgrades(self, session, helpers):
        self._deliver(session, helpers, "evt_c1", "checkout.session.completed", _checkout_subscription())

        self._deliver(session, helpers, "evt_del", "customer.subscription.deleted",
                      _subscription(status="canceled"), now=datetime(2024, 1, 20))

        row = SubscriptionStore(session).get(USER)
        assert row.tier == "free"
        assert row.status == "canceled"
        assert row.external_subscription_ref == "sub_123"
        entitlement = EntitlementsService(session).get_entitlement(USER, datetime(2024, 1, 20))
        assert entitlement.base_allotment == 3

    def test_subscription_updated_uses_price_and_period(self, session, helpers):
        self._deliver(session, helpers, "evt_c2", "checkout.session.completed",
                      _checkout_subscription(tier="hobby"))

        self._deliver(session, helpers, "evt_upd", "customer.subscription.updated",
                      _subscription(price="price_1RWQvqR96MkVj8srneZ54nI0"))

        row = SubscriptionStore(session).get(USER)
        assert row.tier == "unlimited"
        assert row.period_start == datetime(2024, 1, 10)
        assert row.period_end == datetime(2024, 2, 10)

    def test_subscription_created_for_metadata_user(self, session, helpers):
        self._deliver(session, helpers, "evt_created", "customer.subscription.created",
                      _subscription(sub="sub_new", metadata={"userId": "user-7", "tier": "business"}))

        row = SubscriptionStore(session).get(Principal.user("user-7"))
        assert row.tier == "business"
        assert row.external_subscription_ref == "sub_new"

    def test_trialing_maps_to_active(self, session, helpers):
        self._deliver(session, helpers, "evt_trial", "customer.subscription.created",
                      _subscription(status="trialing", metadata={"userId": "user-42"}))

        assert SubscriptionStore(session).get(USER).status == "active"

    def test_unknown_reference_is_retryable(self, session, helpers):
        payload = helpers.event(
            "evt_early",
            "customer.subscription.updated",
            _subscription(sub="sub_unknown", customer="cus_unknown"),
            created=datetime(2024, 1, 2)
        )

        with pytest.raises(WebhookUnresolvedPrincipalError) as exc_info:
            WebhookReconciler(session).handle_provider_event(payload, helpers.sign(payload), now=NOW)

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["retryable"] is True
        assert session.get(WebhookEvent, "evt_early") is None

        # the mapping lands, then the provider retries the same event
        self._deliver(session, helpers, "evt_map", "checkout.session.completed",
                      _checkout_subscription(sub="sub_unknown", customer="cus_unknown"),
                      created=datetime(2024, 1, 1))
        retried = WebhookReconciler(session).handle_provider_event(payload, helpers.sign(payload), now=NOW)

        assert retried.action == "subscription_superseded"
        assert retried.principal == USER.key

    def test_invoice_payment_failed_sets_past_due(self, session, helpers):
        self._deliver(session, helpers, "evt_c3", "checkout.session.completed", _checkout_subscription())

        self._deliver(session, helpers, "evt_fail", "invoice.payment_failed",
                      {"id": "in_1", "subscription": "sub_123", "customer": "cus_123"})

        row = SubscriptionStore(session).get(USER)
        assert row.status == "past_due"
        assert row.tier == "pro"
        assert EntitlementsService(session).get_entitlement(USER, NOW).can_consume is True

    def test_invoice_paid_restores_active_and_renews_period(self, session, helpers):
        self._deliver(session, helpers, "evt_c4", "checkout.session.completed", _checkout_subscription())
        self._deliver(session, helpers, "evt_fail2", "invoice.payment_failed",
                      {"id": "in_2", "subscription": "sub_123"})

        renewal_start, renewal_end = datetime(2024, 2, 15, 12, 0), datetime(2024, 3, 15, 12, 0)
        self._deliver(session, helpers, "evt_paid", "invoice.payment_succeeded", {
            "id": "in_3",
            "subscription": "sub_123",
            "lines": {"data": [{"period": {
                "start": int((renewal_start - datetime(1970, 1, 1)).total_seconds()),
                "end": int((renewal_end - datetime(1970, 1, 1)).total_seconds()),
            }}]},
        })

        row = SubscriptionStore(session).get(USER)
        assert row.status == "active"
        assert row.period_start == renewal_start
        assert row.period_end == renewal_end

    def test_invoice_without_subscription_is_ignored(self, session, helpers):
        result = self._deliver(session, helpers, "evt_oneoff", "invoice.payment_succeeded", {"id": "in_oneoff"})

        assert result.action == "ignored"
        assert session.get(WebhookEvent, "evt_oneoff").action == "ignored"

    def test_unknown_event_type_is_acknowledged(self, session, helpers):
        result = self._deliver(session, helpers, "evt_other", "customer.created", {"id": "cus_1"})

        assert result.action == "ignored"
        assert result.to_response()["received"] is True

    def test_out_of_order_event_is_skipped(self, session, helpers):
        self._deliver(session, helpers, "evt_new", "customer.subscription.updated",
                      _subscription(metadata={"userId": "user-42", "tier": "pro"}),
                      created=datetime(2024, 1, 12, 10, 0))

        result = self._deliver(session, helpers, "evt_old", "customer.subscription.updated",
                               _subscription(metadata={"userId": "user-42", "tier": "hobby"}),
                               created=datetime(2024, 1, 12, 9, 0))

        assert result.action == "stale"
        assert SubscriptionStore(session).get(USER).tier == "pro"
        assert session.get(WebhookEvent, "evt_old").action == "stale"

    def test_device_metadata_follows_link(self, session, helpers):
        IdentityResolver(session).link_device("bp_linked", "user-42")

        self._deliver(session, helpers, "evt_linked", "checkout.session.completed", {
            "id": "cs_linked",
            "mode": "payment",
            "metadata": {"deviceId": "bp_linked", "packId": "pack_75"},
        })

        assert CreditService(session).bonus_credits(USER) == 75

    def test_link_during_delivery_moves_effect_to_user(self, session, helpers, monkeypatch):
        reconciler = WebhookReconciler(session)
        apply_effect = reconciler._apply

        def login_then_apply(ctx, principal, effect):
            # the merge commits after the device was resolved, before its effect
            if not principal.is_user:
                IdentityResolver(session).link_device("dev-1", "user-42")
            return apply_effect(ctx, principal, effect)

        monkeypatch.setattr(reconciler, "_apply", login_then_apply)
        payload = helpers.event("evt_race_pack", "checkout.session.completed", {
            "id": "cs_race",
            "mode": "payment",
            "metadata": {"deviceId": "dev-1", "packId": "pack_10"},
        })

        result = reconciler.handle_provider_event(payload, helpers.sign(payload), now=NOW)

        assert result.principal == "user:user-42"
        assert IdentityResolver(session).resolve(None, "dev-1") == USER
        assert CreditService(session).bonus_credits(USER) == 10
        assert CreditService(session).bonus_credits(Principal.device("dev-1")) == 0

    def test_incomplete_subscription_earns_free_allotment(self, session, helpers):
        self._deliver(session, helpers, "evt_incomplete", "customer.subscription.created",
                      _subscription(status="incomplete", metadata={"userId": "user-42", "tier": "pro"}))

        row = SubscriptionStore(session).get(USER)
        assert row.status == "canceled"
        assert row.tier == "free"
        entitlement = EntitlementsService(session).get_entitlement(USER, NOW)
        assert entitlement.base_allotment == 3
