"""
HTTP-level tests for the client-facing and webhook endpoints.
"""

from sqlmodel import select

from bidpeek.db.models import ScanRecord, SubscriptionState


def _record(client, device_id, correlation_id, scan_type="current_text", headers=None):
    return client.post("/record-scan", json={
        "deviceId": device_id,
        "scanType": scan_type,
        "searchId": correlation_id,
        "metadata": {"query": "vintage levis"},
    }, headers=headers or {})


class TestScanEndpoints:
    """/check-scan-limit and /record-scan."""

    def test_new_device_can_scan(self, client):
        response = client.post("/check-scan-limit", json={"deviceId": "bp_http_1", "scanType": "current_image"})

        assert response.status_code == 200
        data = response.json()
        assert data["canScan"] is True
        assert data["usageInfo"]["limit"] == 3
        assert data["usageInfo"]["remaining"] == 3
        assert "reason" not in data

    def test_free_limit_reached(self, client):
        for i in range(3):
            assert _record(client, "bp_http_2", f"search-{i}").json()["success"] is True

        data = client.post("/check-scan-limit", json={"deviceId": "bp_http_2"}).json()

        assert data["canScan"] is False
        assert data["usageInfo"]["used"] == 3
        assert data["usageInfo"]["remaining"] == 0
        assert "Free plan limit of 3 scans" in data["reason"]

    def test_record_scan_is_idempotent(self, client, session):
        first = _record(client, "bp_http_3", "search-dup").json()
        second = _record(client, "bp_http_3", "search-dup").json()

        assert first["success"] is True and first["duplicate"] is False
        assert second["success"] is True and second["duplicate"] is True
        assert second["scanId"] == first["scanId"]
        assert len(session.exec(select(ScanRecord)).all()) == 1

    def test_record_scan_requires_correlation_id(self, client):
        response = client.post("/record-scan", json={"deviceId": "bp_http_4", "scanType": "current_text"})

        assert response.status_code == 422
        assert response.json()["error"]["type"] == "ValidationError"

    def test_invalid_scan_type(self, client):
        response = client.post("/check-scan-limit", json={"deviceId": "bp_http_5", "scanType": "video"})

        assert response.status_code == 422

    def test_missing_identity_is_401(self, client):
        response = client.post("/check-scan-limit", json={"scanType": "current_text"})

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "AuthenticationError"

    def test_invalid_token_is_401(self, client):
        response = client.post(
            "/check-scan-limit",
            json={"deviceId": "bp_http_6"},
            headers={"Authorization": "Bearer garbage"}
        )

        assert response.status_code == 401

    def test_login_merges_device_usage(self, client, helpers):
        _record(client, "bp_http_7", "anon-1")
        _record(client, "bp_http_7", "anon-2")

        response = client.post(
            "/check-scan-limit",
            json={"deviceId": "bp_http_7"},
            headers=helpers.bearer("user-http")
        )

        assert response.json()["usageInfo"]["used"] == 2
        usage = client.get("/usage/bp_http_7").json()
        assert usage["principal"] == "user:user-http"
        assert usage["used"] == 2


class TestStatusEndpoints:
    """/subscription-status, /usage and /plans."""

    def test_subscription_status_snapshot(self, client):
        _record(client, "bp_status", "status-1", scan_type="sold_text")

        response = client.get("/subscription-status/bp_status")

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"]["tier"] == "free"
        assert data["usage"]["used"] == 1
        assert data["usage"]["breakdown"]["text_search_sold"] == 1
        assert data["scans"]["baseLimit"] == 3
        assert data["scans"]["remaining"] == 2
        assert data["features"]["show_ads"] is True
        assert data["canScan"] is True

    def test_plans_catalog(self, client):
        data = client.get("/plans").json()

        scans = {plan["tier"]: plan["monthly_scans"] for plan in data["plans"]}
        assert scans == {"free": 3, "hobby": 25, "pro": 100, "business": 100, "unlimited": -1}
        assert [pack["scan_count"] for pack in data["scan_packs"]] == [10, 30, 75]


class TestWebhookEndpoint:
    """POST /webhook."""

    def _post(self, client, helpers, event_id, event_type, obj, path="/webhook", secret=None):
        payload = helpers.event(event_id, event_type, obj)
        return client.post(
            path,
            content=payload,
            headers={"Content-Type": "application/json", "Stripe-Signature": helpers.sign(payload, secret=secret)}
        )

    def test_checkout_webhook(self, client, helpers, session):
        response = self._post(client, helpers, "evt_http_1", "checkout.session.completed", {
            "id": "cs_http_1",
            "mode": "subscription",
            "subscription": "sub_http",
            "customer": "cus_http",
            "metadata": {"userId": "user-http", "tier": "pro", "billing": "monthly"},
        })

        assert response.status_code == 200
        assert response.json()["received"] is True
        row = session.exec(select(SubscriptionState)).one()
        assert row.principal == "user:user-http"
        assert row.tier == "pro"

        status = client.get("/subscription-status/bp_any", headers=helpers.bearer("user-http")).json()
        assert status["scans"]["baseLimit"] == 100

    def test_duplicate_delivery_acknowledged(self, client, helpers):
        obj = {"id": "cs_http_2", "mode": "payment", "metadata": {"userId": "user-http", "packId": "pack_10"}}
        payload = helpers.event("evt_http_2", "checkout.session.completed", obj)
        headers = {"Stripe-Signature": helpers.sign(payload)}

        first = client.post("/webhook", content=payload, headers=headers)
        second = client.post("/webhook", content=payload, headers=headers)

        assert first.status_code == second.status_code == 200
        assert second.json()["duplicate"] is True

    def test_bad_signature_is_400(self, client, helpers):
        response = self._post(client, helpers, "evt_http_3", "checkout.session.completed", {"id": "cs"}, secret="nope")

        assert response.status_code == 400
        assert response.json()["error"]["details"]["retryable"] is False

    def test_unresolved_principal_is_409(self, client, helpers):
        response = self._post(client, helpers, "evt_http_4", "customer.subscription.deleted",
                              {"id": "sub_ghost", "customer": "cus_ghost", "status": "canceled"})

        assert response.status_code == 409
        assert response.json()["error"]["details"]["retryable"] is True

    def test_legacy_stripe_path(self, client, helpers):
        response = self._post(client, helpers, "evt_http_5", "customer.created", {"id": "cus_1"},
                              path="/stripe/webhook")

        assert response.status_code == 200
        assert response.json()["action"] == "ignored"

    def test_invalid_json_is_not_retried(self, client, helpers):
        payload = b"not json"
        response = client.post("/webhook", content=payload, headers={"Stripe-Signature": helpers.sign(payload)})

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "WebhookPayloadError"
        assert response.json()["error"]["details"]["retryable"] is False


class TestOperationalEndpoints:
    """Health, readiness and metrics."""

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readyz(self, client):
        response = client.get("/readyz")
        assert response.status_code == 200
        assert response.json()["checks"]["database"]["healthy"] is True

    def test_metrics(self, client):
        client.post("/check-scan-limit", json={"deviceId": "bp_metrics"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "bidpeek_entitlement_checks_total" in response.text
        assert 'endpoint="/check-scan-limit"' in response.text
