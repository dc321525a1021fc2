"""
HTTP surface tests: routing, caller identity, admin gate and error contract.
"""
import json

import pytest
from fastapi.testclient import TestClient

from tierpay.features.billing.paystack_provider import PaystackProvider, sign_payload
from tierpay.features.billing.service import SubscriptionOrchestrator, get_orchestrator
from tierpay.main import app
from tierpay.models.billing import BillingCycle, PaymentMetadata
from tierpay.tests.mocks import make_confirmation

client = TestClient(app)

USER = {"X-User-Id": "user_alice"}


@pytest.fixture
def api(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield orchestrator
    app.dependency_overrides.clear()


@pytest.fixture
def admin(admin_key):
    return {"X-Admin-Key": admin_key}


def test_healthz():
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_with_schema(reset_db):
    assert client.get("/readyz").status_code == 200


def test_initialize_returns_reference(api, paystack):
    resp = client.post("/api/payments/paystack/initialize", json={"plan": "pro", "billing_cycle": "monthly"}, headers=USER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["provider"] == "paystack"
    assert body["reference"] == "ref_1"
    assert body["status"] == "pending"
    assert paystack.initialized[0]["amount"] == 500000


def test_initialize_requires_caller_identity(api):
    resp = client.post("/api/payments/paystack/initialize", json={"plan": "pro", "billing_cycle": "monthly"})
    assert resp.status_code == 401


def test_unknown_plan_is_404_with_standard_shape(api):
    resp = client.post("/api/payments/paystack/initialize", json={"plan": "platinum", "billing_cycle": "monthly"}, headers=USER)

    assert resp.status_code == 404
    body = resp.json()
    assert body["error"]["code"] == "plan_not_found"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]


def test_cancel_inactive_is_409(api):
    resp = client.post("/api/payments/subscription/cancel", headers=USER)

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "subscription_not_active"


def test_cancel_active(api):
    api.confirm_payment(make_confirmation("TX1"))

    resp = client.post("/api/payments/subscription/cancel", headers=USER)

    assert resp.status_code == 200
    assert resp.json() == {"message": "Subscription canceled successfully"}


def test_change_plan_route(api):
    resp = client.post(
        "/api/payments/subscription/change",
        json={"new_plan": "basic", "new_billing_cycle": "yearly"},
        headers=USER,
    )
    assert resp.status_code == 200
    assert resp.json()["reference"] == "ref_1"


def test_provider_unavailable_is_503(api, paystack):
    from tierpay.core.errors import ProviderUnavailableError

    paystack.fail_initialize = ProviderUnavailableError("timeout", provider="paystack")
    resp = client.post("/api/payments/paystack/initialize", json={"plan": "pro", "billing_cycle": "monthly"}, headers=USER)

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "provider_unavailable"


def test_verify_route_is_idempotent(api, paystack):
    paystack.verify_result = make_confirmation("TX1")

    first = client.get("/api/payments/paystack/verify/ref_TX1", headers=USER)
    second = client.get("/api/payments/paystack/verify/ref_TX1", headers=USER)

    assert first.json()["status"] == "activated"
    assert second.status_code == 200
    assert second.json()["message"] == "Transaction already processed"


def test_manual_payment_requires_admin(api):
    payload = {"user_id": "user_alice", "amount": 5000, "plan": "pro", "billing_cycle": "monthly", "payment_method": "cash"}
    assert client.post("/api/payments/manual", json=payload).status_code == 401
    assert client.post("/api/payments/manual", json=payload, headers={"X-Admin-Key": "wrong"}).status_code == 401


def test_manual_payment_recorded(api, admin):
    payload = {"user_id": "user_alice", "amount": 5000, "plan": "pro", "billing_cycle": "monthly", "payment_method": "cash"}

    resp = client.post("/api/payments/manual", json=payload, headers=admin)

    assert resp.status_code == 200
    assert resp.json()["message"] == "Manual payment recorded successfully"
    assert resp.json()["transaction_id"].startswith("subscription_manual_")


def test_transactions_listing_is_admin_only(api):
    assert client.get("/api/payments/transactions").status_code == 401
    assert client.get("/api/payments/analytics").status_code == 401
    assert client.post("/api/admin/billing/reconcile").status_code == 401


def test_transactions_listing_filters(api, admin):
    api.confirm_payment(make_confirmation("TX1"))
    api.record_manual_payment("user_alice", 5000, "pro", "monthly", "cash")

    resp = client.get("/api/payments/transactions", params={"provider": "manual", "status": "success"}, headers=admin)

    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 1
    assert body["transactions"][0]["payment_provider"] == "manual"


def test_analytics_route(api, admin):
    api.record_manual_payment("user_alice", 5000, "pro", "monthly", "cash")

    resp = client.get("/api/payments/analytics", headers=admin)

    assert resp.status_code == 200
    body = resp.json()
    assert body["total_transactions"] == 1
    assert body["by_provider"]["manual"]["count"] == 1


def test_reconcile_route(api, admin):
    resp = client.post("/api/admin/billing/reconcile", headers=admin)
    assert resp.status_code == 200
    assert resp.json()["issues_found"] == 0


def test_admin_routes_unconfigured_key_is_503(api, monkeypatch):
    from tierpay.core.config import settings

    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    assert client.get("/api/payments/transactions", headers={"X-Admin-Key": "anything"}).status_code == 503


def test_webhook_signature_checked_over_http(seeded_tiers, make_user, notifier):
    make_user()
    secret = "sk_test_paystack"
    orchestrator = SubscriptionOrchestrator({"paystack": PaystackProvider(secret)}, notifier)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        metadata = PaymentMetadata(user_id="user_alice", plan="pro", billing_cycle=BillingCycle.MONTHLY, duration_in_days=30)
        body = json.dumps({
            "event": "charge.success",
            "data": {
                "id": 77,
                "reference": "ref77",
                "amount": 500000,
                "channel": "card",
                "paid_at": "2026-10-18T12:00:00Z",
                "metadata": metadata.as_provider_dict(),
            },
        }).encode()

        bad = client.post(
            "/api/payments/paystack/webhook",
            content=body,
            headers={"x-paystack-signature": "deadbeef", "content-type": "application/json"},
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "invalid_signature"

        good_headers = {"x-paystack-signature": sign_payload(secret, body), "content-type": "application/json"}
        good = client.post("/api/payments/paystack/webhook", content=body, headers=good_headers)
        assert good.status_code == 200
        assert good.json()["outcome"]["status"] == "activated"

        replay = client.post("/api/payments/paystack/webhook", content=body, headers=good_headers)
        assert replay.json()["outcome"]["status"] == "already_processed"
    finally:
        app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_counters(api):
    api.confirm_payment(make_confirmation("TX1"))

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert 'tierpay_confirmations_total{provider="paystack",outcome="activated"} 1.0' in resp.text
