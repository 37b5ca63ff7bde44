"""HTTP-level tests for order creation, payment verification and webhooks."""

from __future__ import annotations

import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from conftest import FakeIdentity, RecordingNotifier, checkout_signature_for, webhook_signature_for
from csi_membership.errors import LedgerWriteFailed
from csi_membership.ledger import PAYMENTS_COLLECTION, USERS_COLLECTION
from csi_membership.service import MEMBERSHIP_PENDING_MESSAGE, create_app
from csi_membership.verification import ContactDetails


def _auth(uid: str = "u1") -> dict[str, str]:
    return {"Authorization": f"Bearer token-{uid}"}


def _order_body(**overrides):
    body = {
        "amount": 358,
        "currency": "INR",
        "receipt": "rcpt_u1_1",
        "userId": "u1",
        "selectedYears": 1,
        "userEmail": "asha@example.com",
        "userName": "Asha",
        "userUsn": "4NM21CS001",
    }
    body.update(overrides)
    return body


def _verify_body(order_id: str, payment_id: str, signature: str | None = None):
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": signature if signature is not None else checkout_signature_for(order_id, payment_id),
        "userId": "ignored",
        "selectedYears": 3,
    }


def _captured_webhook(payment_id: str, order_id: str) -> bytes:
    event = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "status": "captured"}}},
    }
    return json.dumps(event, separators=(",", ":")).encode("utf-8")


@pytest.fixture
def app(settings, store, gateway, notifier):
    return create_app(settings, identity=FakeIdentity(), gateway=gateway, store=store, notifier=notifier)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_healthz_and_plans_are_public(client):
    assert client.get("/healthz").json() == {"ok": True}
    plans = client.get("/api/membership/plans").json()
    assert plans["currency"] == "INR"
    assert [(plan["selectedYears"], plan["totalAmount"]) for plan in plans["plans"]] == [(1, 358), (2, 664), (3, 919)]


def test_create_order_requires_bearer_before_body_validation(client, gateway):
    response = client.post("/api/razorpay/create-order", json={"garbage": True})
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"

    response = client.post("/api/razorpay/create-order", json=_order_body(), headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert gateway.created == []


def test_create_order_rejects_other_user(client, gateway):
    response = client.post("/api/razorpay/create-order", json=_order_body(userId="u2"), headers=_auth("u1"))
    assert response.status_code == 403
    assert response.json() == {"error": "forbidden", "message": "Forbidden: user mismatch"}
    assert gateway.created == []


def test_create_order_validates_body_shape(client):
    response = client.post(
        "/api/razorpay/create-order",
        json=_order_body(selectedYears="1", userEmail="not-an-email"),
        headers=_auth(),
    )
    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] == "invalid_input"
    assert {detail["field"] for detail in payload["details"]} == {"selectedYears", "userEmail"}


def test_create_order_rejects_unsupported_plan(client):
    response = client.post("/api/razorpay/create-order", json=_order_body(selectedYears=4), headers=_auth())
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_plan"


def test_create_order_rejects_client_priced_amount(client, gateway):
    response = client.post("/api/razorpay/create-order", json=_order_body(amount=350), headers=_auth())
    assert response.status_code == 400
    assert response.json() == {
        "error": "amount_mismatch",
        "message": "Expected total amount ₹358 for 1-year plan",
    }
    assert gateway.created == []


def test_create_order_returns_gateway_order(client, gateway):
    response = client.post("/api/razorpay/create-order", json=_order_body(amount=664, selectedYears=2), headers=_auth())
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "orderId": "order_0001",
        "amount": 66400,
        "currency": "INR",
        "platformFee": 14,
        "baseAmount": 650,
    }
    assert gateway.created[0]["notes"]["userEmail"] == "asha@example.com"


def test_create_order_reports_gateway_failure(client, gateway):
    gateway.unavailable = True
    response = client.post("/api/razorpay/create-order", json=_order_body(), headers=_auth())
    assert response.status_code == 502
    assert response.json()["error"] == "order_create_failed"


def test_verify_payment_activates_membership_and_sends_email(client, gateway, store, notifier):
    contact = ContactDetails(email="asha@example.com", name="Asha", usn="4NM21CS001")
    order_id = gateway.seed_order(user_id="u1", years=1, contact=contact)
    payment_id = gateway.capture(order_id, "pay_1")

    response = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, payment_id), headers=_auth())

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Payment verified successfully",
        "paymentId": "pay_1",
        "orderId": order_id,
    }
    user = store.get(USERS_COLLECTION, "u1")
    assert user["role"] == "EXECUTIVE MEMBER"
    assert user["membershipType"].startswith("1-Year Executive Membership")
    assert notifier.sent == [("Asha", "asha@example.com", "1-Year Executive Membership", "4NM21CS001")]

    again = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, payment_id), headers=_auth())
    assert again.status_code == 200
    assert again.json()["message"] == "Payment already processed"
    assert len(notifier.sent) == 1


def test_verify_payment_requires_all_ids(client):
    response = client.post(
        "/api/razorpay/verify-payment",
        json={"razorpay_order_id": "order_1", "razorpay_signature": "abc"},
        headers=_auth(),
    )
    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Missing payment details"}


def test_verify_payment_rejects_bad_signature_without_writes(client, gateway, store):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")

    response = client.post(
        "/api/razorpay/verify-payment",
        json=_verify_body(order_id, "pay_1", signature="0" * 64),
        headers=_auth(),
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Payment verification failed"}
    assert gateway.fetch_calls == []
    assert store.get(PAYMENTS_COLLECTION, "pay_1") is None


def test_verify_payment_rejects_another_users_order(client, gateway, store):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")

    response = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth("u2"))

    assert response.status_code == 403
    assert response.json()["success"] is False
    assert store.get(USERS_COLLECTION, "u1") is None
    assert store.get(USERS_COLLECTION, "u2") is None


def test_verify_payment_rejects_uncaptured_payment(client, gateway):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1", status="authorized")

    response = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth())

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Payment not captured"}


def test_verify_payment_reports_pending_when_ledger_write_fails(app, client, gateway, monkeypatch, notifier):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")

    def _fail(**_kwargs):
        raise LedgerWriteFailed("disk full")

    monkeypatch.setattr(app.state.services.ledger, "activate", _fail)

    response = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth())

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["membershipPending"] is True
    assert payload["message"] == MEMBERSHIP_PENDING_MESSAGE
    assert notifier.sent == []


def test_verify_payment_reports_pending_when_gateway_is_unreachable(client, gateway):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")
    gateway.unavailable = True

    response = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth())

    assert response.status_code == 200
    assert response.json()["membershipPending"] is True


def test_verify_payment_without_key_secret_is_misconfigured(settings, store, gateway):
    app = create_app(
        replace(settings, razorpay_key_secret=""),
        identity=FakeIdentity(),
        gateway=gateway,
        store=store,
        notifier=RecordingNotifier(),
    )
    response = TestClient(app).post("/api/razorpay/verify-payment", json=_verify_body("order_1", "pay_1"), headers=_auth())
    assert response.status_code == 500
    assert response.json()["error"] == "server_misconfigured"


def test_webhook_applies_membership(client, gateway, store, notifier):
    contact = ContactDetails(email="asha@example.com", name="Asha", usn="4NM21CS001")
    order_id = gateway.seed_order(user_id="u1", years=3, contact=contact)
    gateway.capture(order_id, "pay_1")
    body = _captured_webhook("pay_1", order_id)

    response = client.post(
        "/api/razorpay/webhook",
        content=body,
        headers={"X-Razorpay-Signature": webhook_signature_for(body), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert store.get(PAYMENTS_COLLECTION, "pay_1")["source"] == "webhook"
    assert store.get(USERS_COLLECTION, "u1")["membershipType"].startswith("3-Year")
    assert notifier.sent[0][2] == "3-Year Executive Membership"


def test_webhook_rejects_bad_signature(client, gateway, store):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")
    body = _captured_webhook("pay_1", order_id)

    missing = client.post("/api/razorpay/webhook", content=body)
    assert missing.status_code == 400

    reformatted = json.dumps(json.loads(body), indent=2).encode("utf-8")
    tampered = client.post(
        "/api/razorpay/webhook",
        content=reformatted,
        headers={"X-Razorpay-Signature": webhook_signature_for(body)},
    )
    assert tampered.status_code == 400
    assert tampered.json()["error"] == "invalid_signature"
    assert store.get(PAYMENTS_COLLECTION, "pay_1") is None


def test_webhook_acknowledges_other_events(client, store):
    body = b'{"event":"order.paid","payload":{}}'
    response = client.post("/api/razorpay/webhook", content=body, headers={"X-Razorpay-Signature": webhook_signature_for(body)})
    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert store.query(PAYMENTS_COLLECTION) == []


def test_webhook_acknowledges_business_failures_without_writes(client, gateway, store):
    order_id = gateway.seed_order(user_id="u1", years=2, amount_minor=35800)
    gateway.capture(order_id, "pay_1")
    body = _captured_webhook("pay_1", order_id)

    response = client.post("/api/razorpay/webhook", content=body, headers={"X-Razorpay-Signature": webhook_signature_for(body)})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert store.get(PAYMENTS_COLLECTION, "pay_1") is None
    assert store.get(USERS_COLLECTION, "u1") is None


def test_webhook_and_sync_verification_apply_once(client, gateway, store, notifier):
    contact = ContactDetails(email="asha@example.com", name="Asha", usn="4NM21CS001")
    order_id = gateway.seed_order(user_id="u1", contact=contact)
    gateway.capture(order_id, "pay_1")
    body = _captured_webhook("pay_1", order_id)

    hooked = client.post("/api/razorpay/webhook", content=body, headers={"X-Razorpay-Signature": webhook_signature_for(body)})
    synced = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth())

    assert hooked.status_code == 200
    assert synced.status_code == 200
    assert synced.json()["success"] is True
    assert synced.json()["message"] == "Payment already processed"
    assert len(store.query(PAYMENTS_COLLECTION)) == 1
    assert len(notifier.sent) == 1


def test_webhook_without_secret_is_misconfigured(settings, store, gateway):
    app = create_app(replace(settings, razorpay_webhook_secret=""), identity=FakeIdentity(), gateway=gateway, store=store)
    response = TestClient(app).post("/api/razorpay/webhook", content=b"{}", headers={"X-Razorpay-Signature": "x"})
    assert response.status_code == 500
    assert response.json()["error"] == "server_misconfigured"


def test_membership_status_for_caller(client, gateway):
    order_id = gateway.seed_order(user_id="u1", years=2)
    gateway.capture(order_id, "pay_1")
    client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth())

    status = client.get("/api/membership/status", headers=_auth()).json()
    assert status["userId"] == "u1"
    assert status["status"] == "active"
    assert status["role"] == "EXECUTIVE MEMBER"
    assert status["daysRemaining"] >= 729

    other = client.get("/api/membership/status", headers=_auth("u9")).json()
    assert other["status"] == "none"
    assert client.get("/api/membership/status").status_code == 401


def test_check_expired_requires_admin(client, store):
    store.merge(USERS_COLLECTION, "lapsed", {"role": "EXECUTIVE MEMBER", "membershipEndDate": "2020-04-30T00:00:00Z"})

    denied = client.post("/api/membership/check-expired", headers=_auth("lapsed"))
    assert denied.status_code == 403

    store.merge(USERS_COLLECTION, "boss", {"role": "admin"})
    allowed = client.post("/api/membership/check-expired", headers=_auth("boss"))
    assert allowed.status_code == 200
    assert allowed.json() == {"success": True, "updated": 1}
    assert store.get(USERS_COLLECTION, "lapsed")["role"] == "User"


def test_debug_signature_hidden_unless_enabled(client, settings, store, gateway):
    assert client.post("/api/razorpay/debug-signature", content=b"{}").status_code == 404

    app = create_app(replace(settings, enable_dev_endpoints=True), identity=FakeIdentity(), gateway=gateway, store=store)
    response = TestClient(app).post("/api/razorpay/debug-signature", content=b'{"a":1}')
    assert response.status_code == 200
    assert response.json() == {"expectedSignature": webhook_signature_for(b'{"a":1}')}


def test_non_post_methods_are_rejected(client):
    assert client.get("/api/razorpay/create-order").status_code == 405


def test_create_order_rejects_foreign_currency(client, gateway):
    response = client.post(
        "/api/razorpay/create-order",
        json=_order_body(amount=919, currency="IDR", selectedYears=3),
        headers=_auth(),
    )
    assert response.status_code == 400
    assert response.json() == {"error": "amount_mismatch", "message": "Currency must be INR"}
    assert gateway.created == []


def test_verify_payment_rejects_order_in_other_currency(client, gateway, store):
    order_id = gateway.seed_order(user_id="u1", years=3, currency="IDR")
    gateway.capture(order_id, "pay_1")

    response = client.post("/api/razorpay/verify-payment", json=_verify_body(order_id, "pay_1"), headers=_auth())

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Currency mismatch: expected INR"}
    assert store.get(USERS_COLLECTION, "u1") is None
    assert store.get(PAYMENTS_COLLECTION, "pay_1") is None


def test_webhook_gateway_outage_fails_delivery_for_retry(client, gateway, store):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")
    body = _captured_webhook("pay_1", order_id)
    headers = {"X-Razorpay-Signature": webhook_signature_for(body)}

    gateway.unavailable = True
    failed = client.post("/api/razorpay/webhook", content=body, headers=headers)
    assert failed.status_code == 500
    assert failed.json()["error"] == "gateway_fetch_failed"
    assert store.get(PAYMENTS_COLLECTION, "pay_1") is None

    gateway.unavailable = False
    redelivered = client.post("/api/razorpay/webhook", content=body, headers=headers)
    assert redelivered.status_code == 200
    assert redelivered.json() == {"received": True}
    assert store.get(PAYMENTS_COLLECTION, "pay_1")["source"] == "webhook"
    assert store.get(USERS_COLLECTION, "u1")["role"] == "EXECUTIVE MEMBER"


def test_webhook_ledger_failure_fails_delivery_for_retry(app, client, gateway, monkeypatch):
    order_id = gateway.seed_order(user_id="u1")
    gateway.capture(order_id, "pay_1")
    body = _captured_webhook("pay_1", order_id)

    def _fail(**_kwargs):
        raise LedgerWriteFailed("database is locked")

    monkeypatch.setattr(app.state.services.ledger, "activate", _fail)

    response = client.post("/api/razorpay/webhook", content=body, headers={"X-Razorpay-Signature": webhook_signature_for(body)})
    assert response.status_code == 500
    assert response.json()["error"] == "ledger_write_failed"
