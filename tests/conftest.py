from __future__ import annotations

import hashlib
import hmac
from typing import Any

import pytest

from csi_membership.errors import Unauthenticated
from csi_membership.identity import VerifiedIdentity
from csi_membership.pricing import quote
from csi_membership.settings import Settings, SmtpSettings
from csi_membership.store import SqliteDocumentStore
from csi_membership.verification import ContactDetails, order_notes


KEY_SECRET = "rzp-key-secret"
WEBHOOK_SECRET = "rzp-webhook-secret"


class FakeIdentity:
    """Accepts tokens of the form ``token-<uid>``."""

    def verify(self, token: str) -> VerifiedIdentity:
        if not token.startswith("token-"):
            raise Unauthenticated()
        return VerifiedIdentity(uid=token[len("token-"):])


class FakeGateway:
    def __init__(self):
        self.orders: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.fetch_calls: list[tuple[str, str]] = []
        self.unavailable = False

    def create_order(self, *, amount_minor: int, currency: str, receipt: str, notes: dict[str, str]):
        if self.unavailable:
            return False, {"error": "razorpay_unreachable: connection refused"}
        order_id = f"order_{len(self.orders) + 1:04d}"
        order = {
            "id": order_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": dict(notes),
            "status": "created",
        }
        self.orders[order_id] = order
        self.created.append(order)
        return True, dict(order)

    def fetch_order(self, order_id: str):
        self.fetch_calls.append(("order", order_id))
        if self.unavailable or order_id not in self.orders:
            return False, {"error": "razorpay_order_fetch_status_404"}
        return True, dict(self.orders[order_id])

    def fetch_payment(self, payment_id: str):
        self.fetch_calls.append(("payment", payment_id))
        if self.unavailable or payment_id not in self.payments:
            return False, {"error": "razorpay_payment_fetch_status_404"}
        return True, dict(self.payments[payment_id])

    def seed_order(
        self,
        *,
        user_id: str = "user-1",
        years: int = 1,
        amount_minor: int | None = None,
        notes: dict[str, str] | None = None,
        contact: ContactDetails | None = None,
        currency: str = "INR",
    ) -> str:
        price = quote(years)
        order_id = f"order_{len(self.orders) + 1:04d}"
        self.orders[order_id] = {
            "id": order_id,
            "amount": price.total_minor if amount_minor is None else amount_minor,
            "currency": currency,
            "receipt": f"rcpt_{order_id}",
            "notes": notes if notes is not None else order_notes(user_id, price, contact or ContactDetails()),
            "status": "paid",
        }
        return order_id

    def capture(
        self,
        order_id: str,
        payment_id: str = "pay_0001",
        *,
        amount: int | None = None,
        status: str = "captured",
    ) -> str:
        order = self.orders[order_id]
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "status": status,
            "amount": order["amount"] if amount is None else amount,
            "currency": order["currency"],
        }
        return payment_id


class RecordingNotifier:
    def __init__(self, *, fail: bool = False):
        self.sent: list[tuple[str, str, str, str]] = []
        self.fail = fail

    def send_membership_confirmation(self, name: str, email: str, plan_label: str, usn: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((name, email, plan_label, usn))
        return True


def checkout_signature_for(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), f"{order_id}|{payment_id}".encode("utf-8"), hashlib.sha256).hexdigest()


def webhook_signature_for(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def store(tmp_path) -> SqliteDocumentStore:
    return SqliteDocumentStore(tmp_path / "membership.sqlite3")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        firebase_project_id="csi-nmamit-test",
        database_url=f"sqlite:///{tmp_path / 'membership.sqlite3'}",
        smtp=SmtpSettings(),
    )
