"""Order intents and the shared payment verification procedure.

Both entry points, the synchronous checkout confirmation and the gateway
webhook, run :meth:`PaymentVerifier.verify`. Amounts, capture status and the
paying subject are always re-read from the gateway; the only thing a caller
contributes is which order/payment to look at.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import (
    AmountMismatch,
    ConfigurationError,
    Forbidden,
    GatewayError,
    GatewayFetchError,
    InvalidPlan,
    InvalidRequest,
    LedgerWriteFailed,
    MembershipError,
    MissingOrderContext,
    OrderPaymentMismatch,
    PaymentNotCaptured,
    SignatureInvalid,
)
from .ledger import SOURCE_WEBHOOK, Activation, MembershipLedger
from .pricing import PriceQuote, parse_plan_years, quote
from .razorpay_client import GatewayOrder, GatewayPayment


logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "captured"
EVENT_PAYMENT_CAPTURED = "payment.captured"


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class PaymentGateway(Protocol):
    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> tuple[bool, dict[str, Any]]: ...

    def fetch_order(self, order_id: str) -> tuple[bool, dict[str, Any]]: ...

    def fetch_payment(self, payment_id: str) -> tuple[bool, dict[str, Any]]: ...


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def checkout_signature(order_id: str, payment_id: str, key_secret: str) -> str:
    return _hmac_hex(key_secret, f"{order_id}|{payment_id}".encode("utf-8"))


def verify_checkout_signature(order_id: str, payment_id: str, signature: str, key_secret: str):
    candidate = _clean_text(signature)
    if not candidate:
        raise SignatureInvalid("Payment verification failed")
    expected = checkout_signature(order_id, payment_id, key_secret)
    if not hmac.compare_digest(expected, candidate):
        raise SignatureInvalid("Payment verification failed")


def webhook_signature(raw_body: bytes, secret: str) -> str:
    return _hmac_hex(secret, raw_body)


def verify_webhook_signature(raw_body: bytes, signature_header: str | None, secret: str):
    """Check the HMAC over the exact bytes received; the body is not parsed first."""
    candidate = _clean_text(signature_header)
    if not candidate:
        raise SignatureInvalid("Missing webhook signature")
    if not hmac.compare_digest(webhook_signature(raw_body, secret), candidate):
        raise SignatureInvalid("Invalid signature")


@dataclass(frozen=True)
class ContactDetails:
    email: str = ""
    name: str = ""
    usn: str = ""


@dataclass(frozen=True)
class OrderContext:
    subject_id: str
    plan_years: int
    contact: ContactDetails = field(default_factory=ContactDetails)

    @classmethod
    def from_notes(cls, notes: dict[str, str]) -> "OrderContext":
        subject_id = _clean_text(notes.get("userId"))
        try:
            plan_years = parse_plan_years(notes.get("selectedYears"))
        except InvalidPlan:
            plan_years = 0
        if not subject_id or plan_years <= 0:
            raise MissingOrderContext()
        return cls(
            subject_id=subject_id,
            plan_years=plan_years,
            contact=ContactDetails(
                email=_clean_text(notes.get("userEmail")),
                name=_clean_text(notes.get("userName")),
                usn=_clean_text(notes.get("userUsn")),
            ),
        )


def order_notes(subject_id: str, price: PriceQuote, contact: ContactDetails) -> dict[str, str]:
    return {
        "platformFee": str(price.platform_fee),
        "baseAmount": str(price.base_price),
        "userId": subject_id,
        "selectedYears": str(price.plan_years),
        "userEmail": contact.email,
        "userName": contact.name,
        "userUsn": contact.usn,
    }


@dataclass(frozen=True)
class OrderIntent:
    order_id: str
    amount: int
    currency: str
    price: PriceQuote

    def as_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "orderId": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "platformFee": self.price.platform_fee,
            "baseAmount": self.price.base_price,
        }


def create_order_intent(
    gateway: PaymentGateway,
    *,
    subject_id: str,
    requested_user_id: str,
    plan_years: Any,
    requested_total: float,
    currency: str,
    receipt: str,
    contact: ContactDetails,
    expected_currency: str = "INR",
) -> OrderIntent:
    if _clean_text(requested_user_id) != subject_id:
        raise Forbidden()
    if requested_total < 1:
        raise InvalidRequest("Amount must be at least ₹1")
    if _clean_text(currency).upper() != expected_currency:
        raise AmountMismatch(f"Currency must be {expected_currency}")

    price = quote(plan_years)
    if requested_total != price.total_price:
        raise AmountMismatch(
            f"Expected total amount ₹{price.total_price} for {price.plan_years}-year plan"
        )

    ok, payload = gateway.create_order(
        amount_minor=price.total_minor,
        currency=expected_currency,
        receipt=receipt,
        notes=order_notes(subject_id, price, contact),
    )
    if not ok:
        logger.error("razorpay order creation failed for user %s: %s", subject_id, payload.get("error"))
        raise GatewayError()

    order = GatewayOrder.from_payload(payload)
    logger.info("created order %s for user %s (%s-year plan)", order.id, subject_id, price.plan_years)
    return OrderIntent(
        order_id=order.id,
        amount=order.amount if order.amount is not None else price.total_minor,
        currency=order.currency or expected_currency,
        price=price,
    )


@dataclass(frozen=True)
class VerificationOutcome:
    order_id: str
    payment_id: str
    context: OrderContext
    price: PriceQuote
    activation: Activation

    @property
    def already_processed(self) -> bool:
        return self.activation.already_processed


class PaymentVerifier:
    def __init__(self, gateway: PaymentGateway, ledger: MembershipLedger, *, currency: str = "INR"):
        self.gateway = gateway
        self.ledger = ledger
        self.currency = currency

    def _fetch_payment(self, payment_id: str) -> GatewayPayment:
        ok, payload = self.gateway.fetch_payment(payment_id)
        if not ok:
            logger.warning("payment fetch failed for %s: %s", payment_id, payload.get("error"))
            raise GatewayFetchError()
        return GatewayPayment.from_payload(payload)

    def _fetch_order(self, order_id: str) -> GatewayOrder:
        ok, payload = self.gateway.fetch_order(order_id)
        if not ok:
            logger.warning("order fetch failed for %s: %s", order_id, payload.get("error"))
            raise GatewayFetchError()
        return GatewayOrder.from_payload(payload)

    def verify(
        self,
        *,
        payment_id: str,
        order_id: str = "",
        source: str,
        caller_subject: str | None = None,
    ) -> VerificationOutcome:
        """Validate a payment against its order and apply the membership once.

        ``order_id`` may be empty on the webhook path, where the order is
        located through the fetched payment. ``caller_subject`` is the
        authenticated user on the synchronous path and ``None`` for webhooks.
        """
        payment = self._fetch_payment(payment_id)
        if order_id and payment.order_id and payment.order_id != order_id:
            raise OrderPaymentMismatch()
        resolved_order_id = order_id or payment.order_id
        if not resolved_order_id:
            raise OrderPaymentMismatch("Payment is not linked to an order")
        order = self._fetch_order(resolved_order_id)

        if payment.status != PAYMENT_CAPTURED:
            raise PaymentNotCaptured()
        if payment.order_id != order.id:
            raise OrderPaymentMismatch()
        if payment.amount is None or payment.amount != order.amount:
            raise AmountMismatch("Payment amount mismatch")
        if payment.currency and order.currency and payment.currency != order.currency:
            raise AmountMismatch("Payment currency mismatch")
        if order.currency != self.currency:
            raise AmountMismatch(f"Currency mismatch: expected {self.currency}")

        context = OrderContext.from_notes(order.notes)
        if caller_subject is not None and context.subject_id != caller_subject:
            raise Forbidden()

        price = quote(context.plan_years)
        if order.amount != price.total_minor:
            raise AmountMismatch(f"Amount mismatch: expected ₹{price.total_price}")

        activation = self.ledger.activate(
            subject_id=context.subject_id,
            plan_years=price.plan_years,
            order_id=order.id,
            payment_id=payment.id or payment_id,
            base_price=price.base_price,
            fee=price.platform_fee,
            total=price.total_price,
            currency=order.currency,
            source=source,
        )
        return VerificationOutcome(
            order_id=order.id,
            payment_id=payment.id or payment_id,
            context=context,
            price=price,
            activation=activation,
        )


class WebhookIngress:
    """Asynchronous entry point: authenticated by the raw-body HMAC, not a bearer token."""

    def __init__(self, verifier: PaymentVerifier, *, webhook_secret: str):
        self.verifier = verifier
        self.webhook_secret = webhook_secret

    def handle(self, raw_body: bytes, signature_header: str | None) -> VerificationOutcome | None:
        """Verify and apply a webhook delivery.

        Signature and payload-shape problems raise, so the gateway sees a 400.
        Once the signature is accepted, business-rule failures are logged and
        swallowed: retrying them would not change the outcome. Gateway fetch
        and ledger write failures propagate as 500 so the gateway redelivers.
        """
        if not self.webhook_secret:
            raise ConfigurationError("Webhook secret is not configured")
        verify_webhook_signature(raw_body, signature_header, self.webhook_secret)
        event = parse_webhook_event(raw_body)

        entity = captured_payment_entity(event)
        if entity is None:
            logger.info("webhook event %r acknowledged without processing", event.get("event"))
            return None

        payment_id = _clean_text(entity.get("id"))
        order_hint = _clean_text(entity.get("order_id"))
        try:
            outcome = self.verifier.verify(
                payment_id=payment_id,
                order_id=order_hint,
                source=SOURCE_WEBHOOK,
            )
        except (GatewayFetchError, LedgerWriteFailed) as exc:
            logger.error("webhook payment %s not applied, awaiting redelivery: %s", payment_id, exc.message)
            raise
        except MembershipError as exc:
            logger.warning(
                "webhook payment %s (order %s) not applied: %s %s",
                payment_id,
                order_hint or "-",
                exc.code,
                exc.message,
            )
            return None
        return outcome


def parse_webhook_event(raw_body: bytes) -> dict[str, Any]:
    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidRequest("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise InvalidRequest("Webhook payload must be a JSON object")
    return event


def captured_payment_entity(event: dict[str, Any]) -> dict[str, Any] | None:
    """Return the payment entity of a ``payment.captured`` event, else None."""
    if event.get("event") != EVENT_PAYMENT_CAPTURED:
        return None
    payload = event.get("payload")
    payment = payload.get("payment") if isinstance(payload, dict) else None
    entity = payment.get("entity") if isinstance(payment, dict) else None
    if not isinstance(entity, dict) or not _clean_text(entity.get("id")):
        return None
    return entity
