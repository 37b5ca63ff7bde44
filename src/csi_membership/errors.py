"""Error taxonomy for the membership payment pipeline."""

from __future__ import annotations

from typing import Any


class MembershipError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class Unauthenticated(MembershipError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"


class Forbidden(MembershipError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden: user mismatch"


class InvalidRequest(MembershipError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class InvalidPlan(MembershipError):
    status_code = 400
    code = "invalid_plan"
    default_message = "Unsupported membership duration selected"


class AmountMismatch(MembershipError):
    status_code = 400
    code = "amount_mismatch"
    default_message = "Amount mismatch"


class MissingOrderContext(MembershipError):
    status_code = 400
    code = "missing_order_context"
    default_message = "Missing order context (user/plan) in Razorpay order"


class SignatureInvalid(MembershipError):
    status_code = 400
    code = "invalid_signature"
    default_message = "Invalid signature"


class PaymentNotCaptured(MembershipError):
    status_code = 400
    code = "payment_not_captured"
    default_message = "Payment not captured"


class OrderPaymentMismatch(MembershipError):
    status_code = 400
    code = "order_payment_mismatch"
    default_message = "Payment does not belong to order"


class GatewayFetchError(MembershipError):
    status_code = 500
    code = "gateway_fetch_failed"
    default_message = "Unable to fetch payment/order from Razorpay"


class GatewayError(MembershipError):
    status_code = 502
    code = "order_create_failed"
    default_message = "Failed to create order"


class LedgerWriteFailed(MembershipError):
    status_code = 500
    code = "ledger_write_failed"
    default_message = "Membership update failed"


class ConfigurationError(MembershipError):
    status_code = 500
    code = "server_misconfigured"
    default_message = "Server misconfiguration"


class StoreError(MembershipError):
    status_code = 500
    code = "store_error"
    default_message = "Document store operation failed"
