"""Razorpay REST helpers: order creation plus server-side order/payment fetches."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clean_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int | None
    currency: str
    receipt: str = ""
    notes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayOrder":
        raw_notes = data.get("notes")
        notes = {}
        # Razorpay serializes an empty notes map as [].
        if isinstance(raw_notes, dict):
            notes = {str(key): "" if value is None else str(value) for key, value in raw_notes.items()}
        return cls(
            id=_clean_text(data.get("id")),
            amount=_clean_int(data.get("amount")),
            currency=_clean_text(data.get("currency")).upper(),
            receipt=_clean_text(data.get("receipt")),
            notes=notes,
        )


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    order_id: str
    status: str
    amount: int | None
    currency: str

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GatewayPayment":
        return cls(
            id=_clean_text(data.get("id")),
            order_id=_clean_text(data.get("order_id")),
            status=_clean_text(data.get("status")).lower(),
            amount=_clean_int(data.get("amount")),
            currency=_clean_text(data.get("currency")).upper(),
        )


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, *, api_base: str, timeout_seconds: int = 20):
        self.key_id = _clean_text(key_id)
        self.key_secret = _clean_text(key_secret)
        self.api_base = _clean_text(api_base).rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _auth(self) -> tuple[str, str]:
        return (self.key_id, self.key_secret)

    def _result(self, response: httpx.Response, prefix: str) -> tuple[bool, dict[str, Any]]:
        try:
            data = response.json()
        except Exception:
            data = {"error": response.text}

        if response.status_code >= 300:
            return False, {"error": f"{prefix}_status_{response.status_code}", "detail": data}
        if not isinstance(data, dict):
            return False, {"error": f"{prefix}_invalid_response"}
        if not _clean_text(data.get("id")):
            return False, {"error": f"{prefix}_missing_id", "detail": data}
        return True, data

    def create_order(
        self,
        *,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> tuple[bool, dict[str, Any]]:
        if not self.configured:
            return False, {"error": "razorpay_credentials_missing"}

        payload = {
            "amount": int(amount_minor),
            "currency": _clean_text(currency) or "INR",
            "receipt": _clean_text(receipt),
            "notes": dict(notes),
        }
        try:
            response = httpx.post(
                f"{self.api_base}/orders",
                json=payload,
                auth=self._auth(),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            return False, {"error": f"razorpay_unreachable: {exc}"}
        return self._result(response, "razorpay_order_create")

    def _fetch(self, path: str, prefix: str) -> tuple[bool, dict[str, Any]]:
        if not self.configured:
            return False, {"error": "razorpay_credentials_missing"}
        try:
            response = httpx.get(
                f"{self.api_base}/{path}",
                auth=self._auth(),
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            return False, {"error": f"{prefix}_unreachable: {exc}"}
        return self._result(response, prefix)

    def fetch_order(self, order_id: str) -> tuple[bool, dict[str, Any]]:
        clean = _clean_text(order_id)
        if not clean:
            return False, {"error": "razorpay_order_id_missing"}
        return self._fetch(f"orders/{clean}", "razorpay_order_fetch")

    def fetch_payment(self, payment_id: str) -> tuple[bool, dict[str, Any]]:
        clean = _clean_text(payment_id)
        if not clean:
            return False, {"error": "razorpay_payment_id_missing"}
        return self._fetch(f"payments/{clean}", "razorpay_payment_fetch")
