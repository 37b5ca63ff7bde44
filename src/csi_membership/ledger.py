"""Membership ledger: applies an executive membership exactly once per payment."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable

from .errors import LedgerWriteFailed, StoreError
from .store import DocumentStore


logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
PAYMENTS_COLLECTION = "membershipPayments"

EXECUTIVE_ROLE = "EXECUTIVE MEMBER"
DEFAULT_ROLE = "User"
ADMIN_ROLE = "admin"

SOURCE_VERIFY_PAYMENT = "verify-payment"
SOURCE_WEBHOOK = "webhook"

MEMBERSHIP_ACTIVE = "active"
MEMBERSHIP_EXPIRED = "expired"
MEMBERSHIP_NONE = "none"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _from_iso(value: Any) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    for candidate in (raw, raw.replace("Z", "+00:00")):
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def add_years(day: date, years: int) -> date:
    """Same month and day ``years`` later; Feb 29 lands on Feb 28 in common years."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


def membership_type_label(plan_years: int, end: date) -> str:
    return f"{plan_years}-Year Executive Membership (Until April 30, {end.year})"


@dataclass(frozen=True)
class Activation:
    applied: bool
    subject_id: str
    payment_id: str
    membership_end: str = ""
    marker: dict[str, Any] = field(default_factory=dict)

    @property
    def already_processed(self) -> bool:
        return not self.applied


class MembershipLedger:
    def __init__(self, store: DocumentStore, *, clock: Callable[[], datetime] = _now):
        self.store = store
        self.clock = clock

    def processed_marker(self, payment_id: str) -> dict[str, Any] | None:
        return self.store.get(PAYMENTS_COLLECTION, payment_id)

    def activate(
        self,
        *,
        subject_id: str,
        plan_years: int,
        order_id: str,
        payment_id: str,
        base_price: int,
        fee: int,
        total: int,
        currency: str,
        source: str,
    ) -> Activation:
        """Write the marker and the membership subtree in one transaction.

        The marker insert is create-if-absent: whichever caller commits it
        first applies the membership, and every later caller for the same
        payment id observes the marker and writes nothing.
        """
        started = self.clock()
        end_day = add_years(started.date(), plan_years)
        ends = datetime.combine(end_day, time.min, tzinfo=timezone.utc)

        marker = {
            "orderId": order_id,
            "paymentId": payment_id,
            "userId": subject_id,
            "selectedYears": plan_years,
            "amountBase": base_price,
            "platformFee": fee,
            "amountTotal": total,
            "currency": currency,
            "processedAt": _iso(started),
            "source": source,
        }
        membership = {
            "membershipType": membership_type_label(plan_years, end_day),
            "membershipStartDate": _iso(started),
            "membershipEndDate": _iso(ends),
            "membershipExpired": False,
            "paymentDetails": {
                "razorpayOrderId": order_id,
                "razorpayPaymentId": payment_id,
                "amount": base_price,
                "platformFee": fee,
                "totalAmount": total,
                "currency": currency,
                "paymentDate": _iso(started),
            },
            "role": EXECUTIVE_ROLE,
            "updatedAt": _iso(started),
        }

        try:
            with self.store.transaction() as txn:
                if not txn.create(PAYMENTS_COLLECTION, payment_id, marker):
                    existing = txn.get(PAYMENTS_COLLECTION, payment_id) or {}
                    logger.info("payment %s already processed (source=%s)", payment_id, existing.get("source"))
                    return Activation(
                        applied=False,
                        subject_id=str(existing.get("userId", subject_id)),
                        payment_id=payment_id,
                        marker=existing,
                    )
                txn.merge(USERS_COLLECTION, subject_id, membership)
        except (StoreError, RuntimeError) as exc:
            logger.error(
                "membership write failed for payment %s (order %s, user %s): %s",
                payment_id,
                order_id,
                subject_id,
                exc,
            )
            raise LedgerWriteFailed(str(exc)) from exc

        logger.info(
            "activated %s-year membership for user %s via %s (payment %s)",
            plan_years,
            subject_id,
            source,
            payment_id,
        )
        return Activation(
            applied=True,
            subject_id=subject_id,
            payment_id=payment_id,
            membership_end=_iso(ends),
            marker=marker,
        )


def membership_status(user: dict[str, Any] | None, *, now: datetime | None = None) -> dict[str, Any]:
    """Read-time expiry check; nothing is written."""
    record = user if isinstance(user, dict) else {}
    current = now or _now()
    ends = _from_iso(record.get("membershipEndDate"))
    if ends is None:
        status = MEMBERSHIP_NONE
        days_remaining = 0
    elif current < ends:
        status = MEMBERSHIP_ACTIVE
        days_remaining = (ends - current).days
    else:
        status = MEMBERSHIP_EXPIRED
        days_remaining = 0
    return {
        "status": status,
        "role": str(record.get("role") or DEFAULT_ROLE),
        "membershipType": record.get("membershipType"),
        "membershipStartDate": record.get("membershipStartDate"),
        "membershipEndDate": record.get("membershipEndDate"),
        "daysRemaining": days_remaining,
    }


def sweep_expired_memberships(store: DocumentStore, *, now: datetime | None = None) -> list[str]:
    """Demote executive members whose end date has passed. Returns the demoted user ids."""
    current = now or _now()

    def _expired(user: dict[str, Any]) -> bool:
        if user.get("role") != EXECUTIVE_ROLE:
            return False
        ends = _from_iso(user.get("membershipEndDate"))
        return ends is not None and current > ends

    demoted: list[str] = []
    with store.transaction() as txn:
        for user_id, _user in txn.query(USERS_COLLECTION, _expired):
            txn.merge(
                USERS_COLLECTION,
                user_id,
                {
                    "role": DEFAULT_ROLE,
                    "membershipExpired": True,
                    "membershipExpiredDate": _iso(current),
                    "updatedAt": _iso(current),
                },
            )
            demoted.append(user_id)
    if demoted:
        logger.info("demoted %d expired executive memberships", len(demoted))
    return demoted
