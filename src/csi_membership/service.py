"""HTTP service for executive membership orders, payment verification and webhooks."""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from .errors import (
    ConfigurationError,
    Forbidden,
    GatewayFetchError,
    LedgerWriteFailed,
    MembershipError,
    SignatureInvalid,
)
from .identity import FirebaseTokenVerifier, IdentityVerifier, VerifiedIdentity, authenticate
from .ledger import (
    ADMIN_ROLE,
    SOURCE_VERIFY_PAYMENT,
    USERS_COLLECTION,
    MembershipLedger,
    membership_status,
    sweep_expired_memberships,
)
from .notifications import MembershipNotifier, SmtpNotifier, notify_membership_safely
from .pricing import supported_plans
from .razorpay_client import RazorpayClient
from .settings import Settings
from .store import DocumentStore, open_store
from .verification import (
    ContactDetails,
    PaymentGateway,
    PaymentVerifier,
    VerificationOutcome,
    WebhookIngress,
    create_order_intent,
    verify_checkout_signature,
    webhook_signature,
)


logger = logging.getLogger(__name__)

MEMBERSHIP_PENDING_MESSAGE = "Payment verified successfully, but membership update failed. Please contact support."


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class Services:
    settings: Settings
    identity: IdentityVerifier
    gateway: PaymentGateway
    store: DocumentStore
    ledger: MembershipLedger
    verifier: PaymentVerifier
    webhooks: WebhookIngress
    notifier: MembershipNotifier | None


def build_services(
    settings: Settings,
    *,
    identity: IdentityVerifier | None = None,
    gateway: PaymentGateway | None = None,
    store: DocumentStore | None = None,
    notifier: MembershipNotifier | None = None,
) -> Services:
    identity = identity or FirebaseTokenVerifier(
        settings.firebase_project_id,
        timeout_seconds=settings.http_timeout_seconds,
    )
    gateway = gateway or RazorpayClient(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        api_base=settings.razorpay_api_base,
        timeout_seconds=settings.http_timeout_seconds,
    )
    store = store or open_store(settings.database_url)
    notifier = notifier or SmtpNotifier(settings.smtp, timeout_seconds=settings.http_timeout_seconds)
    ledger = MembershipLedger(store)
    verifier = PaymentVerifier(gateway, ledger, currency=settings.currency)
    return Services(
        settings=settings,
        identity=identity,
        gateway=gateway,
        store=store,
        ledger=ledger,
        verifier=verifier,
        webhooks=WebhookIngress(verifier, webhook_secret=settings.razorpay_webhook_secret),
        notifier=notifier,
    )


class CreateOrderRequest(BaseModel):
    amount: float = Field(..., gt=0, le=1_000_000)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    receipt: str = Field(..., min_length=1, max_length=40)
    platformFee: float | None = Field(default=None, ge=0)
    baseAmount: float | None = Field(default=None, gt=0)
    userId: str
    selectedYears: int = Field(..., gt=0, strict=True)
    userEmail: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    userName: str | None = None
    userUsn: str | None = None


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    razorpay_order_id: str | None = None
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services(request.app.state.settings)
        request.app.state.services = services
    return services


def require_identity(
    services: Services = Depends(get_services),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> VerifiedIdentity:
    return authenticate(services.identity, authorization)


def _verify_failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def _schedule_notification(background: BackgroundTasks, services: Services, outcome: VerificationOutcome):
    if outcome.already_processed:
        return
    contact = outcome.context.contact
    background.add_task(
        notify_membership_safely,
        services.notifier,
        name=contact.name,
        email=contact.email,
        plan_label=outcome.price.plan_label,
        usn=contact.usn,
    )


def create_app(
    settings: Settings | None = None,
    *,
    identity: IdentityVerifier | None = None,
    gateway: PaymentGateway | None = None,
    store: DocumentStore | None = None,
    notifier: MembershipNotifier | None = None,
) -> FastAPI:
    app = FastAPI(title="CSI NMAMIT Membership Service", docs_url=None, redoc_url=None)
    app.state.settings = settings or Settings.from_env()
    app.state.services = None
    if any(item is not None for item in (identity, gateway, store, notifier)):
        app.state.services = build_services(
            app.state.settings,
            identity=identity,
            gateway=gateway,
            store=store,
            notifier=notifier,
        )

    @app.exception_handler(MembershipError)
    async def _membership_error(_request: Request, exc: MembershipError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": str(err.get("msg", "")),
            }
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "invalid_input", "details": details})

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/api/membership/plans")
    def list_plans(services: Services = Depends(get_services)):
        return {
            "currency": services.settings.currency,
            "plans": [price.as_dict() for price in supported_plans()],
        }

    @app.post("/api/razorpay/create-order")
    def create_order(
        request: CreateOrderRequest,
        identity: VerifiedIdentity = Depends(require_identity),
        services: Services = Depends(get_services),
    ):
        intent = create_order_intent(
            services.gateway,
            subject_id=identity.uid,
            requested_user_id=request.userId,
            plan_years=request.selectedYears,
            requested_total=request.amount,
            currency=request.currency,
            receipt=request.receipt,
            contact=ContactDetails(
                email=_clean_text(request.userEmail),
                name=_clean_text(request.userName),
                usn=_clean_text(request.userUsn),
            ),
            expected_currency=services.settings.currency,
        )
        return intent.as_response()

    @app.post("/api/razorpay/verify-payment")
    def verify_payment(
        request: VerifyPaymentRequest,
        background: BackgroundTasks,
        identity: VerifiedIdentity = Depends(require_identity),
        services: Services = Depends(get_services),
    ):
        order_id = _clean_text(request.razorpay_order_id)
        payment_id = _clean_text(request.razorpay_payment_id)
        signature = _clean_text(request.razorpay_signature)
        if not order_id or not payment_id or not signature:
            return _verify_failure(400, "Missing payment details")

        key_secret = services.settings.razorpay_key_secret
        if not key_secret:
            raise ConfigurationError("Razorpay key secret is not configured")
        try:
            verify_checkout_signature(order_id, payment_id, signature, key_secret)
        except SignatureInvalid:
            logger.warning("checkout signature mismatch for order %s payment %s", order_id, payment_id)
            return _verify_failure(400, "Payment verification failed")

        try:
            outcome = services.verifier.verify(
                payment_id=payment_id,
                order_id=order_id,
                source=SOURCE_VERIFY_PAYMENT,
                caller_subject=identity.uid,
            )
        except (GatewayFetchError, LedgerWriteFailed) as exc:
            # The signature proves the gateway accepted the payment; only bookkeeping is behind.
            logger.error(
                "payment %s for order %s verified but membership pending: %s",
                payment_id,
                order_id,
                exc.message,
            )
            return {
                "success": True,
                "membershipPending": True,
                "message": MEMBERSHIP_PENDING_MESSAGE,
                "paymentId": payment_id,
                "orderId": order_id,
            }
        except MembershipError as exc:
            logger.warning("payment %s rejected: %s %s", payment_id, exc.code, exc.message)
            return _verify_failure(exc.status_code, exc.message)

        _schedule_notification(background, services, outcome)
        return {
            "success": True,
            "message": "Payment already processed" if outcome.already_processed else "Payment verified successfully",
            "paymentId": outcome.payment_id,
            "orderId": outcome.order_id,
        }

    @app.post("/api/razorpay/webhook")
    async def razorpay_webhook(raw_request: Request, background: BackgroundTasks):
        services = get_services(raw_request)
        payload = await raw_request.body()
        signature_header = raw_request.headers.get("X-Razorpay-Signature")
        outcome = await run_in_threadpool(services.webhooks.handle, payload, signature_header)
        if outcome is not None:
            _schedule_notification(background, services, outcome)
        return {"received": True}

    @app.post("/api/razorpay/debug-signature")
    async def debug_signature(raw_request: Request):
        services = get_services(raw_request)
        if not services.settings.enable_dev_endpoints:
            return JSONResponse(status_code=404, content={"error": "not_found", "message": "Not found"})
        secret = services.settings.razorpay_webhook_secret
        if not secret:
            raise ConfigurationError("Webhook secret is not configured")
        payload = await raw_request.body()
        return {"expectedSignature": webhook_signature(payload, secret)}

    @app.get("/api/membership/status")
    def get_membership_status(
        identity: VerifiedIdentity = Depends(require_identity),
        services: Services = Depends(get_services),
    ):
        user = services.store.get(USERS_COLLECTION, identity.uid)
        return {"userId": identity.uid, **membership_status(user)}

    @app.post("/api/membership/check-expired")
    def check_expired(
        identity: VerifiedIdentity = Depends(require_identity),
        services: Services = Depends(get_services),
    ):
        caller = services.store.get(USERS_COLLECTION, identity.uid) or {}
        if caller.get("role") != ADMIN_ROLE:
            raise Forbidden("Forbidden")
        demoted = sweep_expired_memberships(services.store)
        return {"success": True, "updated": len(demoted)}

    return app


app = create_app()


def main(argv: list[str] | None = None):
    default_port_raw = _clean_text(os.environ.get("PORT")) or _clean_text(os.environ.get("CSI_PORT")) or "8080"
    try:
        default_port = int(default_port_raw)
    except ValueError:
        default_port = 8080
    default_host = _clean_text(os.environ.get("CSI_HOST")) or ("0.0.0.0" if _clean_text(os.environ.get("PORT")) else "127.0.0.1")

    parser = argparse.ArgumentParser(prog="csi-membership-service")
    parser.add_argument("--host", default=default_host)
    parser.add_argument("--port", type=int, default=default_port)
    args = parser.parse_args(argv)

    settings = app.state.settings
    configure_logging(settings.log_level)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
