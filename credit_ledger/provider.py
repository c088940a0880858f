"""
Payment provider adapters.

The ledger only needs two things from a provider: a checkout handle for a
pending payment and a refund call. Provider references stay opaque.
"""

import json
import logging
from typing import Callable, Optional, Protocol
from uuid import uuid4

import stripe
from pydantic import BaseModel

from .errors import PaymentProviderError
from .models import CreditPackage, PaymentStatus, PaymentTransaction, WebhookEvent

logger = logging.getLogger(__name__)


class CheckoutSession(BaseModel):
    checkout_id: str
    url: Optional[str] = None


class PaymentProvider(Protocol):
    name: str

    def create_checkout(self, payment: PaymentTransaction, package: CreditPackage) -> CheckoutSession: ...

    def refund(self, payment: PaymentTransaction, amount: int, reason: Optional[str] = None) -> str: ...


class MockProvider:
    """In-process provider for local development and tests."""

    name = "mock"

    def __init__(self, auto_complete: bool = False):
        self.auto_complete = auto_complete
        self.refunds: list[dict] = []

    def create_checkout(self, payment: PaymentTransaction, package: CreditPackage) -> CheckoutSession:
        return CheckoutSession(checkout_id=f"mock_cs_{payment.id}")

    def refund(self, payment: PaymentTransaction, amount: int, reason: Optional[str] = None) -> str:
        refund_id = f"mock_re_{uuid4().hex[:12]}"
        self.refunds.append({"id": refund_id, "payment_id": payment.id, "amount": amount, "reason": reason})
        return refund_id


class StripeProvider:
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str = "", frontend_url: str = "", timeout_seconds: int = 20):
        if not secret_key:
            raise PaymentProviderError("Stripe is not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.frontend_url = frontend_url.rstrip("/")
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def create_checkout(self, payment: PaymentTransaction, package: CreditPackage) -> CheckoutSession:
        metadata = {
            "payment_id": payment.id,
            "organization_id": payment.organization_id,
            "credit_package_id": package.id,
            "credit_amount": str(package.credit_amount),
        }
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": package.currency.lower(),
                            "product_data": {
                                "name": package.name,
                                "description": package.description or f"{package.credit_amount} credits",
                            },
                            "unit_amount": package.price,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{self.frontend_url}/credits?success=1&payment_id={payment.id}",
                cancel_url=f"{self.frontend_url}/credits?canceled=1",
                client_reference_id=payment.id,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe session creation failed for payment %s", payment.id, exc_info=exc)
            raise PaymentProviderError("Stripe session creation failed", original_error=exc)
        return CheckoutSession(checkout_id=session.id, url=session.url)

    def refund(self, payment: PaymentTransaction, amount: int, reason: Optional[str] = None) -> str:
        if not payment.provider_payment_id:
            raise PaymentProviderError(f"Payment {payment.id} has no Stripe payment intent")
        try:
            refund = stripe.Refund.create(
                api_key=self.secret_key,
                payment_intent=payment.provider_payment_id,
                amount=amount,
                reason="requested_by_customer",
                metadata={"payment_id": payment.id, "organization_id": payment.organization_id, "note": reason or ""},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for payment %s", payment.id, exc_info=exc)
            raise PaymentProviderError("Stripe refund failed", original_error=exc)
        return refund.id

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Verify the Stripe-Signature header and return the event as plain JSON."""
        if not self.webhook_secret:
            raise PaymentProviderError("Stripe webhook not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret)
        return json.loads(payload)


def translate_stripe_event(
    event: dict, resolve_payment: Callable[[str], Optional[str]]
) -> Optional[WebhookEvent]:
    """Map a Stripe event onto a ledger webhook event.

    ``resolve_payment`` maps a Stripe payment intent id to our payment id
    for objects that do not carry our metadata. Unhandled event types
    return None.
    """
    obj = event["data"]["object"]
    metadata = obj.get("metadata") or {}
    event_type = event["type"]

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") not in ("paid", "no_payment_required"):
            return None
        return WebhookEvent(
            event_id=event["id"],
            payment_transaction_id=metadata.get("payment_id") or obj.get("client_reference_id"),
            status=PaymentStatus.SUCCEEDED,
            amount=obj.get("amount_total"),
            provider_payment_id=obj.get("payment_intent"),
        )
    if event_type == "checkout.session.async_payment_succeeded":
        return WebhookEvent(
            event_id=event["id"],
            payment_transaction_id=metadata.get("payment_id") or obj.get("client_reference_id"),
            status=PaymentStatus.SUCCEEDED,
            amount=obj.get("amount_total"),
            provider_payment_id=obj.get("payment_intent"),
        )
    if event_type in ("checkout.session.async_payment_failed", "checkout.session.expired"):
        status = PaymentStatus.FAILED if event_type.endswith("failed") else PaymentStatus.CANCELED
        return WebhookEvent(
            event_id=event["id"],
            payment_transaction_id=metadata.get("payment_id") or obj.get("client_reference_id"),
            status=status,
            failure_reason=event_type.rsplit(".", 1)[-1],
        )
    # payment_intent.payment_failed is per attempt; the session can still
    # complete with another card, so only session-level outcomes are mapped.
    if event_type == "charge.refunded":
        payment_id = metadata.get("payment_id") or resolve_payment(obj.get("payment_intent"))
        if not payment_id:
            return None
        return WebhookEvent(
            event_id=event["id"],
            payment_transaction_id=payment_id,
            status=PaymentStatus.REFUNDED,
            refunded_amount=obj.get("amount_refunded"),
        )
    return None
