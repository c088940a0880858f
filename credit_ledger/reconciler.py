"""
Payment lifecycle reconciliation.

Each PaymentTransaction moves through an explicit state machine::

    pending ──► succeeded ──► refunded
       │
       ├──► failed
       └──► canceled

Only the transitions in ``TRANSITIONS`` are accepted. Reaching
``succeeded`` grants ``credits_added`` on the ledger; refunds append a
compensating debit. Webhook deliveries are deduplicated by provider event
id and, for replays under new ids, by the payment's current status.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import uuid4

from .errors import (
    DuplicateWebhookEvent,
    InsufficientCredits,
    InvalidAmount,
    InvalidTransition,
    LedgerUnavailable,
    OrganizationNotFound,
    PaymentNotFound,
)
from .ledger import LedgerStore
from .models import (
    CreditPackage,
    CreditTransaction,
    CreditType,
    PaymentStatus,
    PaymentTransaction,
    TransactionType,
    WebhookEvent,
    WebhookResult,
)

logger = logging.getLogger(__name__)


TRANSITIONS = frozenset({
    (PaymentStatus.PENDING, PaymentStatus.SUCCEEDED),
    (PaymentStatus.PENDING, PaymentStatus.FAILED),
    (PaymentStatus.PENDING, PaymentStatus.CANCELED),
    (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED),
})

GRANT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.SUBSCRIPTION})


@dataclass
class TransitionResult:
    payment: PaymentTransaction
    ledger_entry: Optional[CreditTransaction] = None
    applied: bool = True


def refunded_credits_for(payment: PaymentTransaction, refunded_amount: int) -> int:
    """Credits reversed by a cumulative refund of ``refunded_amount``."""
    if refunded_amount >= payment.amount:
        return payment.credits_added
    return payment.credits_added * refunded_amount // payment.amount


class PaymentReconciler:
    def __init__(self, ledger: LedgerStore, lock_timeout_seconds: Optional[float] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.lock_timeout_seconds = lock_timeout_seconds or ledger.lock_timeout_seconds
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _payment_lock(self, payment_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(payment_id, threading.RLock())
        if not lock.acquire(timeout=self.lock_timeout_seconds):
            logger.error("Timed out waiting for payment lock %s", payment_id)
            raise LedgerUnavailable(f"Payment {payment_id} is being reconciled, retry later")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def locked_payment(self, payment_id: str) -> Iterator[PaymentTransaction]:
        """Hold a payment and its ledger key, yielding the payment as read under both.

        Lock order is payment, then ledger key. Writes made inside the block
        commit as one unit of work, and a caller may call back into the
        reconciler for the same payment while holding it.
        """
        with self._payment_lock(payment_id):
            payment = self.get_payment(payment_id)
            with self.ledger.locked(payment.organization_id, payment.credit_type):
                yield self.get_payment(payment_id)

    def open_payment(
        self,
        organization_id: str,
        credit_type: CreditType,
        credits: int,
        amount: int,
        currency: str,
        provider: str,
        credit_package_id: Optional[str] = None,
        grant_type: TransactionType = TransactionType.PURCHASE,
    ) -> PaymentTransaction:
        if self.storage.get_organization(organization_id) is None:
            raise OrganizationNotFound(organization_id)
        if credits <= 0:
            raise InvalidAmount(f"Credits purchased must be positive, got {credits}")
        if amount <= 0:
            raise InvalidAmount(f"Payment amount must be positive, got {amount}")
        if TransactionType(grant_type) not in GRANT_TYPES:
            raise InvalidAmount(f"Payments can only grant purchase or subscription credits, not {grant_type}")

        now = datetime.now(timezone.utc)
        payment = PaymentTransaction(
            id=str(uuid4()),
            organization_id=organization_id,
            provider=provider,
            credit_package_id=credit_package_id,
            credit_type=credit_type,
            grant_type=grant_type,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            credits_purchased=credits,
            created_at=now,
            updated_at=now,
        )
        self.storage.save_payment(payment)
        logger.info(
            "Opened %s payment %s for %s: %d %s credits, %d %s",
            provider, payment.id, organization_id, credits, CreditType(credit_type).value, amount, currency,
        )
        return payment

    def open_package_payment(self, organization_id: str, package: CreditPackage, provider: str) -> PaymentTransaction:
        return self.open_payment(
            organization_id,
            credit_type=package.credit_type,
            credits=package.credit_amount,
            amount=package.price,
            currency=package.currency,
            provider=provider,
            credit_package_id=package.id,
        )

    def attach_checkout(
        self, payment_id: str, checkout_id: str, provider_payment_id: Optional[str] = None
    ) -> PaymentTransaction:
        with self.locked_payment(payment_id) as payment:
            update = {"provider_checkout_id": checkout_id, "updated_at": datetime.now(timezone.utc)}
            if provider_payment_id:
                update["provider_payment_id"] = provider_payment_id
            payment = payment.model_copy(update=update)
            self.storage.save_payment(payment)
        return payment

    def get_payment(self, payment_id: str) -> PaymentTransaction:
        payment = self.storage.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        return payment

    def find_payment_id(self, provider_reference: Optional[str]) -> Optional[str]:
        if not provider_reference:
            return None
        payment = self.storage.find_payment_by_provider_ref(provider_reference)
        return payment.id if payment else None

    def payment_history(self, organization_id: str, limit: int = 50) -> list[PaymentTransaction]:
        payments = self.storage.list_payments(organization_id)
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments[:limit]

    def _reject(self, payment: PaymentTransaction, target: PaymentStatus) -> InvalidTransition:
        logger.warning(
            "Rejected payment transition %s: %s -> %s", payment.id, payment.status.value, target.value
        )
        return InvalidTransition(payment.id, payment.status.value, target.value)

    def _record_event(self, event_id: Optional[str], payment_id: str) -> None:
        if event_id and not self.storage.record_processed_event(event_id, payment_id):
            raise DuplicateWebhookEvent(event_id)

    def mark_succeeded(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        provider_payment_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> TransitionResult:
        with self.locked_payment(payment_id) as payment:
            if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
                return TransitionResult(payment, applied=False)
            if (payment.status, PaymentStatus.SUCCEEDED) not in TRANSITIONS:
                raise self._reject(payment, PaymentStatus.SUCCEEDED)
            if amount is not None and amount <= 0:
                raise InvalidAmount(f"Settled amount must be positive, got {amount}")

            now = datetime.now(timezone.utc)
            update = {
                "status": PaymentStatus.SUCCEEDED,
                "credits_added": payment.credits_purchased,
                "completed_at": now,
                "updated_at": now,
            }
            if amount is not None:
                update["amount"] = amount
            if provider_payment_id:
                update["provider_payment_id"] = provider_payment_id
            payment = payment.model_copy(update=update)

            self._record_event(event_id, payment.id)
            self.storage.save_payment(payment)
            entry = self.ledger.append_payment_entry(
                payment.organization_id,
                payment.credit_type,
                payment.credits_added,
                payment.grant_type,
                payment.id,
                description=f"Purchased {payment.credits_added} {payment.credit_type.value} credits",
            )

        logger.info("Payment %s succeeded, granted %d credits", payment.id, payment.credits_added)
        return TransitionResult(payment, entry)

    def mark_failed(self, payment_id: str, reason: Optional[str] = None, event_id: Optional[str] = None) -> TransitionResult:
        return self._close(payment_id, PaymentStatus.FAILED, reason or "Payment failed", event_id)

    def mark_canceled(self, payment_id: str, reason: Optional[str] = None, event_id: Optional[str] = None) -> TransitionResult:
        return self._close(payment_id, PaymentStatus.CANCELED, reason or "Payment canceled", event_id)

    def _close(self, payment_id: str, target: PaymentStatus, reason: str, event_id: Optional[str]) -> TransitionResult:
        with self.locked_payment(payment_id) as payment:
            if payment.status == target:
                return TransitionResult(payment, applied=False)
            if (payment.status, target) not in TRANSITIONS:
                raise self._reject(payment, target)

            now = datetime.now(timezone.utc)
            payment = payment.model_copy(update={
                "status": target,
                "failure_reason": reason,
                "completed_at": now,
                "updated_at": now,
            })
            self._record_event(event_id, payment.id)
            self.storage.save_payment(payment)

        logger.info("Payment %s %s: %s", payment.id, target.value, reason)
        return TransitionResult(payment)

    def apply_refund(
        self, payment_id: str, refunded_amount: Optional[int] = None, event_id: Optional[str] = None
    ) -> TransitionResult:
        """Apply a cumulative refund of ``refunded_amount`` minor units.

        The full amount is assumed when omitted. Only credits not already
        reversed are debited. A refund larger than the organization's current
        balance is blocked rather than driving the balance negative.
        """
        with self.locked_payment(payment_id) as payment:
            if payment.status == PaymentStatus.REFUNDED:
                return TransitionResult(payment, applied=False)
            if (payment.status, PaymentStatus.REFUNDED) not in TRANSITIONS:
                raise self._reject(payment, PaymentStatus.REFUNDED)

            if refunded_amount is None:
                refunded_amount = payment.amount
            if refunded_amount <= 0 or refunded_amount > payment.amount:
                raise InvalidAmount(
                    f"Refunded amount must be between 1 and {payment.amount}, got {refunded_amount}",
                    context={"payment_id": payment.id},
                )
            if refunded_amount <= payment.refunded_amount:
                return TransitionResult(payment, applied=False)

            total_credits = refunded_credits_for(payment, refunded_amount)
            delta = total_credits - payment.refunded_credits
            available = self.ledger.balance(payment.organization_id, payment.credit_type)
            if delta > available:
                logger.error(
                    "Refund of payment %s blocked: %d credits to reverse, %d available for %s",
                    payment.id, delta, available, payment.organization_id,
                )
                raise InsufficientCredits(payment.organization_id, payment.credit_type.value, delta, available)

            full = refunded_amount >= payment.amount
            payment = payment.model_copy(update={
                "status": PaymentStatus.REFUNDED if full else PaymentStatus.SUCCEEDED,
                "refunded_amount": refunded_amount,
                "refunded_credits": total_credits,
                "updated_at": datetime.now(timezone.utc),
            })
            self._record_event(event_id, payment.id)
            self.storage.save_payment(payment)
            entry = None
            if delta > 0:
                entry = self.ledger.append_payment_entry(
                    payment.organization_id,
                    payment.credit_type,
                    -delta,
                    TransactionType.REFUND,
                    payment.id,
                    description=f"Refunded {delta} {payment.credit_type.value} credits",
                )

        logger.info(
            "Payment %s refund applied: %d/%d refunded, %d credits reversed%s",
            payment.id, refunded_amount, payment.amount, delta, " (full)" if full else "",
        )
        return TransitionResult(payment, entry)

    def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        """Apply one provider delivery.

        Raises DuplicateWebhookEvent for replays, which callers acknowledge
        to the provider as success.
        """
        if self.storage.is_event_processed(event.event_id):
            logger.warning("Duplicate webhook event %s ignored", event.event_id)
            raise DuplicateWebhookEvent(event.event_id)

        payment_id = event.payment_transaction_id
        if event.status == PaymentStatus.SUCCEEDED:
            result = self.mark_succeeded(
                payment_id, amount=event.amount, provider_payment_id=event.provider_payment_id, event_id=event.event_id
            )
        elif event.status == PaymentStatus.FAILED:
            result = self.mark_failed(payment_id, event.failure_reason, event_id=event.event_id)
        elif event.status == PaymentStatus.CANCELED:
            result = self.mark_canceled(payment_id, event.failure_reason, event_id=event.event_id)
        elif event.status == PaymentStatus.REFUNDED:
            result = self.apply_refund(payment_id, event.refunded_amount, event_id=event.event_id)
        else:
            raise self._reject(self.get_payment(payment_id), event.status)

        if not result.applied:
            logger.warning(
                "Webhook event %s replays %s for payment %s, ignored",
                event.event_id, event.status.value, payment_id,
            )
            raise DuplicateWebhookEvent(event.event_id, reason=f"already applied to payment {payment_id}")

        return WebhookResult(
            event_id=event.event_id,
            payment=result.payment,
            ledger_entry=result.ledger_entry,
            message=f"Payment {payment_id} reconciled to {result.payment.status.value}",
        )
