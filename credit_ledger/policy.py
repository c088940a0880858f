import logging
from typing import Optional

from .errors import InsufficientCredits, InvalidAmount, InvalidTransition, OrganizationNotFound
from .models import (
    DEBIT_TYPES,
    ActionPrice,
    ActionType,
    CheckoutHandle,
    CreditLevel,
    CreditTransaction,
    CreditType,
    PaymentStatus,
    TransactionType,
)
from .reconciler import refunded_credits_for

logger = logging.getLogger(__name__)


# (low, very low) inclusive upper bounds per credit type.
LEVEL_THRESHOLDS: dict[CreditType, tuple[int, int]] = {
    CreditType.CV_PROCESSING: (100, 5),
    CreditType.INTERVIEW: (50, 5),
}


def classify_level(balance: int, credit_type: CreditType) -> CreditLevel:
    low, very_low = LEVEL_THRESHOLDS[CreditType(credit_type)]
    if balance <= very_low:
        return CreditLevel.VERY_LOW
    if balance <= low:
        return CreditLevel.LOW
    return CreditLevel.NORMAL


def _positive_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Credit amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"Credit amount must be positive, got {amount}")
    return amount


class CreditPolicyEngine:
    """Entry point for spending and granting credits.

    Debits check the balance and append the consuming entry under the
    ledger key lock, so two concurrent debits can never both pass the
    check. Purchases are handed to the payment reconciler.
    """

    def __init__(self, ledger, reconciler, catalog, provider):
        self.ledger = ledger
        self.reconciler = reconciler
        self.catalog = catalog
        self.provider = provider

    def _require_organization(self, organization_id: str) -> None:
        if self.ledger.storage.get_organization(organization_id) is None:
            raise OrganizationNotFound(organization_id)

    def debit(
        self,
        organization_id: str,
        credit_type: CreditType,
        amount: int,
        type: TransactionType,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        amount = _positive_amount(amount)
        type = TransactionType(type)
        if type not in DEBIT_TYPES:
            raise InvalidAmount(f"{type.value} entries cannot be written as a debit")
        self._require_organization(organization_id)

        credit_type = CreditType(credit_type)
        with self.ledger.locked(organization_id, credit_type):
            available = self.ledger.balance(organization_id, credit_type)
            if available - amount < 0:
                logger.info(
                    "Debit of %d %s credits refused for %s: %d available",
                    amount, credit_type.value, organization_id, available,
                )
                raise InsufficientCredits(organization_id, credit_type.value, amount, available)
            return self.ledger.append(
                organization_id, credit_type, -amount, type, related_id=related_id, description=description
            )

    def grant(
        self,
        organization_id: str,
        credit_type: CreditType,
        amount: int,
        description: str = "Manual credit addition",
    ) -> CreditTransaction:
        amount = _positive_amount(amount)
        self._require_organization(organization_id)
        return self.ledger.append(
            organization_id, credit_type, amount, TransactionType.MANUAL_ADJUSTMENT, description=description
        )

    def has_credits(self, organization_id: str, credit_type: CreditType, amount: int) -> bool:
        if self.ledger.storage.get_organization(organization_id) is None:
            return False
        return self.ledger.balance(organization_id, credit_type) >= amount

    def classify_level(self, balance: int, credit_type: CreditType) -> CreditLevel:
        return classify_level(balance, credit_type)

    def action_price(self, action: ActionType) -> ActionPrice:
        price = self.catalog.action_price(action)
        if price is None:
            action = ActionType(action)
            credit_type = CreditType.INTERVIEW if action == ActionType.INTERVIEW_SCHEDULING else CreditType.CV_PROCESSING
            logger.warning("No active pricing for %s, charging 1 %s credit", action.value, credit_type.value)
            price = ActionPrice(action=action, credit_type=credit_type, cost=1)
        return price

    def charge_action(
        self, organization_id: str, action: ActionType, related_id: Optional[str] = None
    ) -> CreditTransaction:
        price = self.action_price(action)
        type = TransactionType.INTERVIEW if price.credit_type == CreditType.INTERVIEW else TransactionType.CV_PROCESSING
        return self.debit(
            organization_id,
            price.credit_type,
            price.cost,
            type,
            related_id=related_id,
            description=f"{price.action.value.replace('_', ' ').capitalize()} ({price.cost} credits)",
        )

    def apply_purchase(self, organization_id: str, credit_package_id: str) -> CheckoutHandle:
        package = self.catalog.get_package(credit_package_id)
        payment = self.reconciler.open_package_payment(organization_id, package, self.provider.name)
        session = self.provider.create_checkout(payment, package)
        payment = self.reconciler.attach_checkout(payment.id, session.checkout_id)

        if getattr(self.provider, "auto_complete", False):
            payment = self.reconciler.mark_succeeded(payment.id).payment

        return CheckoutHandle(
            payment_id=payment.id,
            checkout_id=session.checkout_id,
            checkout_url=session.url,
            status=payment.status,
        )

    def request_refund(self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None):
        """Refund through the provider, then reconcile locally.

        The payment and its ledger key stay locked from the balance check to
        the local reconcile, so no debit can spend the credits after money
        has moved at the provider. The provider's own refund webhook later
        replays the same cumulative amount and is treated as a duplicate.
        """
        with self.reconciler.locked_payment(payment_id) as payment:
            if payment.status != PaymentStatus.SUCCEEDED:
                logger.warning("Refund requested for payment %s in %s state", payment.id, payment.status.value)
                raise InvalidTransition(payment.id, payment.status.value, PaymentStatus.REFUNDED.value)
            remaining = payment.amount - payment.refunded_amount
            amount = remaining if amount is None else amount
            if amount <= 0 or amount > remaining:
                raise InvalidAmount(f"Refund must be between 1 and {remaining}, got {amount}")

            # Refuse before any money moves at the provider.
            cumulative = payment.refunded_amount + amount
            credits = refunded_credits_for(payment, cumulative) - payment.refunded_credits
            available = self.ledger.balance(payment.organization_id, payment.credit_type)
            if credits > available:
                raise InsufficientCredits(payment.organization_id, payment.credit_type.value, credits, available)

            self.provider.refund(payment, amount, reason)
            return self.reconciler.apply_refund(payment_id, cumulative)
