"""
Credit Ledger for Recruiting Organizations

This package provides:
- Append-only ledger of cv_processing and interview credits
- Cached balances projected from the ledger
- Payment lifecycle reconciliation: pending → succeeded → refunded / failed / canceled
- Idempotent webhook handling
- Atomic debits that never overdraw a balance
"""

from .models import (
    CreditType,
    TransactionType,
    PaymentStatus,
    CreditLevel,
    CreditTransaction,
    PaymentTransaction,
    CreditBalances,
    WebhookEvent,
)
from .errors import CreditError
from .service import CreditLedgerService

__all__ = [
    "CreditType",
    "TransactionType",
    "PaymentStatus",
    "CreditLevel",
    "CreditTransaction",
    "PaymentTransaction",
    "CreditBalances",
    "WebhookEvent",
    "CreditError",
    "CreditLedgerService",
]
