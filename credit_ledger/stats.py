"""Read-only summaries and exports over payment and credit history."""

import csv
import io
from typing import Iterable

from .models import (
    CreditTransaction,
    CreditUsage,
    PaymentStats,
    PaymentStatus,
    PaymentTransaction,
)

FAILED_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELED})


def summarize(organization_id: str, transactions: Iterable[PaymentTransaction]) -> PaymentStats:
    """Totals over a payment list.

    Only payments that succeeded and were never refunded count towards
    spend and credits. The result does not depend on input order.
    """
    stats = PaymentStats(organization_id=organization_id)
    for payment in transactions:
        if payment.status == PaymentStatus.SUCCEEDED and not payment.refunded_amount:
            stats.total_spent += payment.amount
            stats.total_credits += payment.credits_added
            stats.successful_transactions += 1
        elif payment.status in FAILED_STATUSES:
            stats.failed_transactions += 1
        if payment.refunded_amount > 0:
            stats.refunded_transactions += 1
    return stats


def credit_usage(organization_id: str, entries: Iterable[CreditTransaction]) -> CreditUsage:
    usage = CreditUsage(organization_id=organization_id)
    for entry in entries:
        if entry.amount < 0:
            usage.total_deducted += -entry.amount
        else:
            usage.total_added += entry.amount
        key = entry.type.value
        usage.counts_by_type[key] = usage.counts_by_type.get(key, 0) + 1
    return usage


def _minor_to_display(amount: int) -> str:
    return f"{amount / 100:.2f}"


def payments_csv(transactions: Iterable[PaymentTransaction]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([
        "Date", "Payment ID", "Amount", "Currency", "Credits", "Credit Type", "Status",
        "Provider", "Refunded Amount", "Refunded Credits",
    ])
    for p in transactions:
        writer.writerow([
            p.created_at.isoformat(),
            p.id,
            _minor_to_display(p.amount),
            p.currency.upper(),
            p.credits_added or p.credits_purchased,
            p.credit_type.value,
            p.status.value,
            p.provider,
            _minor_to_display(p.refunded_amount),
            p.refunded_credits,
        ])
    return buffer.getvalue()


def credit_history_csv(entries: Iterable[CreditTransaction]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Date", "Transaction ID", "Credit Type", "Type", "Amount", "Balance After", "Related ID", "Description"])
    for e in entries:
        writer.writerow([
            e.created_at.isoformat(),
            e.id,
            e.credit_type.value,
            e.type.value,
            e.amount,
            e.balance_after,
            e.related_id or "",
            e.description,
        ])
    return buffer.getvalue()
