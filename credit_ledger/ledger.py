"""
Append-only credit ledger.

Every balance change is a ``CreditTransaction`` row. Rows are never updated
or deleted; corrections are compensating entries. The balance of an
(organization, credit type) pair is the sum of its rows.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol, Union
from uuid import uuid4

from .errors import InvalidAmount, LedgerUnavailable
from .models import RECONCILER_TYPES, CreditTransaction, CreditType, TransactionType
from .storage import InMemoryStorage, SqlStorage

logger = logging.getLogger(__name__)

LedgerKey = tuple[str, CreditType]


class LedgerListener(Protocol):
    def on_append(self, entry: CreditTransaction) -> None: ...


class LedgerStore:
    def __init__(self, storage: Union[InMemoryStorage, SqlStorage, None] = None, lock_timeout_seconds: float = 5.0):
        self.storage = storage or InMemoryStorage()
        self.lock_timeout_seconds = lock_timeout_seconds
        self._locks: dict[LedgerKey, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: list[LedgerListener] = []
        self._pending = threading.local()

    def subscribe(self, listener: LedgerListener) -> None:
        self._listeners.append(listener)

    def _lock_for(self, key: LedgerKey) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def locked(self, organization_id: str, credit_type: CreditType) -> Iterator[None]:
        """Serialize read-then-write sequences on one ledger key.

        Holds the in-process key lock and, inside one unit of work, the
        storage lock on the key so writers sharing the database wait too.
        Writes made inside the block commit together when it exits.
        """
        credit_type = CreditType(credit_type)
        lock = self._lock_for((organization_id, credit_type))
        if not lock.acquire(timeout=self.lock_timeout_seconds):
            logger.error("Timed out waiting for ledger lock %s/%s", organization_id, credit_type.value)
            raise LedgerUnavailable(
                f"Ledger for {organization_id}/{credit_type.value} is busy, retry later",
                context={"organization_id": organization_id},
            )
        try:
            with self.transaction():
                self.storage.lock_key(organization_id, credit_type)
                yield
        finally:
            lock.release()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group ledger appends with other writes so they commit together.

        Open it through ``locked`` so the key lock is the first thing the
        unit of work takes. Listeners only see the appended entries once the
        whole unit has committed.
        """
        if getattr(self._pending, "entries", None) is not None:
            yield
            return
        self._pending.entries = []
        try:
            with self.storage.unit_of_work():
                yield
            committed = self._pending.entries
        finally:
            self._pending.entries = None
        for entry in committed:
            self._notify(entry)

    def in_transaction(self) -> bool:
        return getattr(self._pending, "entries", None) is not None

    def _notify(self, entry: CreditTransaction) -> None:
        for listener in self._listeners:
            listener.on_append(entry)

    def append(
        self,
        organization_id: str,
        credit_type: CreditType,
        amount: int,
        type: TransactionType,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        type = TransactionType(type)
        if type in RECONCILER_TYPES:
            raise InvalidAmount(
                f"{type.value} entries are written by payment reconciliation only",
                context={"type": type.value},
            )
        return self._append(organization_id, credit_type, amount, type, related_id, description)

    def append_payment_entry(
        self,
        organization_id: str,
        credit_type: CreditType,
        amount: int,
        type: TransactionType,
        payment_id: str,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """Write the purchase, subscription or refund entry of a payment.

        Reserved for the payment reconciler. Grants are positive and refunds
        negative; the payment id becomes the entry's ``related_id``.
        """
        type = TransactionType(type)
        if type not in RECONCILER_TYPES:
            raise InvalidAmount(f"{type.value} is not a payment entry type", context={"type": type.value})
        _check_amount(amount)
        if (amount < 0) != (type == TransactionType.REFUND):
            raise InvalidAmount(f"{type.value} entry cannot have amount {amount}", context={"type": type.value})
        return self._append(organization_id, credit_type, amount, type, payment_id, description)

    def _append(
        self,
        organization_id: str,
        credit_type: CreditType,
        amount: int,
        type: TransactionType,
        related_id: Optional[str],
        description: Optional[str],
    ) -> CreditTransaction:
        _check_amount(amount)
        credit_type = CreditType(credit_type)
        with self.locked(organization_id, credit_type):
            balance = self.storage.sum_credit_amounts(organization_id, credit_type)
            entry = CreditTransaction(
                id=str(uuid4()),
                organization_id=organization_id,
                credit_type=credit_type,
                amount=amount,
                type=type,
                related_id=related_id,
                description=description or _default_description(type, amount),
                balance_after=balance + amount,
                created_at=datetime.now(timezone.utc),
            )
            self.storage.insert_credit_transaction(entry)
            self._pending.entries.append(entry)

        logger.info(
            "Ledger %s %+d %s credits for %s (balance %d)",
            type.value, amount, credit_type.value, organization_id, entry.balance_after,
        )
        return entry

    def balance(self, organization_id: str, credit_type: CreditType) -> int:
        return self.storage.sum_credit_amounts(organization_id, CreditType(credit_type))

    def version(self, organization_id: str, credit_type: CreditType) -> int:
        """Counter bumped by every writer of the key, in any process."""
        return self.storage.key_version(organization_id, CreditType(credit_type))

    def history(
        self,
        organization_id: str,
        credit_type: Optional[CreditType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CreditTransaction], int]:
        entries = self.storage.list_credit_transactions(organization_id, credit_type)
        entries.reverse()
        return entries[offset:offset + limit], len(entries)

    def entries(self, organization_id: str, credit_type: Optional[CreditType] = None) -> list[CreditTransaction]:
        return self.storage.list_credit_transactions(organization_id, credit_type)

    def entries_for(self, related_id: str) -> list[CreditTransaction]:
        return self.storage.credit_transactions_for(related_id)

    def has_entries(self, organization_id: str) -> bool:
        return self.storage.has_credit_transactions(organization_id)


def _default_description(type: TransactionType, amount: int) -> str:
    verb = "Added" if amount > 0 else "Deducted"
    return f"{verb} {abs(amount)} credits ({type.value})"


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Credit amount must be an integer, got {amount!r}")
    if amount == 0:
        raise InvalidAmount("Credit amount must not be zero")
