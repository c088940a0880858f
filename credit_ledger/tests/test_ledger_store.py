"""
Unit Tests for the append-only credit ledger

Tests cover:
1. Entry validation
2. Running balances
3. History ordering and pagination
4. Listener notification around a unit of work
5. Lock timeouts
"""

import threading

import pytest
from pydantic import ValidationError

from credit_ledger.errors import InvalidAmount, LedgerUnavailable
from credit_ledger.ledger import LedgerStore
from credit_ledger.models import CreditType, TransactionType


ORG_ID = "org-ledger"
OTHER_ORG_ID = "org-other"


class Recorder:
    def __init__(self):
        self.seen = []

    def on_append(self, entry):
        self.seen.append(entry)


class TestAppend:
    """Tests for writing ledger entries."""

    def test_append_records_balance_after(self):
        """Each entry carries the running balance of its key."""
        ledger = LedgerStore()

        first = ledger.append_payment_entry(ORG_ID, CreditType.CV_PROCESSING, 50, TransactionType.PURCHASE, "pay-1")
        second = ledger.append(ORG_ID, CreditType.CV_PROCESSING, -3, TransactionType.CV_PROCESSING)

        assert first.balance_after == 50
        assert second.balance_after == 47
        assert ledger.balance(ORG_ID, CreditType.CV_PROCESSING) == 47

    def test_credit_types_and_organizations_are_independent(self):
        ledger = LedgerStore()

        ledger.append(ORG_ID, CreditType.CV_PROCESSING, 10, TransactionType.MANUAL_ADJUSTMENT)
        ledger.append(ORG_ID, CreditType.INTERVIEW, 4, TransactionType.MANUAL_ADJUSTMENT)
        ledger.append(OTHER_ORG_ID, CreditType.CV_PROCESSING, 7, TransactionType.MANUAL_ADJUSTMENT)

        assert ledger.balance(ORG_ID, CreditType.CV_PROCESSING) == 10
        assert ledger.balance(ORG_ID, CreditType.INTERVIEW) == 4
        assert ledger.balance(OTHER_ORG_ID, CreditType.CV_PROCESSING) == 7
        assert ledger.balance(OTHER_ORG_ID, CreditType.INTERVIEW) == 0

    def test_zero_amount_rejected(self):
        ledger = LedgerStore()

        with pytest.raises(InvalidAmount):
            ledger.append(ORG_ID, CreditType.CV_PROCESSING, 0, TransactionType.MANUAL_ADJUSTMENT)

        assert ledger.entries(ORG_ID) == []

    @pytest.mark.parametrize("amount", [2.5, True, "5"])
    def test_non_integer_amount_rejected(self, amount):
        """Credits are whole units."""
        ledger = LedgerStore()

        with pytest.raises(InvalidAmount):
            ledger.append(ORG_ID, CreditType.CV_PROCESSING, amount, TransactionType.MANUAL_ADJUSTMENT)

    def test_default_description(self):
        ledger = LedgerStore()

        credit = ledger.append(ORG_ID, CreditType.INTERVIEW, 5, TransactionType.MANUAL_ADJUSTMENT)
        debit = ledger.append(ORG_ID, CreditType.INTERVIEW, -2, TransactionType.INTERVIEW)

        assert credit.description == "Added 5 credits (manual_adjustment)"
        assert debit.description == "Deducted 2 credits (interview)"

    def test_entries_are_immutable(self):
        """Ledger rows cannot be edited after they are written."""
        ledger = LedgerStore()
        entry = ledger.append(ORG_ID, CreditType.CV_PROCESSING, 5, TransactionType.MANUAL_ADJUSTMENT)

        with pytest.raises(ValidationError):
            entry.amount = 500

        assert ledger.balance(ORG_ID, CreditType.CV_PROCESSING) == 5


class TestPaymentEntries:
    """Tests for the purchase, subscription and refund entries owned by reconciliation."""

    @pytest.mark.parametrize("type, amount", [
        (TransactionType.PURCHASE, 50),
        (TransactionType.SUBSCRIPTION, 50),
        (TransactionType.REFUND, -5),
    ])
    def test_plain_append_refuses_payment_types(self, type, amount):
        """Payment entries cannot be written without a payment behind them."""
        ledger = LedgerStore()

        with pytest.raises(InvalidAmount):
            ledger.append(ORG_ID, CreditType.CV_PROCESSING, amount, type)

        assert ledger.entries(ORG_ID) == []

    def test_payment_entry_is_tied_to_its_payment(self):
        ledger = LedgerStore()

        entry = ledger.append_payment_entry(ORG_ID, CreditType.INTERVIEW, 10, TransactionType.SUBSCRIPTION, "pay-9")

        assert entry.related_id == "pay-9"
        assert entry.balance_after == 10

    @pytest.mark.parametrize("type, amount", [
        (TransactionType.PURCHASE, -10),
        (TransactionType.REFUND, 10),
        (TransactionType.MANUAL_ADJUSTMENT, 10),
        (TransactionType.CV_PROCESSING, -1),
    ])
    def test_payment_entry_checks_type_and_sign(self, type, amount):
        ledger = LedgerStore()

        with pytest.raises(InvalidAmount):
            ledger.append_payment_entry(ORG_ID, CreditType.CV_PROCESSING, amount, type, "pay-1")

        assert ledger.entries(ORG_ID) == []

    def test_version_moves_with_every_write(self):
        ledger = LedgerStore()
        before = ledger.version(ORG_ID, CreditType.CV_PROCESSING)

        ledger.append(ORG_ID, CreditType.CV_PROCESSING, 3, TransactionType.MANUAL_ADJUSTMENT)

        assert ledger.version(ORG_ID, CreditType.CV_PROCESSING) > before
        assert ledger.version(ORG_ID, CreditType.INTERVIEW) == 0


class TestHistory:
    """Tests for reading ledger history."""

    def test_history_is_newest_first_and_paginated(self):
        ledger = LedgerStore()
        for amount in (1, 2, 3, 4, 5):
            ledger.append(ORG_ID, CreditType.CV_PROCESSING, amount, TransactionType.MANUAL_ADJUSTMENT)

        page, total = ledger.history(ORG_ID, limit=2)
        last_page, _ = ledger.history(ORG_ID, limit=2, offset=4)

        assert total == 5
        assert [e.amount for e in page] == [5, 4]
        assert [e.amount for e in last_page] == [1]

    def test_history_filtered_by_credit_type(self):
        ledger = LedgerStore()
        ledger.append(ORG_ID, CreditType.CV_PROCESSING, 10, TransactionType.MANUAL_ADJUSTMENT)
        ledger.append(ORG_ID, CreditType.INTERVIEW, 3, TransactionType.MANUAL_ADJUSTMENT)

        entries, total = ledger.history(ORG_ID, CreditType.INTERVIEW)

        assert total == 1
        assert entries[0].credit_type == CreditType.INTERVIEW

    def test_entries_for_related_id(self):
        ledger = LedgerStore()
        ledger.append_payment_entry(ORG_ID, CreditType.CV_PROCESSING, 50, TransactionType.PURCHASE, "pay-1")
        ledger.append_payment_entry(ORG_ID, CreditType.CV_PROCESSING, -50, TransactionType.REFUND, "pay-1")
        ledger.append(ORG_ID, CreditType.CV_PROCESSING, 5, TransactionType.MANUAL_ADJUSTMENT)

        assert [e.type for e in ledger.entries_for("pay-1")] == [TransactionType.PURCHASE, TransactionType.REFUND]
        assert ledger.has_entries(ORG_ID)
        assert not ledger.has_entries(OTHER_ORG_ID)


class TestTransaction:
    """Tests for the unit of work around grouped appends."""

    def test_listeners_see_entries_after_commit(self):
        ledger = LedgerStore()
        recorder = Recorder()
        ledger.subscribe(recorder)

        with ledger.transaction():
            ledger.append(ORG_ID, CreditType.CV_PROCESSING, 10, TransactionType.MANUAL_ADJUSTMENT)
            assert ledger.in_transaction()
            assert recorder.seen == []

        assert not ledger.in_transaction()
        assert len(recorder.seen) == 1

    def test_nested_transaction_joins_outer(self):
        ledger = LedgerStore()
        recorder = Recorder()
        ledger.subscribe(recorder)

        with ledger.transaction():
            with ledger.transaction():
                ledger.append(ORG_ID, CreditType.CV_PROCESSING, 10, TransactionType.MANUAL_ADJUSTMENT)
            assert recorder.seen == []
            ledger.append(ORG_ID, CreditType.CV_PROCESSING, -1, TransactionType.CV_PROCESSING)

        assert [e.amount for e in recorder.seen] == [10, -1]

    def test_append_outside_transaction_notifies_immediately(self):
        ledger = LedgerStore()
        recorder = Recorder()
        ledger.subscribe(recorder)

        ledger.append(ORG_ID, CreditType.INTERVIEW, 2, TransactionType.MANUAL_ADJUSTMENT)

        assert len(recorder.seen) == 1


class TestLocking:
    """Tests for per-key serialization."""

    def test_busy_key_raises_ledger_unavailable(self):
        """A writer that cannot get the key lock in time gives up."""
        ledger = LedgerStore(lock_timeout_seconds=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with ledger.locked(ORG_ID, CreditType.CV_PROCESSING):
                held.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(timeout=5)
        try:
            with pytest.raises(LedgerUnavailable):
                ledger.append(ORG_ID, CreditType.CV_PROCESSING, 1, TransactionType.MANUAL_ADJUSTMENT)
            # Other keys are unaffected.
            ledger.append(ORG_ID, CreditType.INTERVIEW, 1, TransactionType.MANUAL_ADJUSTMENT)
        finally:
            release.set()
            thread.join()

        assert ledger.balance(ORG_ID, CreditType.CV_PROCESSING) == 0
        assert ledger.balance(ORG_ID, CreditType.INTERVIEW) == 1
