import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from .db import (
    OrganizationRow,
    CreditTransactionRow,
    LedgerKeyRow,
    PaymentTransactionRow,
    ProcessedWebhookEventRow,
)
from .errors import LedgerUnavailable
from .models import CreditType, CreditTransaction, Organization, PaymentTransaction


def _plain(data: dict) -> dict:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}


class InMemoryStorage:
    """Process-local storage; the default when no database url is configured."""

    def __init__(self):
        self.organizations: dict[str, Organization] = {}
        self.credit_transactions: list[CreditTransaction] = []
        self.payments: dict[str, PaymentTransaction] = {}
        self.processed_events: dict[str, str] = {}
        self.key_versions: dict[tuple[str, CreditType], int] = {}
        self._mutex = threading.RLock()

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        # Callers validate before writing, so there is nothing to roll back.
        yield

    def lock_key(self, organization_id: str, credit_type: CreditType) -> None:
        # The ledger key lock already serializes writers in this process.
        pass

    def key_version(self, organization_id: str, credit_type: CreditType) -> int:
        return self.key_versions.get((organization_id, CreditType(credit_type)), 0)

    def add_organization(self, organization: Organization) -> None:
        with self._mutex:
            self.organizations[organization.id] = organization

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self.organizations.get(organization_id)

    def list_organizations(self) -> list[Organization]:
        with self._mutex:
            return list(self.organizations.values())

    def insert_credit_transaction(self, entry: CreditTransaction) -> None:
        # Bumped after the row is visible, so a reader holding the new version sees the row.
        with self._mutex:
            self.credit_transactions.append(entry)
            key = (entry.organization_id, entry.credit_type)
            self.key_versions[key] = self.key_versions.get(key, 0) + 1

    def list_credit_transactions(
        self, organization_id: str, credit_type: Optional[CreditType] = None
    ) -> list[CreditTransaction]:
        with self._mutex:
            return [
                e for e in self.credit_transactions
                if e.organization_id == organization_id
                and (credit_type is None or e.credit_type == credit_type)
            ]

    def credit_transactions_for(self, related_id: str) -> list[CreditTransaction]:
        with self._mutex:
            return [e for e in self.credit_transactions if e.related_id == related_id]

    def sum_credit_amounts(self, organization_id: str, credit_type: CreditType) -> int:
        return sum(e.amount for e in self.list_credit_transactions(organization_id, credit_type))

    def has_credit_transactions(self, organization_id: str) -> bool:
        with self._mutex:
            return any(e.organization_id == organization_id for e in self.credit_transactions)

    def save_payment(self, payment: PaymentTransaction) -> None:
        with self._mutex:
            self.payments[payment.id] = payment.model_copy()

    def get_payment(self, payment_id: str) -> Optional[PaymentTransaction]:
        with self._mutex:
            payment = self.payments.get(payment_id)
            return payment.model_copy() if payment else None

    def list_payments(self, organization_id: str) -> list[PaymentTransaction]:
        with self._mutex:
            return [p.model_copy() for p in self.payments.values() if p.organization_id == organization_id]

    def find_payment_by_provider_ref(self, reference: str) -> Optional[PaymentTransaction]:
        with self._mutex:
            for payment in self.payments.values():
                if reference in (payment.provider_payment_id, payment.provider_checkout_id):
                    return payment.model_copy()
            return None

    def is_event_processed(self, event_id: str) -> bool:
        return event_id in self.processed_events

    def record_processed_event(self, event_id: str, payment_id: str) -> bool:
        with self._mutex:
            if event_id in self.processed_events:
                return False
            self.processed_events[event_id] = payment_id
            return True


class SqlStorage:
    """SQLAlchemy-backed storage.

    Writes issued inside ``unit_of_work`` share one session and commit
    together; writes outside it commit immediately.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._local = threading.local()

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        session = self._session_factory()
        self._local.session = session
        self._local.locked_keys = set()
        try:
            yield
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            self._local.locked_keys = None
            session.close()

    def lock_key(self, organization_id: str, credit_type: CreditType) -> None:
        """Row-lock one ledger key until the current unit of work ends.

        SELECT ... FOR UPDATE holds the row on servers that support it; the
        version bump is a write, which also serializes SQLite writers.
        """
        session = getattr(self._local, "session", None)
        if session is None:
            raise RuntimeError("lock_key needs an open unit of work")
        key = (organization_id, CreditType(credit_type).value)
        if key in self._local.locked_keys:
            return

        where = (LedgerKeyRow.organization_id == key[0], LedgerKeyRow.credit_type == key[1])
        try:
            if session.execute(select(LedgerKeyRow.version).where(*where).with_for_update()).first() is None:
                session.add(LedgerKeyRow(organization_id=key[0], credit_type=key[1], version=0))
                session.flush()
            session.execute(update(LedgerKeyRow).where(*where).values(version=LedgerKeyRow.version + 1))
        except (IntegrityError, OperationalError) as exc:
            # Another writer holds or is creating the key row past the driver's wait.
            raise LedgerUnavailable(
                f"Ledger for {key[0]}/{key[1]} is busy, retry later",
                context={"organization_id": key[0]},
            ) from exc
        self._local.locked_keys.add(key)

    def key_version(self, organization_id: str, credit_type: CreditType) -> int:
        stmt = select(LedgerKeyRow.version).where(
            LedgerKeyRow.organization_id == organization_id,
            LedgerKeyRow.credit_type == CreditType(credit_type).value,
        )
        with self._session() as session:
            return int(session.execute(stmt).scalar() or 0)

    @contextmanager
    def _session(self):
        current = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return
        with self._session_factory() as session:
            yield session
            session.commit()

    def add_organization(self, organization: Organization) -> None:
        with self._session() as session:
            session.merge(OrganizationRow(**organization.model_dump()))
            for credit_type in CreditType:
                if session.get(LedgerKeyRow, (organization.id, credit_type.value)) is None:
                    session.add(LedgerKeyRow(organization_id=organization.id, credit_type=credit_type.value, version=0))

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._session() as session:
            row = session.get(OrganizationRow, organization_id)
            return Organization.model_validate(row) if row else None

    def list_organizations(self) -> list[Organization]:
        with self._session() as session:
            rows = session.execute(select(OrganizationRow)).scalars().all()
            return [Organization.model_validate(r) for r in rows]

    def insert_credit_transaction(self, entry: CreditTransaction) -> None:
        with self._session() as session:
            session.add(CreditTransactionRow(**_plain(entry.model_dump())))
            session.flush()

    def list_credit_transactions(
        self, organization_id: str, credit_type: Optional[CreditType] = None
    ) -> list[CreditTransaction]:
        stmt = select(CreditTransactionRow).where(CreditTransactionRow.organization_id == organization_id)
        if credit_type is not None:
            stmt = stmt.where(CreditTransactionRow.credit_type == credit_type.value)
        with self._session() as session:
            rows = session.execute(stmt.order_by(CreditTransactionRow.seq)).scalars().all()
            return [CreditTransaction.model_validate(r) for r in rows]

    def credit_transactions_for(self, related_id: str) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransactionRow)
            .where(CreditTransactionRow.related_id == related_id)
            .order_by(CreditTransactionRow.seq)
        )
        with self._session() as session:
            return [CreditTransaction.model_validate(r) for r in session.execute(stmt).scalars().all()]

    def sum_credit_amounts(self, organization_id: str, credit_type: CreditType) -> int:
        stmt = select(func.coalesce(func.sum(CreditTransactionRow.amount), 0)).where(
            CreditTransactionRow.organization_id == organization_id,
            CreditTransactionRow.credit_type == credit_type.value,
        )
        with self._session() as session:
            return int(session.execute(stmt).scalar() or 0)

    def has_credit_transactions(self, organization_id: str) -> bool:
        stmt = (
            select(CreditTransactionRow.seq)
            .where(CreditTransactionRow.organization_id == organization_id)
            .limit(1)
        )
        with self._session() as session:
            return session.execute(stmt).first() is not None

    def save_payment(self, payment: PaymentTransaction) -> None:
        with self._session() as session:
            session.merge(PaymentTransactionRow(**_plain(payment.model_dump())))
            session.flush()

    def get_payment(self, payment_id: str) -> Optional[PaymentTransaction]:
        with self._session() as session:
            row = session.get(PaymentTransactionRow, payment_id)
            return PaymentTransaction.model_validate(row) if row else None

    def list_payments(self, organization_id: str) -> list[PaymentTransaction]:
        stmt = select(PaymentTransactionRow).where(PaymentTransactionRow.organization_id == organization_id)
        with self._session() as session:
            return [PaymentTransaction.model_validate(r) for r in session.execute(stmt).scalars().all()]

    def find_payment_by_provider_ref(self, reference: str) -> Optional[PaymentTransaction]:
        stmt = select(PaymentTransactionRow).where(
            (PaymentTransactionRow.provider_payment_id == reference)
            | (PaymentTransactionRow.provider_checkout_id == reference)
        )
        with self._session() as session:
            row = session.execute(stmt.limit(1)).scalar_one_or_none()
            return PaymentTransaction.model_validate(row) if row else None

    def is_event_processed(self, event_id: str) -> bool:
        with self._session() as session:
            return session.get(ProcessedWebhookEventRow, event_id) is not None

    def record_processed_event(self, event_id: str, payment_id: str) -> bool:
        # The primary key still rejects a concurrent insert from another process at commit.
        with self._session() as session:
            if session.get(ProcessedWebhookEventRow, event_id) is not None:
                return False
            session.add(ProcessedWebhookEventRow(
                event_id=event_id,
                payment_transaction_id=payment_id,
                processed_at=datetime.now(timezone.utc),
            ))
            session.flush()
            return True
