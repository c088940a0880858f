from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, ForeignKey, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


class OrganizationRow(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class CreditTransactionRow(Base):
    """Append-only; rows are inserted and never updated."""
    __tablename__ = "credit_transactions"

    # Insertion order for history and running balances.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), index=True)
    credit_type: Mapped[str] = mapped_column(String(30), index=True)

    # Positive for credit, negative for debit
    amount: Mapped[int] = mapped_column(Integer)

    # purchase, subscription, cv_processing, interview, manual_adjustment, refund
    type: Mapped[str] = mapped_column(String(30))

    # Payment transaction id or consumption event id
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    description: Mapped[str] = mapped_column(Text, default="")
    balance_after: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class PaymentTransactionRow(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), ForeignKey("organizations.id"), index=True)

    provider: Mapped[str] = mapped_column(String(40))
    provider_checkout_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True, index=True)
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)
    provider_invoice_id: Mapped[Optional[str]] = mapped_column(String(190), nullable=True)

    credit_package_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    credit_type: Mapped[str] = mapped_column(String(30))
    grant_type: Mapped[str] = mapped_column(String(30))

    # Minor currency units
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))

    # pending, succeeded, failed, canceled, refunded
    status: Mapped[str] = mapped_column(String(20), default="pending")

    credits_purchased: Mapped[int] = mapped_column(Integer)
    credits_added: Mapped[int] = mapped_column(Integer, default=0)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0)
    refunded_credits: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class LedgerKeyRow(Base):
    """One row per (organization, credit type); writers lock it before touching that ledger key."""
    __tablename__ = "ledger_keys"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    credit_type: Mapped[str] = mapped_column(String(30), primary_key=True)

    # Bumped by every writer; cached balances are only trusted at the same version.
    version: Mapped[int] = mapped_column(Integer, default=0)


class ProcessedWebhookEventRow(Base):
    __tablename__ = "processed_webhook_events"

    # Primary key doubles as the dedupe constraint.
    event_id: Mapped[str] = mapped_column(String(190), primary_key=True)
    payment_transaction_id: Mapped[str] = mapped_column(String(36), index=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime)


def make_engine(url: str, timeout_seconds: float = 5.0) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout_seconds}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_recycle=3600, pool_timeout=timeout_seconds)


def make_session_factory(engine: Engine) -> sessionmaker:
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
