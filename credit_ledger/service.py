import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import uuid4

from .catalog import CreditCatalog
from .config import Settings, get_settings
from .db import make_engine, make_session_factory
from .errors import OrganizationNotFound, PaymentProviderError
from .ledger import LedgerStore
from .models import (
    CreditBalances,
    CreditType,
    CreditUsage,
    LedgerHistoryResponse,
    Organization,
    PaymentStats,
    PaymentTransaction,
    WebhookEvent,
    WebhookResult,
)
from .policy import CreditPolicyEngine
from .projector import BalanceProjector
from .provider import MockProvider, PaymentProvider, StripeProvider, translate_stripe_event
from .reconciler import PaymentReconciler
from .stats import credit_history_csv, credit_usage, payments_csv, summarize
from .storage import InMemoryStorage, SqlStorage

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> Union[InMemoryStorage, SqlStorage]:
    if not settings.database_url:
        return InMemoryStorage()
    engine = make_engine(settings.database_url, timeout_seconds=settings.lock_timeout_seconds)
    return SqlStorage(make_session_factory(engine))


def build_provider(settings: Settings) -> PaymentProvider:
    if settings.stripe_secret_key and not settings.test_mode:
        return StripeProvider(
            settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            frontend_url=settings.frontend_url,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    return MockProvider(auto_complete=settings.test_mode)


class CreditLedgerService:
    """Wires storage, ledger, projector, reconciler and policy together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Union[InMemoryStorage, SqlStorage, None] = None,
        provider: Optional[PaymentProvider] = None,
        catalog: Optional[CreditCatalog] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or build_storage(self.settings)
        self.ledger = LedgerStore(self.storage, lock_timeout_seconds=self.settings.lock_timeout_seconds)
        self.projector = BalanceProjector(self.ledger)
        self.reconciler = PaymentReconciler(self.ledger)
        self.catalog = catalog or CreditCatalog(currency=self.settings.currency)
        self.provider = provider or build_provider(self.settings)
        self.policy = CreditPolicyEngine(self.ledger, self.reconciler, self.catalog, self.provider)

    def register_organization(self, name: str, organization_id: Optional[str] = None) -> Organization:
        organization_id = organization_id or str(uuid4())
        existing = self.storage.get_organization(organization_id)
        if existing:
            return existing
        organization = Organization(id=organization_id, name=name, created_at=datetime.now(timezone.utc))
        self.storage.add_organization(organization)
        logger.info("Registered organization %s (%s)", organization.id, name)
        return organization

    def get_organization(self, organization_id: str) -> Organization:
        organization = self.storage.get_organization(organization_id)
        if organization is None:
            raise OrganizationNotFound(organization_id)
        return organization

    def archive_organization(self, organization_id: str) -> Organization:
        organization = self.get_organization(organization_id)
        if organization.is_archived:
            return organization
        organization = organization.model_copy(update={"archived_at": datetime.now(timezone.utc)})
        self.storage.add_organization(organization)
        logger.info("Archived organization %s", organization_id)
        return organization

    def get_balances(self, organization_id: str) -> CreditBalances:
        return self.projector.get_balances(organization_id)

    def get_ledger_history(
        self,
        organization_id: str,
        credit_type: Optional[CreditType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        balances = self.get_balances(organization_id)
        entries, total = self.ledger.history(organization_id, credit_type, limit, offset)
        return LedgerHistoryResponse(
            organization_id=organization_id,
            entries=entries,
            total_count=total,
            balances=balances,
        )

    def get_credit_usage(self, organization_id: str) -> CreditUsage:
        self.get_organization(organization_id)
        return credit_usage(organization_id, self.ledger.entries(organization_id))

    def payment_history(self, organization_id: str, limit: int = 50) -> list[PaymentTransaction]:
        self.get_organization(organization_id)
        return self.reconciler.payment_history(organization_id, limit)

    def payment_stats(self, organization_id: str) -> PaymentStats:
        self.get_organization(organization_id)
        return summarize(organization_id, self.storage.list_payments(organization_id))

    def export_payments_csv(self, organization_id: str) -> str:
        self.get_organization(organization_id)
        return payments_csv(self.reconciler.payment_history(organization_id, limit=10_000))

    def export_ledger_csv(self, organization_id: str) -> str:
        self.get_organization(organization_id)
        return credit_history_csv(self.ledger.entries(organization_id))

    def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        return self.reconciler.handle_webhook(event)

    def handle_stripe_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[WebhookResult]:
        if not isinstance(self.provider, StripeProvider):
            raise PaymentProviderError("Stripe webhook not configured")
        event = self.provider.construct_event(payload, signature)
        translated = translate_stripe_event(event, self.reconciler.find_payment_id)
        if translated is None:
            logger.info("Stripe event %s (%s) needs no reconciliation", event["id"], event["type"])
            return None
        return self.handle_webhook(translated)
