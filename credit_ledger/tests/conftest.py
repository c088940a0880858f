import pytest

from credit_ledger.config import Settings
from credit_ledger.models import CreditType
from credit_ledger.provider import MockProvider
from credit_ledger.service import CreditLedgerService
from credit_ledger.storage import InMemoryStorage

ORG_ID = "org-acme"


@pytest.fixture
def settings():
    return Settings(_env_file=None, database_url="", test_mode=False, lock_timeout_seconds=2.0)


@pytest.fixture
def provider():
    return MockProvider()


@pytest.fixture
def service(settings, provider):
    service = CreditLedgerService(settings=settings, storage=InMemoryStorage(), provider=provider)
    service.register_organization("Acme Recruiting", ORG_ID)
    return service


@pytest.fixture
def fund(service):
    """Complete a purchase so the organization holds ``credits``."""

    def _fund(credit_type=CreditType.CV_PROCESSING, credits=50, amount=None, organization_id=ORG_ID):
        payment = service.reconciler.open_payment(
            organization_id,
            credit_type=credit_type,
            credits=credits,
            amount=amount or credits * 9000,
            currency="EGP",
            provider="mock",
        )
        return service.reconciler.mark_succeeded(payment.id).payment

    return _fund
