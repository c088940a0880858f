import logging
import threading
from typing import Optional

from .errors import OrganizationNotFound
from .ledger import LedgerKey, LedgerStore
from .models import CreditBalances, CreditTransaction, CreditType
from .policy import classify_level

logger = logging.getLogger(__name__)


class BalanceProjector:
    """Cached running totals over the ledger.

    Each cached total is stored with the ledger key's version and is only
    served while the version is unchanged, so writes from other processes
    sharing the database invalidate it too. The ledger always wins on
    divergence.
    """

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger
        self._cache: dict[LedgerKey, tuple[int, int]] = {}
        self._guard = threading.Lock()
        ledger.subscribe(self)

    def on_append(self, entry: CreditTransaction) -> None:
        with self._guard:
            self._cache.pop((entry.organization_id, entry.credit_type), None)

    def balance(self, organization_id: str, credit_type: CreditType) -> int:
        key = (organization_id, CreditType(credit_type))
        # Version first: a sum newer than the version only costs a recompute.
        version = self.ledger.version(*key)
        with self._guard:
            cached = self._cache.get(key)
        if cached is not None and cached[0] == version:
            return cached[1]

        total = self.ledger.balance(*key)
        self._store(key, version, total)
        return total

    def _store(self, key: LedgerKey, version: int, total: int) -> None:
        # Uncommitted rows of this thread's open transaction must not be cached.
        if self.ledger.in_transaction():
            return
        with self._guard:
            self._cache[key] = (version, total)

    def get_balances(self, organization_id: str) -> CreditBalances:
        if not self.ledger.has_entries(organization_id) and not self.ledger.storage.get_organization(organization_id):
            raise OrganizationNotFound(organization_id)

        cv = self.balance(organization_id, CreditType.CV_PROCESSING)
        interview = self.balance(organization_id, CreditType.INTERVIEW)
        return CreditBalances(
            organization_id=organization_id,
            cv_processing_credits=cv,
            interview_credits=interview,
            cv_processing_level=classify_level(cv, CreditType.CV_PROCESSING),
            interview_level=classify_level(interview, CreditType.INTERVIEW),
        )

    def verify(self, organization_id: str) -> bool:
        """Compare cached totals with the ledger; repair and report drift."""
        consistent = True
        for credit_type in CreditType:
            key = (organization_id, credit_type)
            version = self.ledger.version(*key)
            actual = self.ledger.balance(*key)
            with self._guard:
                cached = self._cache.get(key)
            if cached is not None and cached[0] == version and cached[1] != actual:
                consistent = False
                logger.warning(
                    "Balance cache drift for %s/%s: cached=%d ledger=%d, rebuilding",
                    organization_id, credit_type.value, cached[1], actual,
                )
            self._store(key, version, actual)
        return consistent

    def rebuild(self, organization_id: Optional[str] = None) -> None:
        with self._guard:
            if organization_id is None:
                self._cache.clear()
            else:
                for credit_type in CreditType:
                    self._cache.pop((organization_id, credit_type), None)
        logger.info("Balance cache cleared for %s", organization_id or "all organizations")
