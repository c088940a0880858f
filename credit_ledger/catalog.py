from typing import Iterable, Optional

from .errors import PackageNotFound
from .models import ActionPrice, ActionType, CreditPackage, CreditType


DEFAULT_PACKAGES = [
    CreditPackage(id="cv-50", name="50 CV Credits", description="Process 50 resumes",
                  credit_type=CreditType.CV_PROCESSING, credit_amount=50, price=450000, sort_order=1),
    CreditPackage(id="cv-100", name="100 CV Credits", description="Process 100 resumes",
                  credit_type=CreditType.CV_PROCESSING, credit_amount=100, price=900000, sort_order=2),
    CreditPackage(id="cv-300", name="300 CV Credits", description="Process 300 resumes",
                  credit_type=CreditType.CV_PROCESSING, credit_amount=300, price=2400000, sort_order=3),
    CreditPackage(id="cv-1000", name="1000 CV Credits", description="Process 1000 resumes",
                  credit_type=CreditType.CV_PROCESSING, credit_amount=1000, price=7000000, sort_order=4),
    CreditPackage(id="interview-25", name="25 Interview Credits", description="Schedule 25 interviews",
                  credit_type=CreditType.INTERVIEW, credit_amount=25, price=225000, sort_order=5),
    CreditPackage(id="interview-50", name="50 Interview Credits", description="Schedule 50 interviews",
                  credit_type=CreditType.INTERVIEW, credit_amount=50, price=450000, sort_order=6),
    CreditPackage(id="interview-100", name="100 Interview Credits", description="Schedule 100 interviews",
                  credit_type=CreditType.INTERVIEW, credit_amount=100, price=800000, sort_order=7),
    CreditPackage(id="interview-500", name="500 Interview Credits", description="Schedule 500 interviews",
                  credit_type=CreditType.INTERVIEW, credit_amount=500, price=3500000, sort_order=8),
]

DEFAULT_ACTION_PRICES = [
    ActionPrice(action=ActionType.RESUME_PROCESSING, credit_type=CreditType.CV_PROCESSING, cost=1,
                description="Cost per resume processed and parsed"),
    ActionPrice(action=ActionType.AI_MATCHING, credit_type=CreditType.CV_PROCESSING, cost=2,
                description="Cost per AI candidate matching operation"),
    ActionPrice(action=ActionType.JOB_POSTING, credit_type=CreditType.CV_PROCESSING, cost=5,
                description="Cost per job posting creation"),
    ActionPrice(action=ActionType.INTERVIEW_SCHEDULING, credit_type=CreditType.INTERVIEW, cost=1,
                description="Cost per interview scheduled"),
]


class CreditCatalog:
    """Credit packages and per-action prices, read-only to the ledger."""

    def __init__(
        self,
        packages: Optional[Iterable[CreditPackage]] = None,
        action_prices: Optional[Iterable[ActionPrice]] = None,
        currency: Optional[str] = None,
    ):
        packages = DEFAULT_PACKAGES if packages is None else packages
        if currency:
            packages = [p.model_copy(update={"currency": currency}) for p in packages]
        self._packages = {p.id: p for p in packages}
        prices = DEFAULT_ACTION_PRICES if action_prices is None else action_prices
        self._prices = {p.action: p for p in prices}

    def get_package(self, package_id: str) -> CreditPackage:
        package = self._packages.get(package_id)
        if package is None or not package.is_active:
            raise PackageNotFound(package_id)
        return package

    def list_packages(self, credit_type: Optional[CreditType] = None) -> list[CreditPackage]:
        packages = [
            p for p in self._packages.values()
            if p.is_active and (credit_type is None or p.credit_type == credit_type)
        ]
        packages.sort(key=lambda p: (p.sort_order, p.price))
        return packages

    def action_price(self, action: ActionType) -> Optional[ActionPrice]:
        price = self._prices.get(ActionType(action))
        if price is None or not price.is_active:
            return None
        return price

    def list_action_prices(self) -> list[ActionPrice]:
        return sorted(self._prices.values(), key=lambda p: p.action.value)
