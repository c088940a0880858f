from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class CreditType(str, Enum):
    CV_PROCESSING = "cv_processing"
    INTERVIEW = "interview"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    CV_PROCESSING = "cv_processing"
    INTERVIEW = "interview"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class CreditLevel(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    VERY_LOW = "veryLow"


class ActionType(str, Enum):
    RESUME_PROCESSING = "resume_processing"
    AI_MATCHING = "ai_matching"
    JOB_POSTING = "job_posting"
    INTERVIEW_SCHEDULING = "interview_scheduling"


# Ledger types only the payment reconciler may write.
RECONCILER_TYPES = frozenset({
    TransactionType.PURCHASE,
    TransactionType.SUBSCRIPTION,
    TransactionType.REFUND,
})

DEBIT_TYPES = frozenset({
    TransactionType.CV_PROCESSING,
    TransactionType.INTERVIEW,
    TransactionType.MANUAL_ADJUSTMENT,
})


class Organization(BaseModel):
    id: str
    name: str
    created_at: datetime
    archived_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


class CreditTransaction(BaseModel):
    id: str
    organization_id: str
    credit_type: CreditType
    amount: int
    type: TransactionType
    related_id: Optional[str] = None
    description: str = ""
    balance_after: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class PaymentTransaction(BaseModel):
    id: str
    organization_id: str
    provider: str = "mock"
    provider_checkout_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    provider_invoice_id: Optional[str] = None
    credit_package_id: Optional[str] = None
    credit_type: CreditType
    grant_type: TransactionType = TransactionType.PURCHASE
    amount: int
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    credits_purchased: int
    credits_added: int = 0
    failure_reason: Optional[str] = None
    refunded_amount: int = 0
    refunded_credits: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_fully_refunded(self) -> bool:
        return self.refunded_amount >= self.amount


class CreditPackage(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    credit_type: CreditType
    credit_amount: int = Field(..., gt=0)
    price: int = Field(..., gt=0, description="Price in minor currency units")
    currency: str = "EGP"
    is_active: bool = True
    sort_order: int = 0

    model_config = ConfigDict(from_attributes=True)


class ActionPrice(BaseModel):
    action: ActionType
    credit_type: CreditType
    cost: int = Field(..., gt=0)
    description: Optional[str] = None
    is_active: bool = True


class WebhookEvent(BaseModel):
    event_id: str = Field(..., min_length=1, description="Provider event id, used for dedupe")
    payment_transaction_id: str = Field(..., min_length=1)
    status: PaymentStatus
    amount: Optional[int] = None
    refunded_amount: Optional[int] = None
    failure_reason: Optional[str] = None
    provider_payment_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "event_id": "evt_1PqX2b",
            "payment_transaction_id": "8c0d6a4e-3f43-4bb0-9a0e-0c1f5f1c2f10",
            "status": "succeeded",
            "amount": 450000,
        }
    })


class WebhookResult(BaseModel):
    event_id: str
    payment: Optional[PaymentTransaction] = None
    ledger_entry: Optional[CreditTransaction] = None
    duplicate: bool = False
    message: str


class CheckoutHandle(BaseModel):
    payment_id: str
    checkout_id: Optional[str] = None
    checkout_url: Optional[str] = None
    status: PaymentStatus


class CreditBalances(BaseModel):
    organization_id: str
    cv_processing_credits: int
    interview_credits: int
    cv_processing_level: CreditLevel = CreditLevel.NORMAL
    interview_level: CreditLevel = CreditLevel.NORMAL


class PaymentStats(BaseModel):
    organization_id: str
    total_spent: int = 0
    total_credits: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    refunded_transactions: int = 0


class CreditUsage(BaseModel):
    organization_id: str
    total_deducted: int = 0
    total_added: int = 0
    counts_by_type: dict[str, int] = Field(default_factory=dict)


class CreateOrganizationRequest(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)


class DebitRequest(BaseModel):
    credit_type: CreditType
    amount: int = Field(..., description="Credits to consume, must be positive")
    type: TransactionType
    related_id: Optional[str] = None
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "credit_type": "cv_processing",
            "amount": 1,
            "type": "cv_processing",
            "related_id": "resume-42",
        }
    })


class ChargeActionRequest(BaseModel):
    action: ActionType
    related_id: Optional[str] = None


class GrantRequest(BaseModel):
    credit_type: CreditType
    amount: int
    description: str = "Manual credit addition"


class PurchaseRequest(BaseModel):
    credit_package_id: str


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, description="Minor units to refund; defaults to the remaining amount")
    reason: Optional[str] = None


class LedgerHistoryResponse(BaseModel):
    organization_id: str
    entries: list[CreditTransaction]
    total_count: int
    balances: CreditBalances
