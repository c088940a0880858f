from typing import Any, Optional


class ErrorCodes:
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"
    DUPLICATE_WEBHOOK_EVENT = "DUPLICATE_WEBHOOK_EVENT"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"


class CreditError(Exception):
    """Base class for every failure raised by the credit ledger."""

    code = "CREDIT_ERROR"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class InvalidAmount(CreditError):
    code = ErrorCodes.INVALID_AMOUNT


class InsufficientCredits(CreditError):
    code = ErrorCodes.INSUFFICIENT_CREDITS

    def __init__(self, organization_id: str, credit_type: str, required: int, available: int):
        self.organization_id = organization_id
        self.credit_type = credit_type
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {credit_type} credits. Required: {required}, Available: {available}",
            context={
                "credit_type": credit_type,
                "required": required,
                "available": available,
                "action": "top_up",
            },
        )


class InvalidTransition(CreditError):
    code = ErrorCodes.INVALID_TRANSITION

    def __init__(self, payment_id: str, current: str, target: str):
        self.payment_id = payment_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move payment {payment_id} from {current} to {target}",
            context={"payment_id": payment_id, "from": current, "to": target},
        )


class OrganizationNotFound(CreditError):
    code = ErrorCodes.ORGANIZATION_NOT_FOUND

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(f"Organization {organization_id} not found", context={"organization_id": organization_id})


class PaymentNotFound(CreditError):
    code = ErrorCodes.PAYMENT_NOT_FOUND

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment transaction {payment_id} not found", context={"payment_id": payment_id})


class PackageNotFound(CreditError):
    code = ErrorCodes.PACKAGE_NOT_FOUND

    def __init__(self, package_id: str):
        self.package_id = package_id
        super().__init__(f"Credit package {package_id} not found", context={"credit_package_id": package_id})


class DuplicateWebhookEvent(CreditError):
    """Raised for replayed deliveries; callers acknowledge it as success."""

    code = ErrorCodes.DUPLICATE_WEBHOOK_EVENT

    def __init__(self, event_id: str, reason: str = "already processed"):
        self.event_id = event_id
        super().__init__(f"Webhook event {event_id} {reason}", context={"event_id": event_id})


class LedgerUnavailable(CreditError):
    code = ErrorCodes.LEDGER_UNAVAILABLE


class PaymentProviderError(CreditError):
    code = ErrorCodes.PAYMENT_PROVIDER_ERROR

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)
