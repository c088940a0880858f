import logging
import time
from typing import Optional

import stripe
from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .config import get_settings
from .errors import CreditError, DuplicateWebhookEvent, ErrorCodes, LedgerUnavailable, PaymentProviderError
from .models import (
    ActionPrice,
    ChargeActionRequest,
    CheckoutHandle,
    CreateOrganizationRequest,
    CreditBalances,
    CreditLevel,
    CreditPackage,
    CreditTransaction,
    CreditType,
    CreditUsage,
    DebitRequest,
    GrantRequest,
    LedgerHistoryResponse,
    Organization,
    PaymentStats,
    PaymentTransaction,
    PurchaseRequest,
    RefundRequest,
    WebhookEvent,
)
from .service import CreditLedgerService

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCodes.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    ErrorCodes.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCodes.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCodes.ORGANIZATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCodes.PAYMENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCodes.PACKAGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCodes.DUPLICATE_WEBHOOK_EVENT: status.HTTP_200_OK,
    ErrorCodes.LEDGER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCodes.PAYMENT_PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def error_response(exc: CreditError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content={
            "success": False,
            "error": {"code": exc.code, "message": exc.message, "context": exc.context},
            "timestamp": time.time(),
        },
    )


async def credit_error_handler(request: Request, exc: CreditError) -> JSONResponse:
    logger.warning("%s %s rejected: %s - %s", request.method, request.url.path, exc.code, exc.message)
    return error_response(exc)


def _csv(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def create_app(service: Optional[CreditLedgerService] = None, root_path: str = "") -> FastAPI:
    service = service or CreditLedgerService()

    app = FastAPI(
        title="Credit Ledger API",
        description="Dual-currency credit ledger with payment reconciliation",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CreditError, credit_error_handler)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "credit-ledger"}

    @app.post("/organizations", response_model=Organization, status_code=status.HTTP_201_CREATED, tags=["Organizations"])
    def create_organization(request: CreateOrganizationRequest) -> Organization:
        return service.register_organization(request.name, request.id)

    @app.get("/organizations/{organization_id}", response_model=Organization, tags=["Organizations"])
    def get_organization(organization_id: str) -> Organization:
        return service.get_organization(organization_id)

    @app.post("/organizations/{organization_id}/archive", response_model=Organization, tags=["Organizations"])
    def archive_organization(organization_id: str) -> Organization:
        return service.archive_organization(organization_id)

    @app.get("/organizations/{organization_id}/balances", response_model=CreditBalances, tags=["Credits"])
    def get_balances(organization_id: str) -> CreditBalances:
        return service.get_balances(organization_id)

    @app.get("/organizations/{organization_id}/ledger", response_model=LedgerHistoryResponse, tags=["Credits"])
    def get_ledger(
        organization_id: str, credit_type: Optional[CreditType] = None, limit: int = 50, offset: int = 0
    ) -> LedgerHistoryResponse:
        return service.get_ledger_history(organization_id, credit_type, limit, offset)

    @app.get("/organizations/{organization_id}/ledger.csv", tags=["Export"])
    def export_ledger(organization_id: str) -> Response:
        return _csv(service.export_ledger_csv(organization_id), f"credit-history-{organization_id}.csv")

    @app.get("/organizations/{organization_id}/usage", response_model=CreditUsage, tags=["Credits"])
    def get_usage(organization_id: str) -> CreditUsage:
        return service.get_credit_usage(organization_id)

    @app.post(
        "/organizations/{organization_id}/debits",
        response_model=CreditTransaction,
        status_code=status.HTTP_201_CREATED,
        tags=["Credits"],
    )
    def debit(organization_id: str, request: DebitRequest) -> CreditTransaction:
        return service.policy.debit(
            organization_id, request.credit_type, request.amount, request.type,
            related_id=request.related_id, description=request.description,
        )

    @app.post(
        "/organizations/{organization_id}/actions",
        response_model=CreditTransaction,
        status_code=status.HTTP_201_CREATED,
        tags=["Credits"],
    )
    def charge_action(organization_id: str, request: ChargeActionRequest) -> CreditTransaction:
        return service.policy.charge_action(organization_id, request.action, request.related_id)

    @app.post(
        "/organizations/{organization_id}/grants",
        response_model=CreditTransaction,
        status_code=status.HTTP_201_CREATED,
        tags=["Credits"],
    )
    def grant(organization_id: str, request: GrantRequest) -> CreditTransaction:
        return service.policy.grant(organization_id, request.credit_type, request.amount, request.description)

    @app.post(
        "/organizations/{organization_id}/purchases",
        response_model=CheckoutHandle,
        status_code=status.HTTP_201_CREATED,
        tags=["Payments"],
    )
    def purchase(organization_id: str, request: PurchaseRequest) -> CheckoutHandle:
        return service.policy.apply_purchase(organization_id, request.credit_package_id)

    @app.get("/organizations/{organization_id}/payments", response_model=list[PaymentTransaction], tags=["Payments"])
    def payment_history(organization_id: str, limit: int = 50) -> list[PaymentTransaction]:
        return service.payment_history(organization_id, limit)

    @app.get("/organizations/{organization_id}/payments/stats", response_model=PaymentStats, tags=["Payments"])
    def payment_stats(organization_id: str) -> PaymentStats:
        return service.payment_stats(organization_id)

    @app.get("/organizations/{organization_id}/payments.csv", tags=["Export"])
    def export_payments(organization_id: str) -> Response:
        return _csv(service.export_payments_csv(organization_id), f"payment-history-{organization_id}.csv")

    @app.get("/payments/{payment_id}", response_model=PaymentTransaction, tags=["Payments"])
    def get_payment(payment_id: str) -> PaymentTransaction:
        return service.reconciler.get_payment(payment_id)

    @app.post("/payments/{payment_id}/refund", response_model=PaymentTransaction, tags=["Payments"])
    def refund_payment(payment_id: str, request: RefundRequest) -> PaymentTransaction:
        return service.policy.request_refund(payment_id, request.amount, request.reason).payment

    @app.post("/webhooks/payments", tags=["Webhooks"])
    async def payment_webhook(request: Request):
        try:
            event = WebhookEvent.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            logger.warning("Malformed payment webhook rejected: %s", exc)
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"received": False})
        return await run_in_threadpool(_acknowledge, event.event_id, lambda: service.handle_webhook(event))

    @app.post("/webhooks/stripe", tags=["Webhooks"])
    async def stripe_webhook(request: Request):
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        try:
            return await run_in_threadpool(_acknowledge, None, lambda: service.handle_stripe_webhook(payload, signature))
        except (KeyError, ValueError, ValidationError, stripe.SignatureVerificationError) as exc:
            logger.warning("Invalid Stripe webhook rejected: %s", exc)
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"received": False})

    @app.get("/packages", response_model=list[CreditPackage], tags=["Catalog"])
    def list_packages(credit_type: Optional[CreditType] = None) -> list[CreditPackage]:
        return service.catalog.list_packages(credit_type)

    @app.get("/pricing", response_model=list[ActionPrice], tags=["Catalog"])
    def list_pricing() -> list[ActionPrice]:
        return service.catalog.list_action_prices()

    @app.get("/levels/{credit_type}/{balance}", tags=["Credits"])
    def classify(credit_type: CreditType, balance: int) -> dict:
        level: CreditLevel = service.policy.classify_level(balance, credit_type)
        return {"credit_type": credit_type, "balance": balance, "level": level}

    return app


def _acknowledge(event_id: Optional[str], apply) -> dict:
    """Run a webhook application and acknowledge it.

    Rejected events are acknowledged so the provider stops retrying them.
    Provider failures and busy ledgers propagate so the delivery is retried.
    """
    try:
        result = apply()
    except DuplicateWebhookEvent as exc:
        return {"received": True, "duplicate": True, "event_id": exc.event_id}
    except (PaymentProviderError, LedgerUnavailable):
        raise
    except CreditError as exc:
        logger.error("Reconciliation failed for webhook event %s: %s - %s", event_id, exc.code, exc.message)
        return {"received": True, "processed": False, "error": exc.code}
    if result is None:
        return {"received": True, "processed": False}
    return {"received": True, "processed": True, "event_id": result.event_id, "status": result.payment.status}


logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = create_app(root_path=get_settings().root_path)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
