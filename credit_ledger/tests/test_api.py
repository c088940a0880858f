"""
API Tests for the credit ledger HTTP surface
"""

import hashlib
import importlib
import hmac
import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

import credit_ledger.api
from credit_ledger.api import create_app
from credit_ledger.models import CreditType
from credit_ledger.provider import StripeProvider
from credit_ledger.service import CreditLedgerService
from credit_ledger.storage import InMemoryStorage


ORG_ID = "org-acme"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def purchase_and_settle(client, package_id="cv-50", event_id="evt_1"):
    response = client.post(f"/organizations/{ORG_ID}/purchases", json={"credit_package_id": package_id})
    payment_id = response.json()["payment_id"]
    client.post("/webhooks/payments", json={
        "event_id": event_id,
        "payment_transaction_id": payment_id,
        "status": "succeeded",
    })
    return payment_id


class TestOrganizations:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "credit-ledger"}

    def test_create_organization_is_idempotent(self, client):
        first = client.post("/organizations", json={"id": "org-new", "name": "New Co"})
        second = client.post("/organizations", json={"id": "org-new", "name": "Renamed"})

        assert first.status_code == 201
        assert second.json()["name"] == "New Co"

    def test_unknown_organization_returns_error_envelope(self, client):
        response = client.get("/organizations/org-missing/balances")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "ORGANIZATION_NOT_FOUND"


class TestCredits:
    def test_purchase_webhook_and_balances(self, client):
        purchase_and_settle(client)

        balances = client.get(f"/organizations/{ORG_ID}/balances").json()

        assert balances["cv_processing_credits"] == 50
        assert balances["cv_processing_level"] == "low"
        assert balances["interview_level"] == "veryLow"

    def test_insufficient_credits_is_payment_required(self, client):
        response = client.post(f"/organizations/{ORG_ID}/debits", json={
            "credit_type": "interview", "amount": 1, "type": "interview",
        })

        assert response.status_code == 402
        error = response.json()["error"]
        assert error["code"] == "INSUFFICIENT_CREDITS"
        assert error["context"]["required"] == 1
        assert error["context"]["available"] == 0
        assert error["context"]["action"] == "top_up"

    def test_zero_debit_is_bad_request(self, client):
        response = client.post(f"/organizations/{ORG_ID}/debits", json={
            "credit_type": "cv_processing", "amount": 0, "type": "cv_processing",
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_AMOUNT"

    def test_action_and_ledger_history(self, client):
        purchase_and_settle(client)

        action = client.post(f"/organizations/{ORG_ID}/actions", json={"action": "job_posting"})
        ledger = client.get(f"/organizations/{ORG_ID}/ledger", params={"limit": 1}).json()

        assert action.status_code == 201
        assert action.json()["amount"] == -5
        assert ledger["total_count"] == 2
        assert len(ledger["entries"]) == 1
        assert ledger["balances"]["cv_processing_credits"] == 45

    def test_grant_and_usage(self, client):
        client.post(f"/organizations/{ORG_ID}/grants", json={"credit_type": "interview", "amount": 4})
        client.post(f"/organizations/{ORG_ID}/actions", json={"action": "interview_scheduling"})

        usage = client.get(f"/organizations/{ORG_ID}/usage").json()

        assert usage["total_added"] == 4
        assert usage["total_deducted"] == 1

    def test_levels(self, client):
        assert client.get("/levels/cv_processing/5").json()["level"] == "veryLow"
        assert client.get("/levels/interview/51").json()["level"] == "normal"

    def test_packages_filtered_by_type(self, client):
        packages = client.get("/packages", params={"credit_type": "interview"}).json()

        assert [p["id"] for p in packages] == ["interview-25", "interview-50", "interview-100", "interview-500"]

    def test_unknown_package(self, client):
        response = client.post(f"/organizations/{ORG_ID}/purchases", json={"credit_package_id": "nope"})

        assert response.status_code == 404


class TestPaymentWebhooks:
    def test_duplicate_delivery_is_acknowledged(self, client):
        payment_id = purchase_and_settle(client)

        response = client.post("/webhooks/payments", json={
            "event_id": "evt_1", "payment_transaction_id": payment_id, "status": "succeeded",
        })

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert client.get(f"/organizations/{ORG_ID}/balances").json()["cv_processing_credits"] == 50

    def test_malformed_payload_rejected(self, client):
        response = client.post("/webhooks/payments", json={"event_id": "", "status": "succeeded"})

        assert response.status_code == 400

    def test_unreconcilable_event_is_acknowledged(self, client):
        response = client.post("/webhooks/payments", json={
            "event_id": "evt_9", "payment_transaction_id": "missing", "status": "succeeded",
        })

        assert response.status_code == 200
        assert response.json() == {"received": True, "processed": False, "error": "PAYMENT_NOT_FOUND"}

    def test_busy_ledger_is_retried_by_the_provider(self, client, service):
        """A delivery that cannot get the ledger in time answers 503 and is not recorded."""
        response = client.post(f"/organizations/{ORG_ID}/purchases", json={"credit_package_id": "cv-50"})
        payment_id = response.json()["payment_id"]
        event = {"event_id": "evt_busy", "payment_transaction_id": payment_id, "status": "succeeded"}
        service.ledger.lock_timeout_seconds = 0.05
        held = threading.Event()
        release = threading.Event()

        def holder():
            with service.ledger.locked(ORG_ID, CreditType.CV_PROCESSING):
                held.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(timeout=5)
        try:
            busy = client.post("/webhooks/payments", json=event)
        finally:
            release.set()
            thread.join()

        assert busy.status_code == 503
        assert busy.json()["error"]["code"] == "LEDGER_UNAVAILABLE"
        assert not service.storage.is_event_processed("evt_busy")

        retried = client.post("/webhooks/payments", json=event)

        assert retried.status_code == 200
        assert retried.json()["processed"] is True
        assert client.get(f"/organizations/{ORG_ID}/balances").json()["cv_processing_credits"] == 50


class TestPayments:
    def test_refund_endpoint(self, client):
        payment_id = purchase_and_settle(client)

        refunded = client.post(f"/payments/{payment_id}/refund", json={"reason": "requested"})
        again = client.post(f"/payments/{payment_id}/refund", json={})

        assert refunded.status_code == 200
        assert refunded.json()["status"] == "refunded"
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_stats_and_exports(self, client):
        purchase_and_settle(client)
        client.post(f"/organizations/{ORG_ID}/purchases", json={"credit_package_id": "interview-25"})

        stats = client.get(f"/organizations/{ORG_ID}/payments/stats").json()
        history = client.get(f"/organizations/{ORG_ID}/payments").json()
        payments_export = client.get(f"/organizations/{ORG_ID}/payments.csv")
        ledger_export = client.get(f"/organizations/{ORG_ID}/ledger.csv")

        assert stats["total_spent"] == 450000
        assert stats["successful_transactions"] == 1
        assert len(history) == 2
        assert payments_export.headers["content-type"].startswith("text/csv")
        assert payments_export.text.startswith("Date,Payment ID")
        assert len(ledger_export.text.splitlines()) == 2


class TestStripeWebhook:
    @pytest.fixture
    def stripe_client(self, settings):
        service = CreditLedgerService(
            settings=settings,
            storage=InMemoryStorage(),
            provider=StripeProvider("sk_test_dummy", webhook_secret=WEBHOOK_SECRET),
        )
        service.register_organization("Acme Recruiting", ORG_ID)
        return service, TestClient(create_app(service))

    def signed(self, payload):
        timestamp = int(time.time())
        signature = hmac.new(
            WEBHOOK_SECRET.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
        ).hexdigest()
        return {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}

    def test_signed_checkout_completion_grants_credits(self, stripe_client):
        service, client = stripe_client
        payment = service.reconciler.open_payment(
            ORG_ID, "cv_processing", credits=50, amount=450000, currency="EGP", provider="stripe"
        )
        payload = json.dumps({
            "id": "evt_stripe_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "payment_status": "paid",
                "amount_total": 450000,
                "payment_intent": "pi_1",
                "metadata": {"payment_id": payment.id},
            }},
        })

        response = client.post("/webhooks/stripe", content=payload, headers=self.signed(payload))

        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert service.get_balances(ORG_ID).cv_processing_credits == 50

    def test_bad_signature_rejected(self, stripe_client):
        _, client = stripe_client
        payload = json.dumps({"id": "evt_x", "type": "checkout.session.completed", "data": {"object": {}}})

        response = client.post(
            "/webhooks/stripe", content=payload, headers={"stripe-signature": "t=1,v1=bad"}
        )

        assert response.status_code == 400

    def test_stripe_webhook_without_stripe_provider(self, client):
        response = client.post("/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})

        assert response.status_code == 502


class TestServerlessHandler:
    def test_handler_wraps_the_module_app(self, monkeypatch):
        """The serverless entry point serves the app built by credit_ledger.api instead of a second one."""
        monkeypatch.setenv("CREDITS_ROOT_PATH", "/api")
        index = importlib.import_module("api.index")

        assert index.app is credit_ledger.api.app
        assert index.handler.app is credit_ledger.api.app
