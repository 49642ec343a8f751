"""
Offer Settlement Workflow (OSW) - API Tests
Version: 1.0.0

HTTP surface tests through FastAPI's TestClient, with the orchestrator
replaced by an in-memory one per test.
"""

import pytest
from fastapi.testclient import TestClient

from osw_enforcement_v1 import InvoiceStatus, PaymentStatus
from osw_record_store_v1 import PAYMENTS
from osw_main_api import app, get_orchestrator
from osw_test_suite_v1 import (
    FailingRecordStore,
    FakeProcessor,
    RecordingNotifier,
    build_workflow,
)

OFFER_BODY = {
    "property_id": "PROP-001",
    "buyer_id": "BUY-001",
    "offer_price": 50000.00,
    "payment_method": "cash",
    "estimated_timeline": "ready_to_pay_in_full",
}


class ApiTestCase:
    """Per-test orchestrator wired into the app via dependency override."""

    def setup_method(self):
        self.store = FailingRecordStore()
        self.notifier = RecordingNotifier()
        self.processor = FakeProcessor()
        self.orchestrator = build_workflow(store=self.store, notifier=self.notifier, processor=self.processor)
        app.dependency_overrides[get_orchestrator] = lambda: self.orchestrator
        self.client = TestClient(app)

    def teardown_method(self):
        app.dependency_overrides.clear()

    def create_offer(self, **overrides):
        response = self.client.post("/api/v1/offers", json={**OFFER_BODY, **overrides})
        assert response.status_code == 201
        return response.json()

    def approve(self, offer_id):
        response = self.client.patch(f"/api/v1/admin/offers/{offer_id}", json={"status": "approved", "admin_id": "ADM-001"})
        assert response.status_code == 200
        return response.json()

    def submit_proof(self, offer_id, amount=50000.00):
        response = self.client.post("/api/v1/payments/bank-transfer/submit", json={
            "offer_id": offer_id,
            "buyer_id": "BUY-001",
            "amount": amount,
            "proof_url": "https://files.test/proof.pdf",
            "transfer_reference": "BT-001",
        })
        assert response.status_code == 201
        return response.json()

# ============================================
# OFFERS
# ============================================

class TestOfferEndpoints(ApiTestCase):

    def test_submit_offer(self):
        offer = self.create_offer()
        assert offer["status"] == "pending"
        assert offer["offer_reference"].startswith("OFR-")

        response = self.client.get(f"/api/v1/offers/{offer['id']}")
        assert response.status_code == 200
        assert response.json()["offer_price"] == 50000.00

    def test_unknown_payment_method_is_bad_request(self):
        response = self.client.post("/api/v1/offers", json={**OFFER_BODY, "payment_method": "barter"})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_non_positive_price_fails_schema(self):
        response = self.client.post("/api/v1/offers", json={**OFFER_BODY, "offer_price": 0})
        assert response.status_code == 422

    def test_unknown_offer(self):
        response = self.client.get("/api/v1/offers/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_approve_returns_invoice(self):
        offer = self.create_offer()
        decision = self.approve(offer["id"])

        assert decision["offer"]["status"] == "approved"
        assert decision["invoice"]["total"] == 50000.00
        assert decision["invoice"]["status"] == "unpaid"
        assert decision["invoice"]["persisted"] is True

        response = self.client.get(f"/api/v1/offers/{offer['id']}/invoice")
        assert response.status_code == 200
        assert response.json()["id"] == decision["invoice"]["id"]

    def test_second_decision_conflicts(self):
        offer = self.create_offer()
        self.approve(offer["id"])

        response = self.client.patch(f"/api/v1/admin/offers/{offer['id']}", json={"status": "rejected"})
        assert response.status_code == 409

    def test_reject_has_no_invoice(self):
        offer = self.create_offer()
        response = self.client.patch(
            f"/api/v1/admin/offers/{offer['id']}",
            json={"status": "rejected", "rejection_reason": "Below valuation"}
        )
        assert response.status_code == 200
        assert response.json()["invoice"] is None
        assert response.json()["offer"]["rejection_reason"] == "Below valuation"
        assert self.client.get(f"/api/v1/offers/{offer['id']}/invoice").status_code == 404

    def test_list_and_stats(self):
        first = self.create_offer()
        self.create_offer()
        self.approve(first["id"])

        pending = self.client.get("/api/v1/offers", params={"status": "pending"}).json()
        assert len(pending) == 1

        stats = self.client.get("/api/v1/offers/stats").json()
        assert stats["total"] == 2
        assert stats["approved"] == 1

# ============================================
# PAYMENTS
# ============================================

class TestMobileMoneyEndpoints(ApiTestCase):

    def initiate(self, offer_id, amount=50000.00):
        return self.client.post("/api/v1/payments/mobile-money/initiate", json={
            "offer_id": offer_id,
            "buyer_id": "BUY-001",
            "phone_number": "0771234567",
            "amount": amount,
        })

    def test_initiate_and_complete(self):
        offer = self.create_offer()
        decision = self.approve(offer["id"])

        response = self.initiate(offer["id"])
        assert response.status_code == 201
        payment = response.json()
        assert payment["status"] == "pending"
        assert payment["phone_number"] == "263771234567"

        response = self.client.post("/api/v1/payments/mobile-money/callback", json={
            "transaction_id": payment["transaction_id"],
            "status": "SUCCESS",
            "amount": 50000.00,
            "reference": "EC-1001",
        })
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        invoice = self.orchestrator.invoices.get_invoice(decision["invoice"]["id"])
        assert invoice.status is InvoiceStatus.PAID
        assert self.client.get(f"/api/v1/offers/{offer['id']}").json()["status"] == "paid"

    def test_processor_refusal_is_bad_gateway(self):
        self.processor.status_code = 402
        offer = self.create_offer()
        self.approve(offer["id"])

        response = self.initiate(offer["id"])

        assert response.status_code == 502
        [payment] = self.orchestrator.engine.list_payments(offer_id=offer["id"])
        assert payment.status is PaymentStatus.FAILED

    def test_callback_for_unknown_payment(self):
        response = self.client.post(
            "/api/v1/payments/mobile-money/callback",
            json={"transaction_id": "nope", "status": "SUCCESS"}
        )
        assert response.status_code == 404

    def test_callback_missing_fields(self):
        response = self.client.post("/api/v1/payments/mobile-money/callback", json={"status": "SUCCESS"})
        assert response.status_code == 400

    def test_callback_storage_failure_asks_for_redelivery(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.initiate(offer["id"]).json()
        self.store.failures.add(("compare_and_set", PAYMENTS))

        body = {"transaction_id": payment["transaction_id"], "status": "SUCCESS"}
        response = self.client.post("/api/v1/payments/mobile-money/callback", json=body)
        assert response.status_code == 503

        self.store.failures.clear()
        response = self.client.post("/api/v1/payments/mobile-money/callback", json=body)
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    def test_callback_cannot_reach_bank_transfer(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.submit_proof(offer["id"])

        response = self.client.post(
            "/api/v1/payments/mobile-money/callback",
            json={"transaction_id": "BT-001", "status": "success"}
        )

        assert response.status_code == 404
        assert self.orchestrator.engine.get_payment(payment["id"]).status is PaymentStatus.PENDING

    def test_callback_accepts_correlation_id_key(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.initiate(offer["id"]).json()

        response = self.client.post(
            "/api/v1/payments/mobile-money/callback",
            json={"correlationId": payment["transaction_id"], "status": "success"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    def test_callback_non_numeric_amount_is_bad_request(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.initiate(offer["id"]).json()

        response = self.client.post(
            "/api/v1/payments/mobile-money/callback",
            json={"transaction_id": payment["transaction_id"], "status": "SUCCESS", "amount": "abc"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_contended_callback_asks_for_redelivery(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.initiate(offer["id"]).json()
        self.store.contended.add(PAYMENTS)

        body = {"transaction_id": payment["transaction_id"], "status": "SUCCESS"}
        response = self.client.post("/api/v1/payments/mobile-money/callback", json=body)

        assert response.status_code == 503
        self.store.contended.clear()
        assert self.client.post("/api/v1/payments/mobile-money/callback", json=body).json()["status"] == "completed"

    def test_duplicate_callback_is_acknowledged(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.initiate(offer["id"]).json()
        body = {"transaction_id": payment["transaction_id"], "status": "SUCCESS"}

        first = self.client.post("/api/v1/payments/mobile-money/callback", json=body)
        late = self.client.post(
            "/api/v1/payments/mobile-money/callback",
            json={**body, "status": "FAILED"}
        )

        assert first.status_code == late.status_code == 200
        assert late.json()["status"] == "completed"


class TestAdminPaymentEndpoints(ApiTestCase):

    def test_verify_bank_transfer(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.submit_proof(offer["id"])
        assert payment["gateway_response"]["submission_method"] == "bank_transfer_manual"

        response = self.client.patch(
            f"/api/v1/admin/payments/{payment['id']}/verify",
            json={"admin_id": "ADM-001", "note": "funds cleared"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["gateway_response"]["admin_verification"]["verified_by"] == "ADM-001"

        again = self.client.patch(f"/api/v1/admin/payments/{payment['id']}/verify")
        assert again.status_code == 409
        assert "Only pending payments can be verified" in again.json()["detail"]

    def test_reject_without_body(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        payment = self.submit_proof(offer["id"])

        response = self.client.patch(f"/api/v1/admin/payments/{payment['id']}/reject")

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["gateway_response"]["admin_rejection"]["reason"] == "Payment proof rejected by admin"

    def test_unknown_payment(self):
        assert self.client.patch("/api/v1/admin/payments/missing/verify").status_code == 404

    def test_list_and_stats(self):
        offer = self.create_offer()
        self.approve(offer["id"])
        self.submit_proof(offer["id"])
        completed = self.submit_proof(offer["id"])
        self.client.patch(f"/api/v1/admin/payments/{completed['id']}/verify")

        pending = self.client.get("/api/v1/admin/payments", params={"status": "pending"}).json()
        assert len(pending) == 1

        stats = self.client.get("/api/v1/admin/payments/stats").json()
        assert stats["pending_count"] == 1
        assert stats["total_completed"] == 50000.00

# ============================================
# NOTIFICATIONS & OBSERVABILITY
# ============================================

class TestMiscEndpoints(ApiTestCase):

    @pytest.mark.parametrize("event", ["kyc_submitted", "phone_verified"])
    def test_account_events_notify(self, event):
        response = self.client.post(f"/api/v1/notifications/{event}", json={"user_id": "BUY-001"})

        assert response.status_code == 202
        assert self.notifier.to("buyer@example.com")
        assert self.notifier.to("ops@example.com")

    def test_unknown_event(self):
        response = self.client.post("/api/v1/notifications/offer_decided", json={"user_id": "BUY-001"})
        assert response.status_code == 404

    def test_health_reports_invariants(self):
        offer = self.create_offer()
        self.approve(offer["id"])

        response = self.client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["offers"]["approved"] == 1
        assert all(finding["holds"] for finding in body["invariants"])

    def test_metrics(self):
        self.create_offer()
        response = self.client.get("/metrics")
        assert response.status_code == 200
        assert "osw_offers_submitted_total" in response.text

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
