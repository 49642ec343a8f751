"""
Offer Settlement Workflow - FastAPI Application
HTTP surface for offers, invoices, payments and notifications
"""

from fastapi import FastAPI, Body, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging
from contextlib import asynccontextmanager

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from osw_enforcement_v1 import (
    ExternalChannelFailure,
    InvalidState,
    NotFound,
    StorageFailure,
    ValidationError,
    WorkflowError,
)
from osw_models_v1 import Invoice, Offer, OfferDraft, Payment
from osw_notifications_v1 import NotificationEvent
from osw_e2e_integration_v1 import OfferSettlementOrchestrator
from osw_metrics import metrics_registry, update_invariant_health

logger = logging.getLogger("OSW.API")

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class OfferCreateRequest(BaseModel):
    property_id: str = Field(..., min_length=1)
    buyer_id: str = Field(..., min_length=1)
    offer_price: float = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1)
    deposit_amount: float = Field(0.0, ge=0)
    seller_id: Optional[str] = None
    estimated_timeline: str = ""
    additional_notes: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "property_id": "PROP-001",
                "buyer_id": "BUY-001",
                "offer_price": 80000.00,
                "payment_method": "installments",
                "deposit_amount": 8000.00,
                "estimated_timeline": "12_months"
            }
        }

class OfferDecisionRequest(BaseModel):
    status: str = Field(..., description="approved or rejected")
    admin_id: Optional[str] = None
    rejection_reason: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "status": "rejected",
                "admin_id": "ADM-001",
                "rejection_reason": "Offer below valuation"
            }
        }

class OfferResponse(BaseModel):
    id: str
    offer_reference: str
    property_id: str
    buyer_id: str
    seller_id: Optional[str] = None
    offer_price: float
    deposit_amount: float
    payment_method: str
    status: str
    estimated_timeline: str
    additional_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    admin_reviewed_by: Optional[str] = None
    admin_reviewed_at: Optional[str] = None
    submitted_at: Optional[str] = None
    expires_at: Optional[str] = None
    updated_at: Optional[str] = None

class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    offer_id: str
    buyer_id: str
    property_id: Optional[str] = None
    currency: str
    subtotal: float
    taxes: float
    total: float
    amount_due: float
    status: str
    issue_date: str
    due_date: str
    line_items: List[Dict[str, Any]]
    metadata: Dict[str, Any]
    paid_at: Optional[str] = None
    settled_by_payment_id: Optional[str] = None
    persisted: bool = True

class OfferDecisionResponse(BaseModel):
    offer: OfferResponse
    invoice: Optional[InvoiceResponse] = None

class PaymentResponse(BaseModel):
    id: str
    offer_id: str
    buyer_id: str
    payment_method: str
    amount: float
    currency: str
    status: str
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    phone_number: Optional[str] = None
    gateway_response: Dict[str, Any]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

class MobileMoneyInitiateRequest(BaseModel):
    offer_id: str = Field(..., min_length=1)
    buyer_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=9)
    amount: float = Field(..., gt=0)

    class Config:
        json_schema_extra = {
            "example": {
                "offer_id": "6b1f0f9e-4c1e-4d0c-9a53-2c8a3f1d2b10",
                "buyer_id": "BUY-001",
                "phone_number": "0771234567",
                "amount": 8000.00
            }
        }

class BankTransferSubmitRequest(BaseModel):
    offer_id: str = Field(..., min_length=1)
    buyer_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    proof_url: str = Field(..., min_length=1)
    transfer_reference: Optional[str] = None
    transfer_notes: Optional[str] = None

class PaymentVerifyRequest(BaseModel):
    admin_id: Optional[str] = None
    note: Optional[str] = None

class PaymentRejectRequest(BaseModel):
    admin_id: Optional[str] = None
    reason: Optional[str] = None

class AccountEventRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)

class HealthResponse(BaseModel):
    status: str
    version: str
    offers: Dict[str, int]
    payments: Dict[str, Any]
    invariants: List[Dict[str, Any]]


def _offer_response(offer: Offer) -> OfferResponse:
    return OfferResponse(**offer.to_dict())

def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(**invoice.to_dict(), persisted=invoice.persisted)

def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(**payment.to_dict())

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state. The orchestrator is built on first use."""
    def __init__(self):
        self._orchestrator: Optional[OfferSettlementOrchestrator] = None

    @property
    def orchestrator(self) -> OfferSettlementOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = OfferSettlementOrchestrator()
        return self._orchestrator

    def close(self):
        if self._orchestrator is not None:
            self._orchestrator.shutdown()
            self._orchestrator = None

app_state = AppState()


def get_orchestrator() -> OfferSettlementOrchestrator:
    return app_state.orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("🚀 Offer Settlement Workflow starting...")
    yield
    logger.info("🛑 Offer Settlement Workflow shutting down...")
    app_state.close()

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="Offer Settlement Workflow",
    description="Offer approval, invoicing and payment reconciliation for property sales",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "Offer Settlement Workflow",
        "version": "1.0.0",
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)):
    """System health check, including a full invariant audit."""
    findings = orchestrator.auditor.audit()
    update_invariant_health(findings)

    return HealthResponse(
        status="healthy" if all(f.holds for f in findings) else "degraded",
        version="1.0.0",
        offers=orchestrator.offers.offer_stats(),
        payments=orchestrator.engine.payment_stats(),
        invariants=[f.to_dict() for f in findings]
    )

# ----- offers -----

@app.post("/api/v1/offers", response_model=OfferResponse, status_code=status.HTTP_201_CREATED, tags=["Offers"])
async def submit_offer(
    request: OfferCreateRequest,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    """Submit a new offer. It starts pending and awaits admin review."""
    offer = orchestrator.offers.submit_offer(OfferDraft(**request.model_dump()))
    return _offer_response(offer)

@app.get("/api/v1/offers/stats", tags=["Offers"])
async def offer_stats(orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)):
    return orchestrator.offers.offer_stats()

@app.get("/api/v1/offers", response_model=List[OfferResponse], tags=["Offers"])
async def list_offers(
    status: Optional[str] = None,
    buyer_id: Optional[str] = None,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    return [_offer_response(o) for o in orchestrator.offers.list_offers(status=status, buyer_id=buyer_id)]

@app.get("/api/v1/offers/{offer_id}", response_model=OfferResponse, tags=["Offers"])
async def get_offer(offer_id: str, orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)):
    return _offer_response(orchestrator.offers.get_offer(offer_id))

@app.get("/api/v1/offers/{offer_id}/invoice", response_model=InvoiceResponse, tags=["Invoices"])
async def get_offer_invoice(offer_id: str, orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)):
    """Latest invoice issued for the offer."""
    invoice = orchestrator.invoices.latest_for_offer(offer_id)
    if invoice is None:
        raise NotFound(f"No invoice for offer {offer_id}")
    return _invoice_response(invoice)

@app.patch("/api/v1/admin/offers/{offer_id}", response_model=OfferDecisionResponse, tags=["Admin"])
async def decide_offer(
    offer_id: str,
    request: OfferDecisionRequest,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    """
    Approve or reject a pending offer.

    Approval issues the invoice before responding. Deciding an offer that
    is no longer pending returns 409.
    """
    result = orchestrator.offers.decide(
        offer_id,
        request.status,
        reviewer=request.admin_id,
        rejection_reason=request.rejection_reason
    )
    return OfferDecisionResponse(
        offer=_offer_response(result.offer),
        invoice=_invoice_response(result.invoice) if result.invoice else None
    )

# ----- payments -----

@app.post(
    "/api/v1/payments/mobile-money/initiate",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"]
)
def initiate_mobile_money(
    request: MobileMoneyInitiateRequest,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    """Start a push payment. Plain def: the processor call blocks, so it runs in the threadpool."""
    payment = orchestrator.mobile_money.initiate(
        request.offer_id, request.buyer_id, request.phone_number, request.amount
    )
    return _payment_response(payment)

@app.post("/api/v1/payments/mobile-money/callback", tags=["Payments"])
async def mobile_money_callback(
    payload: Dict[str, Any] = Body(...),
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    """
    Processor callback.

    Answers 200 for anything that was applied or safely ignored. Storage
    errors answer 503 so the processor redelivers.
    """
    payment = orchestrator.mobile_money.handle_callback(payload)
    return {
        "success": True,
        "payment_id": payment.id,
        "status": payment.status.value
    }

@app.post(
    "/api/v1/payments/bank-transfer/submit",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"]
)
async def submit_bank_transfer(
    request: BankTransferSubmitRequest,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    payment = orchestrator.bank_transfer.submit_proof(
        request.offer_id,
        request.buyer_id,
        request.amount,
        request.proof_url,
        transfer_reference=request.transfer_reference,
        transfer_notes=request.transfer_notes
    )
    return _payment_response(payment)

@app.patch("/api/v1/admin/payments/{payment_id}/verify", response_model=PaymentResponse, tags=["Admin"])
async def verify_payment(
    payment_id: str,
    request: Optional[PaymentVerifyRequest] = None,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    request = request or PaymentVerifyRequest()
    payment = orchestrator.engine.verify(payment_id, admin_id=request.admin_id, note=request.note)
    return _payment_response(payment)

@app.patch("/api/v1/admin/payments/{payment_id}/reject", response_model=PaymentResponse, tags=["Admin"])
async def reject_payment(
    payment_id: str,
    request: Optional[PaymentRejectRequest] = None,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    request = request or PaymentRejectRequest()
    payment = orchestrator.engine.reject(payment_id, admin_id=request.admin_id, reason=request.reason)
    return _payment_response(payment)

@app.get("/api/v1/admin/payments/stats", tags=["Admin"])
async def payment_stats(orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)):
    return orchestrator.engine.payment_stats()

@app.get("/api/v1/admin/payments", response_model=List[PaymentResponse], tags=["Admin"])
async def list_payments(
    status: Optional[str] = None,
    offer_id: Optional[str] = None,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    return [_payment_response(p) for p in orchestrator.engine.list_payments(status=status, offer_id=offer_id)]

# ----- account notifications -----

ACCOUNT_EVENTS = {
    NotificationEvent.KYC_SUBMITTED.value: NotificationEvent.KYC_SUBMITTED,
    NotificationEvent.PHONE_VERIFIED.value: NotificationEvent.PHONE_VERIFIED,
}

@app.post("/api/v1/notifications/{event}", status_code=status.HTTP_202_ACCEPTED, tags=["Notifications"])
async def account_notification(
    event: str,
    request: AccountEventRequest,
    orchestrator: OfferSettlementOrchestrator = Depends(get_orchestrator)
):
    """Queue a notification for an account event. Delivery is not awaited."""
    if event not in ACCOUNT_EVENTS:
        raise NotFound(f"Unknown notification event: {event}")
    orchestrator.announce(ACCOUNT_EVENTS[event], request.user_id, **request.context)
    return {"queued": True, "event": event}

# ----- observability -----

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ERROR HANDLERS
# ============================================

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidState: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ExternalChannelFailure: status.HTTP_502_BAD_GATEWAY,
    StorageFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request, exc: WorkflowError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} refused: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "osw_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
