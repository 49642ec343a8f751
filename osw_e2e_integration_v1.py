"""
Offer Settlement Workflow (OSW) - End-to-End Integration
Version: 1.0.0

Wires every OSW service together and walks the main flows:
Offer Submission → Admin Approval → Invoice → Payment → Settlement
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
import json

import httpx

from osw_enforcement_v1 import (
    ExternalChannelFailure,
    InvalidState,
    InvariantAuditor,
    WorkflowConfig,
    logger,
)
from osw_models_v1 import OfferDraft
from osw_record_store_v1 import PROFILES, PROPERTIES, InMemoryRecordStore, RecordStore
from osw_notifications_v1 import (
    AdminRecipientResolver,
    BackgroundDispatcher,
    Dispatcher,
    HttpEmailNotifier,
    InlineDispatcher,
    LoggingNotifier,
    NotificationEvent,
    NotificationFanout,
    Notifier,
)
from osw_invoice_service_v1 import InvoiceIssuer
from osw_offer_service_v1 import OfferLifecycleController
from osw_reconciliation_engine_v1 import PaymentReconciliationEngine
from osw_payment_channels_v1 import (
    BankTransferManualAdapter,
    MobileMoneyProcessorClient,
    MobileMoneyPushAdapter,
)

# ============================================
# ORCHESTRATOR
# ============================================

class OfferSettlementOrchestrator:
    """Builds and holds one instance of every OSW service."""

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        store: Optional[RecordStore] = None,
        notifier: Optional[Notifier] = None,
        processor: Optional[MobileMoneyProcessorClient] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config or WorkflowConfig.from_env()
        self.store = store or InMemoryRecordStore()
        self.notifier = notifier or self._default_notifier(self.config)
        self.processor = processor or MobileMoneyProcessorClient.from_config(self.config)
        self.dispatcher = dispatcher or BackgroundDispatcher(max_workers=self.config.notification_workers)

        self.admin_recipients = AdminRecipientResolver(self.config.default_admin_emails, store=self.store)
        self.fanout = NotificationFanout(self.store, self.notifier, self.admin_recipients, self.dispatcher)

        self.invoices = InvoiceIssuer(self.store, self.config, clock=clock)
        self.offers = OfferLifecycleController(self.store, self.invoices, self.fanout, clock=clock)
        self.engine = PaymentReconciliationEngine(self.store, self.invoices, self.offers, self.fanout, clock=clock)

        self.mobile_money = MobileMoneyPushAdapter(self.engine, self.processor, self.fanout, self.config, clock=clock)
        self.bank_transfer = BankTransferManualAdapter(self.engine, self.fanout, self.config, clock=clock)

        self.auditor = InvariantAuditor(self.store)

        logger.info(
            f"[ORCHESTRATOR] Offer settlement workflow initialized "
            f"(processor={self.config.mobile_money_environment}, notifier={type(self.notifier).__name__})"
        )

    @staticmethod
    def _default_notifier(config: WorkflowConfig) -> Notifier:
        if config.email_api_url and config.email_api_key:
            return HttpEmailNotifier(config.email_api_url, config.email_api_key, config.email_sender)
        return LoggingNotifier()

    def announce(self, event: NotificationEvent, user_id: str, **context) -> None:
        """Account-level events (KYC, phone verification) that only notify."""
        self.fanout.notify(event, {'buyer_id': user_id, **context})

    def get_system_health(self) -> Dict[str, Any]:
        findings = self.auditor.audit()
        return {
            'offers': self.offers.offer_stats(),
            'payments': self.engine.payment_stats(),
            'invariants': [finding.to_dict() for finding in findings],
            'invariants_hold': all(finding.holds for finding in findings),
        }

    def shutdown(self) -> None:
        self.dispatcher.shutdown(wait=True)
        self.processor.close()
        close = getattr(self.notifier, 'close', None)
        if close:
            close()

# ============================================
# COMPLETE DEMONSTRATION
# ============================================

def _demo_processor(config: WorkflowConfig) -> MobileMoneyProcessorClient:
    """Processor stub: accepts every push except amounts ending in .13, which it refuses."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if str(body['amount']).endswith('.13'):
            return httpx.Response(402, json={'message': 'insufficient funds'})
        return httpx.Response(200, json={'sourceReference': body['sourceReference']})

    return MobileMoneyProcessorClient(
        base_url=config.mobile_money_base_url,
        api_key="demo-key",
        merchant_id="demo-merchant",
        environment="sandbox",
        timeout_seconds=config.mobile_money_timeout_seconds,
        transport=httpx.MockTransport(handler),
    )


def demonstrate_workflow():
    """Walk the cash, installment, failure and duplicate-callback flows."""

    print("\n" + "="*80)
    print("OFFER SETTLEMENT WORKFLOW - COMPLETE SYSTEM DEMONSTRATION")
    print("="*80 + "\n")

    config = WorkflowConfig()
    orchestrator = OfferSettlementOrchestrator(
        config=config,
        processor=_demo_processor(config),
        dispatcher=InlineDispatcher(),
    )
    store = orchestrator.store
    store.insert(PROFILES, {'id': 'BUY-001', 'first_name': 'Tariro', 'email': 'tariro@example.com', 'user_role': 'buyer'})
    store.insert(PROFILES, {'id': 'ADM-001', 'first_name': 'Admin', 'email': 'ops@example.com', 'user_role': 'admin'})
    store.insert(PROPERTIES, {'id': 'PROP-001', 'title': '3 Bed House, Borrowdale', 'city': 'Harare', 'currency': 'USD'})

    # ===== SCENARIO A: Cash offer settled by mobile money =====
    print("\n" + "█"*80)
    print("SCENARIO A: Cash offer, mobile-money payment")
    print("█"*80)

    offer = orchestrator.offers.submit_offer(OfferDraft(
        property_id='PROP-001', buyer_id='BUY-001', offer_price=50_000.00,
        payment_method='cash', estimated_timeline='ready_to_pay_in_full'
    ))
    decision = orchestrator.offers.decide(offer.id, 'approve', reviewer='ADM-001')
    print(f"\n✅ Offer {offer.offer_reference} approved; invoice {decision.invoice.invoice_number} "
          f"for ${decision.invoice.total:,.2f}")

    payment = orchestrator.mobile_money.initiate(offer.id, 'BUY-001', '0771234567', 50_000.00)
    payment = orchestrator.mobile_money.handle_callback({
        'transaction_id': payment.transaction_id, 'status': 'SUCCESS', 'amount': 50_000.00,
        'reference': 'EC-778812'
    })
    invoice = orchestrator.invoices.latest_for_offer(offer.id)
    print(f"✅ Payment {payment.id}: {payment.status.value}")
    print(f"   Invoice: {invoice.status.value}, due ${invoice.amount_due:,.2f}")
    print(f"   Offer: {orchestrator.offers.get_offer(offer.id).status.value}")

    # ===== SCENARIO B: Installment deposit via bank transfer =====
    print("\n" + "█"*80)
    print("SCENARIO B: Installment offer, bank-transfer deposit verified by admin")
    print("█"*80)

    offer_b = orchestrator.offers.submit_offer(OfferDraft(
        property_id='PROP-001', buyer_id='BUY-001', offer_price=80_000.00,
        deposit_amount=8_000.00, payment_method='installments', estimated_timeline='12_months'
    ))
    decision_b = orchestrator.offers.decide(offer_b.id, 'approve', reviewer='ADM-001')
    proof = orchestrator.bank_transfer.submit_proof(
        offer_b.id, 'BUY-001', 8_000.00, 'https://files.example.com/proof-001.pdf',
        transfer_reference='BT-20240611-01'
    )
    verified = orchestrator.engine.verify(proof.id, admin_id='ADM-001')
    invoice_b = orchestrator.invoices.get_invoice(decision_b.invoice.id)
    print(f"\n✅ Deposit {verified.id}: {verified.status.value}")
    print(f"   Invoice: {invoice_b.status.value}")
    print(f"   Offer stays: {orchestrator.offers.get_offer(offer_b.id).status.value}")

    # ===== SCENARIO C: Processor refuses initiation =====
    print("\n" + "█"*80)
    print("SCENARIO C: Processor refuses the push (should fail cleanly)")
    print("█"*80)

    try:
        orchestrator.mobile_money.initiate(offer_b.id, 'BUY-001', '0771234567', 1_000.13)
        print("\n❌ SCENARIO C FAILED: initiation was accepted\n")
    except ExternalChannelFailure as e:
        failed = orchestrator.engine.list_payments(status='failed', offer_id=offer_b.id)
        print(f"\n✅ SCENARIO C PASSED: {e}")
        print(f"   Failed attempts kept for audit: {len(failed)}")

    # ===== SCENARIO D: Late and duplicate callbacks =====
    print("\n" + "█"*80)
    print("SCENARIO D: Duplicate FAILED callback after completion (should be ignored)")
    print("█"*80)

    replay = orchestrator.mobile_money.handle_callback({
        'transaction_id': payment.transaction_id, 'status': 'FAILED', 'amount': 50_000.00
    })
    print(f"\n✅ Payment {replay.id} still {replay.status.value}")

    try:
        orchestrator.engine.reject(payment.id, admin_id='ADM-001')
        print("❌ Admin rejected a completed payment")
    except InvalidState as e:
        print(f"✅ Admin reject refused: {e}")

    # ===== SYSTEM HEALTH REPORT =====
    print("\n" + "="*80)
    print("SYSTEM HEALTH REPORT")
    print("="*80)

    health = orchestrator.get_system_health()
    print(f"\nOffers: {health['offers']}")
    print(f"Payments: {health['payments']}")
    print(f"\nInvariants:")
    for finding in health['invariants']:
        print(f"  {finding['invariant_id']}: {'✅' if finding['holds'] else '❌'}")

    orchestrator.shutdown()
    print("\n" + "="*80)
    print("DEMONSTRATION COMPLETE")
    print("="*80 + "\n")


if __name__ == "__main__":
    demonstrate_workflow()
