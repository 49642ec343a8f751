"""
Offer Settlement Workflow (OSW) - Payment Reconciliation Engine
Version: 1.0.0

The payment state machine. Every channel (processor callback, admin
verify/reject, failed initiation) funnels through here, and a payment
that has left `pending` is never written again.

Terminal writes are single-row compare-and-set operations conditioned on
`status = 'pending'`, so concurrent events for the same payment yield at
most one effective transition. Invoice settlement and the offer's
`approved -> paid` edge follow the payment write; notifications are
dispatched afterwards and cannot fail the transition.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from osw_enforcement_v1 import (
    InvalidState,
    InvoiceStatus,
    NotFound,
    OfferPaymentPlan,
    OfferStatus,
    PaymentMethod,
    PaymentStatus,
    StorageFailure,
    can_transition,
)
from osw_models_v1 import Invoice, Payment, PaymentOutcome
from osw_record_store_v1 import OFFERS, PAYMENTS, RecordStore
from osw_invoice_service_v1 import InvoiceIssuer
from osw_offer_service_v1 import OfferLifecycleController
from osw_notifications_v1 import NotificationEvent, NotificationFanout
from osw_metrics import (
    invoice_settlement_skipped_counter,
    payment_created_counter,
    payment_noop_counter,
    pending_payments_gauge,
    record_payment_transition,
)

logger = logging.getLogger("OSW.Reconcile")

DEFAULT_PAYMENT_REJECTION_REASON = "Payment proof rejected by admin"

# Concurrent blob merges while pending are retried; a status change is not.
MAX_CAS_ATTEMPTS = 3

NEAR_COMPLETION_RATIO = 0.8


class PaymentReconciliationEngine:
    """Applies channel outcomes and admin actions to payments."""

    def __init__(
        self,
        store: RecordStore,
        invoices: InvoiceIssuer,
        offers: OfferLifecycleController,
        fanout: NotificationFanout,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.invoices = invoices
        self.offers = offers
        self.fanout = fanout
        self.clock = clock

    # ============================================
    # PAYMENT RECORDS
    # ============================================

    def create_payment(self, payment: Payment) -> Payment:
        """Persist a new pending payment. Storage errors propagate."""
        if payment.status is not PaymentStatus.PENDING:
            raise InvalidState("Payments are created pending")
        # the offer must exist; NotFound surfaces to the caller
        self.store.get(OFFERS, payment.offer_id)
        self.store.insert(PAYMENTS, payment.to_dict())
        payment_created_counter.labels(payment_method=payment.payment_method.value).inc()
        logger.info(
            f"[RECONCILE] Payment {payment.id} created: ${payment.amount:,.2f} "
            f"via {payment.payment_method.value} for offer {payment.offer_id}"
        )
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        return Payment.from_dict(self.store.get(PAYMENTS, payment_id))

    def find_by_correlation(self, correlation_id: str) -> Payment:
        rows = self.store.query(
            PAYMENTS,
            {'transaction_id': correlation_id, 'payment_method': PaymentMethod.MOBILE_MONEY.value},
            order_by='created_at', descending=True, limit=1
        )
        if not rows:
            raise NotFound(f"No payment with correlation id {correlation_id}")
        return Payment.from_dict(rows[0])

    def record_channel_facts(self, payment_id: str, facts: Dict[str, Any]) -> bool:
        """Merge facts into a still-pending payment's response blob."""
        for _ in range(MAX_CAS_ATTEMPTS):
            payment = self.get_payment(payment_id)
            if payment.is_terminal:
                return False
            merged = {**payment.gateway_response, **facts}
            if self.store.compare_and_set(
                PAYMENTS, payment_id,
                {'status': PaymentStatus.PENDING.value, 'gateway_response': payment.gateway_response},
                {'gateway_response': merged, 'updated_at': self.clock().isoformat()}
            ):
                return True
        return False

    # ============================================
    # TRANSITIONS
    # ============================================

    def _transition(
        self,
        payment_id: str,
        target: PaymentStatus,
        facts: Dict[str, Any],
        source: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Payment]:
        """
        pending -> target. Returns the updated payment, or None if the payment
        was (or became) terminal before our write landed.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            payment = self.get_payment(payment_id)
            if not can_transition(payment.status, target):
                return None

            now = self.clock()
            patch: Dict[str, Any] = {
                'status': target.value,
                'gateway_response': {**payment.gateway_response, **facts},
                'updated_at': now.isoformat(),
            }
            if target is PaymentStatus.COMPLETED:
                patch['completed_at'] = now.isoformat()
            patch.update(fields or {})

            if self.store.compare_and_set(
                PAYMENTS, payment_id,
                {'status': PaymentStatus.PENDING.value, 'gateway_response': payment.gateway_response},
                patch
            ):
                record_payment_transition(target.value, source)
                logger.info(f"[RECONCILE] Payment {payment_id}: pending -> {target.value} ({source})")
                return self.get_payment(payment_id)
        return None

    def _after_lost_write(self, payment_id: str) -> Payment:
        """
        Re-read a payment whose terminal write did not land. Raises
        StorageFailure if it is still pending, since the event was neither
        applied nor superseded and must be retried.
        """
        current = self.get_payment(payment_id)
        if not current.is_terminal:
            logger.error(f"[RECONCILE] Payment {payment_id} kept changing while pending; write abandoned")
            raise StorageFailure(f"Payment {payment_id} is under concurrent update; retry")
        return current

    def apply_outcome(self, correlation_id: str, outcome: PaymentOutcome) -> Payment:
        """
        Apply a normalized channel outcome (mobile-money callback path).

        Only mobile-money payments are matched; bank transfers are resolved
        by admins alone. Unknown correlation ids raise NotFound. Outcomes for
        payments that are already terminal are ignored, which absorbs the
        processor's duplicate deliveries.
        """
        payment = self.find_by_correlation(correlation_id)

        if outcome.status is PaymentStatus.PENDING:
            payment_noop_counter.labels(reason="non_terminal_status").inc()
            logger.info(f"[RECONCILE] Callback for {correlation_id} is still pending; nothing to do")
            return payment

        if payment.is_terminal:
            return self._ignore_terminal(payment, outcome)

        facts = dict(outcome.channel_facts)
        if outcome.amount is not None and float(outcome.amount) != payment.amount:
            logger.warning(
                f"[RECONCILE] Callback amount {outcome.amount} differs from payment "
                f"{payment.id} amount {payment.amount}"
            )
            facts['reported_amount'] = outcome.amount

        fields = {'payment_reference': outcome.reference} if outcome.reference else None
        updated = self._transition(payment.id, outcome.status, facts, source="callback", fields=fields)
        if updated is None:
            return self._ignore_terminal(self._after_lost_write(payment.id), outcome, lost_race=True)

        if updated.status is PaymentStatus.COMPLETED:
            self._on_completed(updated)
            self._announce(updated, NotificationEvent.PAYMENT_VERIFIED)
        elif updated.status is PaymentStatus.FAILED:
            self._announce(updated, NotificationEvent.PAYMENT_FAILED)
        return updated

    def _ignore_terminal(self, payment: Payment, outcome: PaymentOutcome, lost_race: bool = False) -> Payment:
        payment_noop_counter.labels(reason="lost_race" if lost_race else "already_terminal").inc()
        logger.warning(
            f"[RECONCILE] Ignoring {outcome.status.value} for payment {payment.id}: "
            f"already {payment.status.value}"
        )
        if payment.status is PaymentStatus.COMPLETED and not lost_race:
            # redelivery after a settlement write failed; both follow-up writes are idempotent
            self._on_completed(payment)
        return payment

    def verify(self, payment_id: str, admin_id: Optional[str] = None, note: Optional[str] = None) -> Payment:
        """Admin confirms a pending payment on any channel."""
        payment = self.get_payment(payment_id)
        if payment.is_terminal:
            raise InvalidState(
                f"Payment is already {payment.status.value}. Only pending payments can be verified."
            )

        facts = {
            'admin_verification': {
                'verified_by': admin_id or 'admin',
                'verified_at': self.clock().isoformat(),
                'note': note,
            }
        }
        updated = self._transition(payment_id, PaymentStatus.COMPLETED, facts, source="admin")
        if updated is None:
            current = self._after_lost_write(payment_id)
            raise InvalidState(
                f"Payment is already {current.status.value}. Only pending payments can be verified."
            )

        self._on_completed(updated)
        self._announce(updated, NotificationEvent.PAYMENT_VERIFIED)
        return updated

    def reject(self, payment_id: str, admin_id: Optional[str] = None, reason: Optional[str] = None) -> Payment:
        """Admin refuses a pending payment. The invoice is left untouched."""
        payment = self.get_payment(payment_id)
        if payment.is_terminal:
            raise InvalidState(
                f"Payment is already {payment.status.value}. Only pending payments can be rejected."
            )

        facts = {
            'admin_rejection': {
                'rejected_by': admin_id or 'admin',
                'rejected_at': self.clock().isoformat(),
                'reason': reason or DEFAULT_PAYMENT_REJECTION_REASON,
            }
        }
        updated = self._transition(payment_id, PaymentStatus.FAILED, facts, source="admin")
        if updated is None:
            current = self._after_lost_write(payment_id)
            raise InvalidState(
                f"Payment is already {current.status.value}. Only pending payments can be rejected."
            )

        self._announce(updated, NotificationEvent.PAYMENT_REJECTED, reason=reason)
        return updated

    def fail_initiation(self, payment_id: str, error: str, timed_out: bool = False) -> Optional[Payment]:
        """Processor refused or timed out on initiate: the attempt is closed as failed."""
        facts = {
            'initiation_error': {
                'error': error,
                'timed_out': timed_out,
                'failed_at': self.clock().isoformat(),
            }
        }
        updated = self._transition(payment_id, PaymentStatus.FAILED, facts, source="initiation")
        if updated is not None:
            self._announce(updated, NotificationEvent.PAYMENT_FAILED, reason=error)
        return updated

    # ============================================
    # SETTLEMENT
    # ============================================

    def _on_completed(self, payment: Payment) -> None:
        self.settle_invoice(payment)
        self._maybe_mark_offer_paid(payment)

    def settle_invoice(self, payment: Payment) -> Optional[Invoice]:
        """
        Close the offer's latest invoice in full.

        One completed payment clears the whole invoice; amounts are not
        accumulated. A payment completing against an invoice that is already
        paid leaves it as it is.
        """
        if payment.status is not PaymentStatus.COMPLETED:
            raise InvalidState(f"Payment {payment.id} is {payment.status.value}; only completed payments settle")

        invoice = self.invoices.latest_for_offer(payment.offer_id)
        if invoice is None:
            invoice_settlement_skipped_counter.labels(reason="no_invoice").inc()
            logger.info(f"[RECONCILE] No invoice for offer {payment.offer_id}; nothing to settle")
            return None

        if invoice.status is InvoiceStatus.PAID:
            if invoice.settled_by_payment_id != payment.id:
                invoice_settlement_skipped_counter.labels(reason="already_paid").inc()
                logger.warning(
                    f"[RECONCILE] Invoice {invoice.invoice_number} already paid; "
                    f"payment {payment.id} recorded without settlement"
                )
            return invoice

        if not self.invoices.mark_paid(invoice, payment.id):
            invoice_settlement_skipped_counter.labels(reason="concurrent_update").inc()
            logger.warning(f"[RECONCILE] Invoice {invoice.invoice_number} changed during settlement")
        return self.invoices.get_invoice(invoice.id)

    def _maybe_mark_offer_paid(self, payment: Payment) -> None:
        try:
            offer = self.offers.get_offer(payment.offer_id)
        except NotFound:
            logger.warning(f"[RECONCILE] Payment {payment.id} references missing offer {payment.offer_id}")
            return

        if (
            offer.status is OfferStatus.APPROVED
            and offer.payment_method is OfferPaymentPlan.CASH
            and payment.amount >= offer.offer_price
        ):
            self.offers.mark_paid(offer.id)

    def _announce(self, payment: Payment, event: NotificationEvent, reason: Optional[str] = None) -> None:
        self.fanout.notify(event, {
            'buyer_id': payment.buyer_id,
            'offer_id': payment.offer_id,
            'payment_id': payment.id,
            'amount': payment.amount,
            'status': payment.status.value,
            'reason': reason,
        })

    # ============================================
    # ADMIN QUERIES
    # ============================================

    def list_payments(self, status: Optional[str] = None, offer_id: Optional[str] = None) -> List[Payment]:
        filter = {}
        if status:
            filter['status'] = status
        if offer_id:
            filter['offer_id'] = offer_id
        rows = self.store.query(PAYMENTS, filter, order_by='created_at', descending=True)
        return [Payment.from_dict(row) for row in rows]

    def payment_stats(self) -> Dict[str, Any]:
        """Summary figures for the admin payments dashboard."""
        payments = [Payment.from_dict(row) for row in self.store.query(PAYMENTS)]
        now = self.clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        completed = [p for p in payments if p.status is PaymentStatus.COMPLETED]

        pending_count = sum(1 for p in payments if p.status is PaymentStatus.PENDING)
        pending_payments_gauge.set(pending_count)

        paid_by_offer: Dict[str, float] = {}
        for p in completed:
            paid_by_offer[p.offer_id] = paid_by_offer.get(p.offer_id, 0.0) + p.amount

        near_completion = 0
        for offer_id, paid in paid_by_offer.items():
            try:
                offer_price = float(self.store.get(OFFERS, offer_id)['offer_price'])
            except NotFound:
                continue
            if offer_price > 0 and paid / offer_price >= NEAR_COMPLETION_RATIO:
                near_completion += 1

        return {
            'pending_count': pending_count,
            'completed_this_month': sum(
                p.amount for p in completed
                if (p.completed_at or p.updated_at or p.created_at) >= month_start
            ),
            'failed_count': sum(
                1 for p in payments if p.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED)
            ),
            'total_completed': sum(p.amount for p in completed),
            'buyers_near_completion': near_completion,
        }
