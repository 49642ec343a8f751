"""
Offer Settlement Workflow (OSW) - Invoice Issuer
Version: 1.0.0

Issues the invoice for an approved offer and performs the single write
that closes it once a payment completes.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import logging
import uuid

from osw_enforcement_v1 import (
    InvalidState,
    InvoiceStatus,
    NotFound,
    OfferPaymentPlan,
    OfferStatus,
    StorageFailure,
    WorkflowConfig,
)
from osw_models_v1 import Invoice, LineItem, Offer
from osw_record_store_v1 import INVOICES, PROFILES, PROPERTIES, RecordStore
from osw_metrics import invoice_amount_histogram, invoice_issued_counter, invoice_settled_counter

logger = logging.getLogger("OSW.Invoice")


def add_working_days(start: datetime, days: int) -> datetime:
    """Add N working days to start, skipping Saturdays and Sundays entirely."""
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


def generate_invoice_number(issued_at: datetime) -> str:
    return f"INV-{issued_at.year}-{uuid.uuid4().int % 1_000_000:06d}"


class InvoiceIssuer:
    """Creates invoices for approved offers."""

    def __init__(
        self,
        store: RecordStore,
        config: WorkflowConfig,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def issue_for(self, offer: Offer) -> Invoice:
        """
        Issue the invoice for an approved offer.

        Cash offers owe the full price, installment offers owe the deposit.
        If the store rejects the insert, an unpersisted invoice is returned
        instead of failing the approval that triggered it.
        """
        if offer.status is not OfferStatus.APPROVED:
            raise InvalidState(f"Offer {offer.id} is {offer.status.value}; only approved offers are invoiced")

        property_row = self._load_optional(PROPERTIES, offer.property_id)
        buyer_row = self._load_optional(PROFILES, offer.buyer_id)

        subtotal = offer.offer_price if offer.payment_method is OfferPaymentPlan.CASH else offer.deposit_amount
        taxes = 0.0
        total = subtotal + taxes
        issue_date = self.clock()
        invoice_number = generate_invoice_number(issue_date)
        property_title = property_row.get('title') or 'Property'

        invoice = Invoice(
            id=str(uuid.uuid4()),
            invoice_number=invoice_number,
            offer_id=offer.id,
            buyer_id=offer.buyer_id,
            property_id=offer.property_id,
            currency=property_row.get('currency') or self.config.default_currency,
            subtotal=subtotal,
            taxes=taxes,
            total=total,
            amount_due=total,
            status=InvoiceStatus.UNPAID,
            issue_date=issue_date,
            due_date=add_working_days(issue_date, self.config.invoice_validity_working_days),
            line_items=[LineItem(description=f"Deposit for {property_title}", quantity=1, unit_price=subtotal)],
            metadata=self._snapshot(offer, property_row, buyer_row),
        )

        logger.info(f"\n{'='*60}")
        logger.info(f"[INVOICE] Issuing {invoice.invoice_number} for offer {offer.offer_reference}")
        logger.info(f"  Plan: {offer.payment_method.value}")
        logger.info(f"  Total: ${total:,.2f} {invoice.currency}")
        logger.info(f"  Due: {invoice.due_date.date().isoformat()}")
        logger.info(f"{'='*60}\n")

        try:
            self.store.insert(INVOICES, invoice.to_dict())
        except StorageFailure as e:
            logger.error(f"❌ Failed to store invoice {invoice_number}: {e}; returning unsaved copy")
            invoice.id = f"unsaved-{invoice_number}"
            invoice.persisted = False

        invoice_issued_counter.labels(persisted=str(invoice.persisted).lower()).inc()
        invoice_amount_histogram.observe(total)
        return invoice

    def _load_optional(self, table: str, record_id: Optional[str]) -> Dict[str, Any]:
        if not record_id:
            return {}
        try:
            return self.store.get(table, record_id)
        except NotFound:
            return {}
        except StorageFailure as e:
            logger.warning(f"Snapshot source {table}/{record_id} unavailable: {e}")
            return {}

    @staticmethod
    def _snapshot(offer: Offer, property_row: Dict[str, Any], buyer_row: Dict[str, Any]) -> Dict[str, Any]:
        # Point-in-time copy; never refreshed from the source rows.
        address = ", ".join(
            part for part in (
                property_row.get('street_address'),
                property_row.get('suburb'),
                property_row.get('city'),
                property_row.get('country'),
            ) if part
        )
        buyer_name = f"{buyer_row.get('first_name') or ''} {buyer_row.get('last_name') or ''}".strip()
        return {
            'offer_reference': offer.offer_reference,
            'offer_price': offer.offer_price,
            'payment_method': offer.payment_method.value,
            'listing_type': 'Cash Sale' if offer.payment_method is OfferPaymentPlan.CASH else 'Installments',
            'estimated_timeline': offer.estimated_timeline,
            'property_title': property_row.get('title'),
            'property_address': address,
            'buyer_name': buyer_name,
            'buyer_email': buyer_row.get('email'),
            'buyer_phone': buyer_row.get('phone'),
            'buyer_uid': offer.buyer_id,
        }

    def latest_for_offer(self, offer_id: str) -> Optional[Invoice]:
        """Most recently issued invoice for the offer, if any."""
        rows = self.store.query(INVOICES, {'offer_id': offer_id}, order_by='issue_date', descending=True, limit=1)
        return Invoice.from_dict(rows[0]) if rows else None

    def get_invoice(self, invoice_id: str) -> Invoice:
        return Invoice.from_dict(self.store.get(INVOICES, invoice_id))

    def mark_paid(self, invoice: Invoice, payment_id: str) -> bool:
        """
        Close the invoice in full. Returns False if it changed underneath us
        (already paid or amount_due moved).
        """
        if invoice.status is InvoiceStatus.PAID:
            return False

        swapped = self.store.compare_and_set(
            INVOICES,
            invoice.id,
            expected={'status': invoice.status.value, 'amount_due': invoice.amount_due},
            patch={
                'status': InvoiceStatus.PAID.value,
                'amount_due': 0.0,
                'paid_at': self.clock().isoformat(),
                'settled_by_payment_id': payment_id,
            }
        )
        if swapped:
            invoice_settled_counter.inc()
            logger.info(f"[INVOICE] ✅ {invoice.invoice_number} paid by payment {payment_id}")
        return swapped
