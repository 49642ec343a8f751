"""
Offer Settlement Workflow (OSW) - Offer Lifecycle Controller
Version: 1.0.0

Records buyer offers and applies admin decisions. Approval issues the
invoice before the decision returns.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union
import logging
import re
import uuid

from osw_enforcement_v1 import (
    Decision,
    InvalidState,
    OfferPaymentPlan,
    OfferStatus,
    ValidationError,
    can_transition,
)
from osw_models_v1 import Invoice, Offer, OfferDraft
from osw_record_store_v1 import OFFERS, RecordStore
from osw_invoice_service_v1 import InvoiceIssuer
from osw_notifications_v1 import NotificationEvent, NotificationFanout
from osw_metrics import offer_decided_counter, offer_paid_counter, offer_submitted_counter

logger = logging.getLogger("OSW.Offer")

DEFAULT_REJECTION_REASON = "Offer was rejected"


def calculate_offer_expiry(timeline: str, now: datetime) -> datetime:
    """Cash-ready offers lapse in 3 days, N-month plans in N weeks (max 30 days), others in 7."""
    days = 7
    if timeline == "ready_to_pay_in_full":
        days = 3
    else:
        match = re.fullmatch(r"(\d+)_months", timeline or "")
        if match:
            days = min(int(match.group(1)) * 7, 30)
    return now + timedelta(days=days)


def generate_offer_reference(now: datetime) -> str:
    return f"OFR-{now.year}-{uuid.uuid4().hex[:6].upper()}"


@dataclass
class DecisionResult:
    offer: Offer
    invoice: Optional[Invoice] = None


class OfferLifecycleController:
    """Owns pending -> approved/rejected and approved -> paid."""

    def __init__(
        self,
        store: RecordStore,
        invoices: InvoiceIssuer,
        fanout: NotificationFanout,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.invoices = invoices
        self.fanout = fanout
        self.clock = clock

    # ----- submission -----

    def submit_offer(self, draft: OfferDraft) -> Offer:
        """Record a new pending offer and tell the buyer and admins about it."""
        if not draft.property_id or not draft.buyer_id:
            raise ValidationError("property_id and buyer_id are required")
        if draft.offer_price is None or draft.offer_price <= 0:
            raise ValidationError("offer_price must be positive")

        plan = OfferPaymentPlan.parse(draft.payment_method)
        deposit = float(draft.deposit_amount or 0)
        if plan is OfferPaymentPlan.INSTALLMENT and deposit <= 0:
            raise ValidationError("installment offers require a positive deposit_amount")
        if deposit < 0 or deposit > draft.offer_price:
            raise ValidationError("deposit_amount must be between 0 and offer_price")

        now = self.clock()
        offer = Offer(
            id=str(uuid.uuid4()),
            property_id=draft.property_id,
            buyer_id=draft.buyer_id,
            seller_id=draft.seller_id,
            offer_reference=generate_offer_reference(now),
            offer_price=float(draft.offer_price),
            deposit_amount=deposit,
            payment_method=plan,
            status=OfferStatus.PENDING,
            estimated_timeline=draft.estimated_timeline,
            additional_notes=draft.additional_notes,
            submitted_at=now,
            expires_at=calculate_offer_expiry(draft.estimated_timeline, now),
            updated_at=now,
        )

        self.store.insert(OFFERS, offer.to_dict())
        offer_submitted_counter.labels(payment_method=plan.value).inc()
        logger.info(f"[OFFER] Submitted {offer.offer_reference}: ${offer.offer_price:,.2f} ({plan.value})")

        self.fanout.notify(NotificationEvent.OFFER_SUBMITTED, {
            'buyer_id': offer.buyer_id,
            'offer_id': offer.id,
            'offer_reference': offer.offer_reference,
            'amount': offer.offer_price,
        })
        return offer

    # ----- decision -----

    def decide(
        self,
        offer_id: str,
        decision: Union[Decision, str],
        reviewer: Optional[str] = None,
        rejection_reason: Optional[str] = None
    ) -> DecisionResult:
        """
        Approve or reject a pending offer.

        The status write is conditional on the offer still being pending, so
        two admins racing on the same offer produce one decision and one
        InvalidState. Approval issues the invoice before returning.
        """
        if isinstance(decision, str):
            decision = Decision.parse(decision)

        offer = self.get_offer(offer_id)
        target = OfferStatus(decision.value)
        if not can_transition(offer.status, target):
            raise InvalidState(f"Offer {offer.offer_reference} is already {offer.status.value}")

        now = self.clock()
        patch: Dict[str, object] = {
            'status': target.value,
            'admin_reviewed_by': reviewer,
            'admin_reviewed_at': now.isoformat(),
            'updated_at': now.isoformat(),
        }
        if decision is Decision.REJECT:
            patch['rejection_reason'] = rejection_reason or DEFAULT_REJECTION_REASON

        if not self.store.compare_and_set(OFFERS, offer.id, {'status': OfferStatus.PENDING.value}, patch):
            raise InvalidState(f"Offer {offer.offer_reference} was decided concurrently")

        offer = self.get_offer(offer_id)
        offer_decided_counter.labels(decision=target.value).inc()
        logger.info(f"[OFFER] {offer.offer_reference} {target.value} by {reviewer or 'admin'}")

        invoice = None
        if decision is Decision.APPROVE:
            invoice = self.invoices.issue_for(offer)

        self.fanout.notify(NotificationEvent.OFFER_DECIDED, {
            'buyer_id': offer.buyer_id,
            'offer_id': offer.id,
            'offer_reference': offer.offer_reference,
            'decision': target.value,
            'reason': offer.rejection_reason,
            'invoice_id': invoice.id if invoice else None,
        })
        return DecisionResult(offer=offer, invoice=invoice)

    def mark_paid(self, offer_id: str) -> bool:
        """approved -> paid. Returns False if the offer is not currently approved."""
        now = self.clock().isoformat()
        swapped = self.store.compare_and_set(
            OFFERS,
            offer_id,
            {'status': OfferStatus.APPROVED.value},
            {'status': OfferStatus.PAID.value, 'updated_at': now}
        )
        if swapped:
            offer_paid_counter.inc()
            logger.info(f"[OFFER] {offer_id} fully paid")
        return swapped

    # ----- queries -----

    def get_offer(self, offer_id: str) -> Offer:
        return Offer.from_dict(self.store.get(OFFERS, offer_id))

    def list_offers(self, status: Optional[str] = None, buyer_id: Optional[str] = None) -> List[Offer]:
        filter = {}
        if status:
            filter['status'] = status
        if buyer_id:
            filter['buyer_id'] = buyer_id
        rows = self.store.query(OFFERS, filter, order_by='submitted_at', descending=True)
        return [Offer.from_dict(row) for row in rows]

    def offer_stats(self) -> Dict[str, int]:
        rows = self.store.query(OFFERS)
        stats = {'total': len(rows)}
        for status in OfferStatus:
            stats[status.value] = sum(1 for row in rows if row.get('status') == status.value)
        return stats
