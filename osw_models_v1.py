"""
Offer Settlement Workflow (OSW) - Data Models
Version: 1.0.0

Offer, Invoice, Payment and Notification entities plus the canonical
PaymentOutcome every channel adapter produces. Records are persisted as
plain dicts; these dataclasses convert to and from that row shape.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from osw_enforcement_v1 import (
    InvoiceStatus,
    OfferPaymentPlan,
    OfferStatus,
    PaymentMethod,
    PaymentStatus,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)

# ============================================
# OFFER
# ============================================

@dataclass
class OfferDraft:
    """What a buyer submits."""
    property_id: str
    buyer_id: str
    offer_price: float
    payment_method: str
    deposit_amount: float = 0.0
    seller_id: Optional[str] = None
    estimated_timeline: str = ""
    additional_notes: Optional[str] = None


@dataclass
class Offer:
    """A buyer's proposal to purchase a property."""
    id: str
    property_id: str
    buyer_id: str
    offer_reference: str
    offer_price: float
    deposit_amount: float
    payment_method: OfferPaymentPlan
    status: OfferStatus = OfferStatus.PENDING
    seller_id: Optional[str] = None
    estimated_timeline: str = ""
    additional_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    admin_reviewed_by: Optional[str] = None
    admin_reviewed_at: Optional[datetime] = None
    submitted_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'property_id': self.property_id,
            'buyer_id': self.buyer_id,
            'seller_id': self.seller_id,
            'offer_reference': self.offer_reference,
            'offer_price': self.offer_price,
            'deposit_amount': self.deposit_amount,
            'payment_method': self.payment_method.value,
            'status': self.status.value,
            'estimated_timeline': self.estimated_timeline,
            'additional_notes': self.additional_notes,
            'rejection_reason': self.rejection_reason,
            'admin_reviewed_by': self.admin_reviewed_by,
            'admin_reviewed_at': _iso(self.admin_reviewed_at),
            'submitted_at': _iso(self.submitted_at),
            'expires_at': _iso(self.expires_at),
            'updated_at': _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Offer":
        return cls(
            id=row['id'],
            property_id=row['property_id'],
            buyer_id=row['buyer_id'],
            seller_id=row.get('seller_id'),
            offer_reference=row.get('offer_reference') or row['id'],
            offer_price=float(row['offer_price']),
            deposit_amount=float(row.get('deposit_amount') or 0),
            payment_method=OfferPaymentPlan.parse(row['payment_method']),
            status=OfferStatus(row['status']),
            estimated_timeline=row.get('estimated_timeline') or "",
            additional_notes=row.get('additional_notes'),
            rejection_reason=row.get('rejection_reason'),
            admin_reviewed_by=row.get('admin_reviewed_by'),
            admin_reviewed_at=_parse_dt(row.get('admin_reviewed_at')),
            submitted_at=_parse_dt(row.get('submitted_at')) or datetime.now(),
            expires_at=_parse_dt(row.get('expires_at')),
            updated_at=_parse_dt(row.get('updated_at')),
        )

# ============================================
# INVOICE
# ============================================

@dataclass
class LineItem:
    """Individual line item in an invoice."""
    description: str
    quantity: int
    unit_price: float

    @property
    def amount(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict:
        return {
            'description': self.description,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'total': self.amount
        }


@dataclass
class Invoice:
    """Amount owed against an approved offer."""
    id: str
    invoice_number: str
    offer_id: str
    buyer_id: str
    property_id: str
    currency: str
    subtotal: float
    taxes: float
    total: float
    amount_due: float
    issue_date: datetime
    due_date: datetime
    line_items: List[LineItem]
    metadata: Dict[str, Any]
    status: InvoiceStatus = InvoiceStatus.UNPAID
    paid_at: Optional[datetime] = None
    settled_by_payment_id: Optional[str] = None

    # False when the store refused the insert and this is an in-memory stand-in
    persisted: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'invoice_number': self.invoice_number,
            'offer_id': self.offer_id,
            'buyer_id': self.buyer_id,
            'property_id': self.property_id,
            'currency': self.currency,
            'subtotal': self.subtotal,
            'taxes': self.taxes,
            'total': self.total,
            'amount_due': self.amount_due,
            'status': self.status.value,
            'issue_date': _iso(self.issue_date),
            'due_date': _iso(self.due_date),
            'line_items': [item.to_dict() for item in self.line_items],
            'metadata': dict(self.metadata),
            'paid_at': _iso(self.paid_at),
            'settled_by_payment_id': self.settled_by_payment_id,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Invoice":
        return cls(
            id=row['id'],
            invoice_number=row['invoice_number'],
            offer_id=row['offer_id'],
            buyer_id=row['buyer_id'],
            property_id=row.get('property_id'),
            currency=row['currency'],
            subtotal=float(row['subtotal']),
            taxes=float(row.get('taxes') or 0),
            total=float(row['total']),
            amount_due=float(row['amount_due']),
            status=InvoiceStatus(row['status']),
            issue_date=_parse_dt(row['issue_date']),
            due_date=_parse_dt(row['due_date']),
            line_items=[
                LineItem(
                    description=item['description'],
                    quantity=int(item['quantity']),
                    unit_price=float(item['unit_price'])
                )
                for item in row.get('line_items', [])
            ],
            metadata=dict(row.get('metadata') or {}),
            paid_at=_parse_dt(row.get('paid_at')),
            settled_by_payment_id=row.get('settled_by_payment_id'),
        )

# ============================================
# PAYMENT
# ============================================

@dataclass
class Payment:
    """One attempt, via one channel, to settle an invoice."""
    id: str
    offer_id: str
    buyer_id: str
    payment_method: PaymentMethod
    amount: float
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    phone_number: Optional[str] = None
    gateway_response: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'buyer_id': self.buyer_id,
            'payment_method': self.payment_method.value,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status.value,
            'transaction_id': self.transaction_id,
            'payment_reference': self.payment_reference,
            'phone_number': self.phone_number,
            'gateway_response': dict(self.gateway_response),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'completed_at': _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Payment":
        return cls(
            id=row['id'],
            offer_id=row['offer_id'],
            buyer_id=row['buyer_id'],
            payment_method=PaymentMethod(row['payment_method']),
            amount=float(row['amount']),
            currency=row.get('currency') or "USD",
            status=PaymentStatus(row['status']),
            transaction_id=row.get('transaction_id'),
            payment_reference=row.get('payment_reference'),
            phone_number=row.get('phone_number'),
            gateway_response=dict(row.get('gateway_response') or {}),
            created_at=_parse_dt(row.get('created_at')) or datetime.now(),
            updated_at=_parse_dt(row.get('updated_at')),
            completed_at=_parse_dt(row.get('completed_at')),
        )


@dataclass
class PaymentOutcome:
    """Channel-neutral description of what a channel event says about a payment."""
    correlation_id: str
    amount: Optional[float]
    status: PaymentStatus
    channel_facts: Dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None

# ============================================
# NOTIFICATION
# ============================================

@dataclass
class Notification:
    """Buyer-facing in-app notification row."""
    id: str
    user_id: str
    notification_type: str
    title: str
    message: str
    priority: str = "medium"
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'priority': self.priority,
            'metadata': dict(self.metadata),
            'created_at': _iso(self.created_at),
        }
