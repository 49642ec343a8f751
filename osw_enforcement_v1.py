"""
Offer Settlement Workflow (OSW) - Enforcement Layer
Version: 1.0.0

Configuration, logging, error taxonomy, status vocabularies and the
workflow invariants shared by every OSW service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import os
from abc import ABC, abstractmethod

# ============================================
# SYSTEM CONFIGURATION
# ============================================

MOBILE_MONEY_CALLBACK_PATH = "/api/v1/payments/mobile-money/callback"


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class WorkflowConfig:
    """Runtime configuration, read from OSW_* environment variables."""
    app_url: str = "http://localhost:8000"
    default_currency: str = "USD"
    invoice_validity_working_days: int = 7
    country_dialing_code: str = "263"

    mobile_money_base_url: str = "https://developers.ecocash.co.zw/api/ecocash_pay"
    mobile_money_api_key: Optional[str] = None
    mobile_money_merchant_id: Optional[str] = None
    mobile_money_environment: str = "sandbox"
    mobile_money_timeout_seconds: float = 15.0

    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_sender: str = "no-reply@example.com"

    default_admin_emails: List[str] = field(default_factory=lambda: ["hello@example.com"])
    notification_workers: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        return cls(
            app_url=os.getenv("OSW_APP_URL", "http://localhost:8000").rstrip("/"),
            default_currency=os.getenv("OSW_DEFAULT_CURRENCY", "USD"),
            invoice_validity_working_days=int(os.getenv("OSW_INVOICE_VALIDITY_WORKING_DAYS", "7")),
            country_dialing_code=os.getenv("OSW_COUNTRY_DIALING_CODE", "263"),
            mobile_money_base_url=os.getenv(
                "OSW_MOBILE_MONEY_BASE_URL",
                "https://developers.ecocash.co.zw/api/ecocash_pay"
            ),
            mobile_money_api_key=os.getenv("OSW_MOBILE_MONEY_API_KEY"),
            mobile_money_merchant_id=os.getenv("OSW_MOBILE_MONEY_MERCHANT_ID"),
            mobile_money_environment=os.getenv("OSW_MOBILE_MONEY_ENVIRONMENT", "sandbox"),
            mobile_money_timeout_seconds=float(os.getenv("OSW_MOBILE_MONEY_TIMEOUT_SECONDS", "15")),
            email_api_url=os.getenv("OSW_EMAIL_API_URL"),
            email_api_key=os.getenv("OSW_EMAIL_API_KEY"),
            email_sender=os.getenv("OSW_EMAIL_SENDER", "no-reply@example.com"),
            default_admin_emails=_env_list("OSW_DEFAULT_ADMIN_EMAILS", "hello@example.com"),
            notification_workers=int(os.getenv("OSW_NOTIFICATION_WORKERS", "4")),
            log_level=os.getenv("OSW_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def mobile_money_callback_url(self) -> str:
        return f"{self.app_url}{MOBILE_MONEY_CALLBACK_PATH}"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=os.getenv("OSW_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("OSW.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class WorkflowError(Exception):
    """Base class for all workflow errors."""
    pass

class NotFound(WorkflowError):
    """Referenced offer, payment or invoice does not exist."""
    pass

class InvalidState(WorkflowError):
    """Entity is not in the state the operation requires."""
    pass

class ValidationError(WorkflowError):
    """Caller supplied malformed or incomplete input."""
    pass

class ExternalChannelFailure(WorkflowError):
    """Mobile-money processor call failed, was rejected or timed out."""

    def __init__(self, message: str, status_code: Optional[int] = None, timed_out: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out

class StorageFailure(WorkflowError):
    """Record store read or write failed. Retryable."""
    pass

# ============================================
# STATUS VOCABULARIES
# ============================================

class OfferStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"

class OfferPaymentPlan(Enum):
    CASH = "cash"
    INSTALLMENT = "installment"

    @classmethod
    def parse(cls, value: str) -> "OfferPaymentPlan":
        normalized = (value or "").strip().lower()
        if normalized == "installments":
            normalized = "installment"
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {value!r}")

class InvoiceStatus(Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"  # reserved, never written
    PAID = "paid"

class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING

class PaymentMethod(Enum):
    MOBILE_MONEY = "ecocash"
    BANK_TRANSFER = "bank_transfer"

class Decision(Enum):
    APPROVE = "approved"
    REJECT = "rejected"

    @classmethod
    def parse(cls, value: str) -> "Decision":
        aliases = {"approve": "approved", "reject": "rejected"}
        normalized = (value or "").strip().lower()
        try:
            return cls(aliases.get(normalized, normalized))
        except ValueError:
            raise ValidationError(f"Unknown decision: {value!r}")

# Legal edges. Anything not listed here is refused before a write is attempted.
OFFER_TRANSITIONS = {
    OfferStatus.PENDING: [OfferStatus.APPROVED, OfferStatus.REJECTED],
    OfferStatus.APPROVED: [OfferStatus.PAID],
    OfferStatus.REJECTED: [],
    OfferStatus.PAID: [],
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: [PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED],
    PaymentStatus.COMPLETED: [],
    PaymentStatus.FAILED: [],
    PaymentStatus.CANCELLED: [],
}

INVOICE_TRANSITIONS = {
    InvoiceStatus.UNPAID: [InvoiceStatus.PAID],
    InvoiceStatus.PARTIALLY_PAID: [InvoiceStatus.PAID],
    InvoiceStatus.PAID: [],
}


def can_transition(current: Enum, target: Enum) -> bool:
    """Check an edge against the transition table for its status type."""
    for table in (OFFER_TRANSITIONS, PAYMENT_TRANSITIONS, INVOICE_TRANSITIONS):
        if current in table:
            return target in table[current]
    return False

# ============================================
# WORKFLOW INVARIANTS
# ============================================

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"


@dataclass
class AuditFinding:
    """Result of one invariant audit."""
    invariant_id: str
    holds: bool
    violations: List[str]
    checked_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'invariant_id': self.invariant_id,
            'holds': self.holds,
            'violations': self.violations,
            'checked_at': self.checked_at.isoformat(),
        }


class Invariant(ABC):
    """Base class for all workflow invariants."""

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.owner = owner

    @abstractmethod
    def violations(self, store) -> List[str]:
        """Return human-readable descriptions of every row breaking the invariant."""
        pass


class PaidInvoiceHasNothingDue(Invariant):
    """Invoice status is paid exactly when amount_due is zero."""

    def __init__(self):
        super().__init__(
            id="osw_001_paid_iff_zero_due",
            statement="An invoice MUST be paid if and only if its amount_due is 0",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            owner="invoice_issuer"
        )

    def violations(self, store) -> List[str]:
        found = []
        for row in store.query("invoices"):
            is_paid = row.get('status') == InvoiceStatus.PAID.value
            nothing_due = float(row.get('amount_due') or 0) == 0
            if is_paid != nothing_due:
                found.append(f"invoice {row['id']}: status={row.get('status')} amount_due={row.get('amount_due')}")
        return found


class NoInvoiceBeforeApproval(Invariant):
    """Pending or rejected offers never carry an invoice."""

    def __init__(self):
        super().__init__(
            id="osw_002_no_invoice_before_approval",
            statement="It is FORBIDDEN for a pending or rejected offer to have an invoice",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            owner="offer_controller"
        )

    def violations(self, store) -> List[str]:
        undecided = {
            row['id'] for row in store.query("offers")
            if row.get('status') in (OfferStatus.PENDING.value, OfferStatus.REJECTED.value)
        }
        return [
            f"invoice {row['id']} issued for offer {row.get('offer_id')} which is not approved"
            for row in store.query("invoices")
            if row.get('offer_id') in undecided
        ]


class SingleCompletedPaymentPerOffer(Invariant):
    """At most one completed payment clears an offer."""

    def __init__(self):
        super().__init__(
            id="osw_003_single_completed_payment",
            statement="The system SHOULD record at most one completed payment per offer",
            type=InvariantType.TRANSITION,
            criticality=Criticality.IMPORTANT,
            owner="reconciliation_engine"
        )

    def violations(self, store) -> List[str]:
        counts: Dict[str, int] = {}
        for row in store.query("payments", {"status": PaymentStatus.COMPLETED.value}):
            counts[row.get('offer_id')] = counts.get(row.get('offer_id'), 0) + 1
        return [
            f"offer {offer_id} has {count} completed payments"
            for offer_id, count in counts.items() if count > 1
        ]


class CompletionTimestampConsistent(Invariant):
    """completed_at is set exactly on completed payments."""

    def __init__(self):
        super().__init__(
            id="osw_004_completion_timestamp",
            statement="The system MUST set completed_at if and only if a payment is completed",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            owner="reconciliation_engine"
        )

    def violations(self, store) -> List[str]:
        found = []
        for row in store.query("payments"):
            completed = row.get('status') == PaymentStatus.COMPLETED.value
            if completed != bool(row.get('completed_at')):
                found.append(f"payment {row['id']}: status={row.get('status')} completed_at={row.get('completed_at')}")
        return found


class InvariantAuditor:
    """Runs the workflow invariants against stored state."""

    def __init__(self, store, invariants: Optional[List[Invariant]] = None):
        self.store = store
        self.invariants = invariants if invariants is not None else [
            PaidInvoiceHasNothingDue(),
            NoInvoiceBeforeApproval(),
            SingleCompletedPaymentPerOffer(),
            CompletionTimestampConsistent(),
        ]

    def audit(self) -> List[AuditFinding]:
        findings = []
        for inv in self.invariants:
            violations = inv.violations(self.store)
            if violations:
                logger.error(f"AUDIT {inv.id}: {len(violations)} violation(s)")
                for violation in violations:
                    logger.error(f"  - {violation}")
            findings.append(AuditFinding(
                invariant_id=inv.id,
                holds=not violations,
                violations=violations,
                checked_at=datetime.now()
            ))
        return findings

    def all_hold(self) -> bool:
        return all(finding.holds for finding in self.audit())
