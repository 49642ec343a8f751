"""
Offer Settlement Workflow (OSW) - Notification Fan-out
Version: 1.0.0

Turns workflow events into one buyer message and zero-or-more admin
messages. Delivery is handed to a Dispatcher and never awaited by the
state transitions that raised the event.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging
import uuid

import httpx

from osw_enforcement_v1 import NotFound, WorkflowError
from osw_models_v1 import Notification
from osw_record_store_v1 import NOTIFICATIONS, PROFILES, RecordStore
from osw_metrics import record_notification

logger = logging.getLogger("OSW.Notifications")

# ============================================
# NOTIFIER
# ============================================

@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None


class Notifier(ABC):
    """Outbound message delivery (email, SMS). Never raises for delivery failures."""

    @abstractmethod
    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> SendResult:
        pass


class LoggingNotifier(Notifier):
    """Writes messages to the log instead of delivering them."""

    def send(self, recipient, subject, body, tags=None, metadata=None) -> SendResult:
        logger.info(f"[NOTIFY] to={recipient} subject={subject!r} tags={tags or []}")
        return SendResult(success=True)


class HttpEmailNotifier(Notifier):
    """Transactional email over an HTTP API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.api_url = api_url
        self.sender = sender
        self.client = httpx.Client(
            timeout=timeout_seconds,
            transport=transport,
            headers={'Authorization': f"Bearer {api_key}", 'Content-Type': 'application/json'}
        )

    def send(self, recipient, subject, body, tags=None, metadata=None) -> SendResult:
        payload = {
            'from': self.sender,
            'to': [recipient],
            'subject': subject,
            'text': body,
            'tags': [{'name': tag, 'value': 'true'} for tag in (tags or [])],
            'metadata': metadata or {},
        }
        try:
            response = self.client.post(self.api_url, json=payload)
        except httpx.HTTPError as e:
            return SendResult(success=False, error=f"transport error: {e}")

        if response.status_code >= 400:
            return SendResult(success=False, error=f"HTTP {response.status_code}: {response.text[:200]}")
        return SendResult(success=True)

    def close(self):
        self.client.close()

# ============================================
# ADMIN RECIPIENTS
# ============================================

def _unique_emails(emails: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    out = []
    for email in emails:
        value = (email or "").strip().lower()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class AdminRecipientResolver:
    """Default admin mailboxes merged with every profile whose role is admin."""

    def __init__(
        self,
        default_emails: List[str],
        store: Optional[RecordStore] = None,
        include_role_admins: bool = True
    ):
        self.default_emails = list(default_emails)
        self.store = store
        self.include_role_admins = include_role_admins

    def list_admin_recipients(self) -> List[str]:
        if not self.include_role_admins or self.store is None:
            return _unique_emails(self.default_emails)

        try:
            admins = self.store.query(PROFILES, {'user_role': 'admin'})
        except WorkflowError as e:
            logger.error(f"Failed to load admin recipients: {e}")
            return _unique_emails(self.default_emails)

        return _unique_emails(self.default_emails + [row.get('email') for row in admins])

    __call__ = list_admin_recipients

# ============================================
# DISPATCH
# ============================================

class Dispatcher(ABC):
    """Runs side-effect jobs outside the caller's success/failure path."""

    @abstractmethod
    def submit(self, job: Callable[..., Any], *args, **kwargs) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass

    @staticmethod
    def _run_guarded(job: Callable[..., Any], *args, **kwargs) -> None:
        try:
            job(*args, **kwargs)
        except Exception:
            logger.exception(f"Side-effect job {getattr(job, '__name__', job)!r} failed")


class InlineDispatcher(Dispatcher):
    """Runs jobs immediately on the calling thread; errors are still contained."""

    def submit(self, job, *args, **kwargs) -> None:
        self._run_guarded(job, *args, **kwargs)


class BackgroundDispatcher(Dispatcher):
    """Runs jobs on a thread pool the caller never waits on."""

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="osw-notify")

    def submit(self, job, *args, **kwargs) -> None:
        self.executor.submit(self._run_guarded, job, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

# ============================================
# EVENTS & TEMPLATES
# ============================================

class NotificationEvent(Enum):
    OFFER_SUBMITTED = "offer_submitted"
    OFFER_DECIDED = "offer_decided"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_PROOF_SUBMITTED = "payment_proof_submitted"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_FAILED = "payment_failed"
    KYC_SUBMITTED = "kyc_submitted"
    PHONE_VERIFIED = "phone_verified"


@dataclass
class MessageTemplate:
    buyer_subject: str
    buyer_body: str
    admin_subject: Optional[str] = None
    admin_body: Optional[str] = None
    record_title: Optional[str] = None
    record_message: Optional[str] = None
    record_priority: str = "medium"
    tags: List[str] = field(default_factory=list)


TEMPLATES: Dict[NotificationEvent, MessageTemplate] = {
    NotificationEvent.OFFER_SUBMITTED: MessageTemplate(
        buyer_subject="Offer submitted ({offer_reference})",
        buyer_body="Hi {first_name}, your offer of {amount_display} has been received and is awaiting review.",
        admin_subject="New offer submitted ({offer_reference})",
        admin_body="Offer {offer_reference} of {amount_display} is awaiting review.",
        tags=["offer_submitted"],
    ),
    NotificationEvent.OFFER_DECIDED: MessageTemplate(
        buyer_subject="Offer {decision} ({offer_reference})",
        buyer_body="Hi {first_name}, your offer {offer_reference} has been {decision}. {reason_sentence}",
        tags=["offer_decided"],
    ),
    NotificationEvent.PAYMENT_INITIATED: MessageTemplate(
        buyer_subject="Confirm your mobile money payment",
        buyer_body="Hi {first_name}, please approve the {amount_display} payment prompt on your phone.",
        tags=["payment_initiated"],
    ),
    NotificationEvent.PAYMENT_PROOF_SUBMITTED: MessageTemplate(
        buyer_subject="Proof of payment received",
        buyer_body="Hi {first_name}, your proof of payment for {amount_display} will be verified within 1-2 business days.",
        admin_subject="Proof of payment submitted ({offer_reference})",
        admin_body="A bank transfer proof for {amount_display} is awaiting verification (payment {payment_id}).",
        record_title="Proof of Payment Submitted",
        record_message="A proof of payment for {amount_display} (bank transfer) has been submitted and is awaiting verification.",
        record_priority="high",
        tags=["payment_proof_submitted"],
    ),
    NotificationEvent.PAYMENT_VERIFIED: MessageTemplate(
        buyer_subject="Payment verified",
        buyer_body="Hi {first_name}, your payment of {amount_display} has been verified.",
        admin_subject="Payment completed ({payment_id})",
        admin_body="Payment {payment_id} of {amount_display} for offer {offer_id} is completed.",
        record_title="Payment Verified",
        record_message="Your payment of {amount_display} has been verified.",
        record_priority="medium",
        tags=["payment_verified"],
    ),
    NotificationEvent.PAYMENT_REJECTED: MessageTemplate(
        buyer_subject="Payment proof rejected",
        buyer_body="Hi {first_name}, your payment proof for {amount_display} was not accepted. {reason_sentence}",
        record_title="Payment Proof Rejected",
        record_message="Your payment proof for {amount_display} was not accepted. {reason_sentence}",
        record_priority="high",
        tags=["payment_rejected"],
    ),
    NotificationEvent.PAYMENT_FAILED: MessageTemplate(
        buyer_subject="Payment failed",
        buyer_body="Hi {first_name}, your payment of {amount_display} did not go through. Please try again.",
        record_title="Payment Failed",
        record_message="Payment for offer {offer_id} has failed.",
        record_priority="high",
        tags=["payment_failed"],
    ),
    NotificationEvent.KYC_SUBMITTED: MessageTemplate(
        buyer_subject="Identity verification received",
        buyer_body="Hi {first_name}, we have received your verification documents and will review them shortly.",
        admin_subject="KYC submitted",
        admin_body="User {buyer_id} submitted identity verification documents.",
        tags=["kyc_submitted"],
    ),
    NotificationEvent.PHONE_VERIFIED: MessageTemplate(
        buyer_subject="Phone number verified",
        buyer_body="Hi {first_name}, your phone number has been verified.",
        admin_subject="Phone verified",
        admin_body="User {buyer_id} verified their phone number.",
        tags=["phone_verified"],
    ),
}


class _TemplateContext(dict):
    def __missing__(self, key):
        return ""


def _render_context(context: Dict[str, Any], profile: Dict[str, Any]) -> _TemplateContext:
    rendered = _TemplateContext(context)
    rendered['first_name'] = profile.get('first_name') or "there"
    amount = context.get('amount')
    if isinstance(amount, (int, float)):
        rendered['amount_display'] = f"${amount:,.2f}"
    reason = context.get('reason')
    rendered['reason_sentence'] = f"Reason: {reason}" if reason else ""
    if not rendered.get('offer_reference'):
        rendered['offer_reference'] = context.get('offer_id', "")
    return rendered

# ============================================
# FAN-OUT
# ============================================

class NotificationFanout:
    """Resolves recipients for an event and hands delivery to the dispatcher."""

    def __init__(
        self,
        store: RecordStore,
        notifier: Notifier,
        admin_recipients: Callable[[], List[str]],
        dispatcher: Optional[Dispatcher] = None
    ):
        self.store = store
        self.notifier = notifier
        self.admin_recipients = admin_recipients
        self.dispatcher = dispatcher or InlineDispatcher()

    def notify(self, event: NotificationEvent, context: Dict[str, Any]) -> None:
        """Queue delivery for event. Returns immediately and never raises."""
        try:
            self.dispatcher.submit(self._deliver, event, dict(context))
        except Exception:
            logger.exception(f"Could not queue {event.value} notification")

    def _deliver(self, event: NotificationEvent, context: Dict[str, Any]) -> None:
        template = TEMPLATES[event]
        buyer_id = context.get('buyer_id')
        profile = self._load_profile(buyer_id)
        rendered = _render_context(context, profile)
        metadata = {
            key: str(value) for key, value in context.items()
            if key in ('offer_id', 'offer_reference', 'payment_id', 'invoice_id') and value
        }

        if template.record_title and buyer_id:
            self._record(event, buyer_id, template, rendered, context)

        buyer_email = profile.get('email')
        if buyer_email:
            self._send_one(
                event, "buyer", buyer_email,
                template.buyer_subject.format_map(rendered),
                template.buyer_body.format_map(rendered).strip(),
                template.tags, metadata
            )
        else:
            logger.warning(f"[NOTIFY] No contact for buyer {buyer_id}; skipping {event.value} buyer message")

        if template.admin_subject:
            for admin in self._admin_list():
                self._send_one(
                    event, "admin", admin,
                    template.admin_subject.format_map(rendered),
                    (template.admin_body or "").format_map(rendered).strip(),
                    template.tags, metadata
                )

    def _load_profile(self, buyer_id: Optional[str]) -> Dict[str, Any]:
        if not buyer_id:
            return {}
        try:
            return self.store.get(PROFILES, buyer_id)
        except NotFound:
            return {}
        except WorkflowError as e:
            logger.error(f"Failed to load profile {buyer_id}: {e}")
            return {}

    def _admin_list(self) -> List[str]:
        try:
            return list(self.admin_recipients() or [])
        except Exception:
            logger.exception("Admin recipient lookup failed; skipping admin notifications")
            return []

    def _send_one(self, event, audience, recipient, subject, body, tags, metadata) -> None:
        try:
            result = self.notifier.send(recipient, subject, body, tags=tags, metadata=metadata)
        except Exception as e:
            result = SendResult(success=False, error=str(e))

        record_notification(event.value, audience, result.success)
        if result.success:
            logger.info(f"[NOTIFY] {event.value} -> {audience} {recipient}")
        else:
            logger.error(f"[NOTIFY] {event.value} -> {audience} {recipient} failed: {result.error}")

    def _record(self, event, buyer_id, template, rendered, context) -> None:
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=buyer_id,
            notification_type="payment_update",
            title=template.record_title,
            message=(template.record_message or "").format_map(rendered).strip(),
            priority=template.record_priority,
            metadata={
                'event': event.value,
                **{k: v for k, v in context.items() if k in ('payment_id', 'offer_id', 'amount', 'reason', 'status')}
            },
            created_at=datetime.now()
        )
        try:
            self.store.insert(NOTIFICATIONS, notification.to_dict())
        except WorkflowError as e:
            logger.error(f"Notification record for {event.value} not stored: {e}")
