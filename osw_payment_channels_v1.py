"""
Offer Settlement Workflow (OSW) - Payment Channel Adapters
Version: 1.0.0

One adapter per payment method. Each turns channel-specific payloads into
a PaymentOutcome; the mobile-money adapter also drives the processor's
push-payment initiation.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging
import re
import time
import uuid

import httpx

from osw_enforcement_v1 import (
    ExternalChannelFailure,
    PaymentMethod,
    PaymentStatus,
    ValidationError,
    WorkflowConfig,
)
from osw_models_v1 import Payment, PaymentOutcome
from osw_reconciliation_engine_v1 import PaymentReconciliationEngine
from osw_notifications_v1 import NotificationEvent, NotificationFanout
from osw_metrics import processor_initiate_duration_histogram

logger = logging.getLogger("OSW.Channels")

# Processor callback status -> payment status. Unlisted values leave the payment pending.
CALLBACK_STATUS_MAP = {
    'success': PaymentStatus.COMPLETED,
    'failed': PaymentStatus.FAILED,
    'cancelled': PaymentStatus.CANCELLED,
}

PROCESSOR_ERROR_MESSAGES = {
    400: "Invalid request parameters",
    401: "Invalid API key",
    402: "Payment request failed",
    403: "API key does not have required permissions",
    404: "API endpoint not found",
    409: "Transaction already exists",
    429: "Too many requests - please try again later",
    500: "Mobile money server error - please try again",
}


def normalize_msisdn(phone: str, dialing_code: str = "263") -> str:
    """Digits only, local leading zero replaced by the country code."""
    digits = re.sub(r"[^0-9]", "", phone or "")
    if not digits.startswith(dialing_code):
        digits = re.sub(r"^0", dialing_code, digits)
    return digits


def redact_msisdn(msisdn: str) -> str:
    return f"{msisdn[:3]}****{msisdn[-2:]}" if len(msisdn) > 5 else "[REDACTED]"

# ============================================
# MOBILE-MONEY PROCESSOR CLIENT
# ============================================

@dataclass
class ProcessorAck:
    """Processor's answer to an initiate request."""
    accepted: bool
    correlation_id: str
    reference: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


class MobileMoneyProcessorClient:
    """C2B push-payment API client with a bounded request timeout."""

    LIVE_ENDPOINT = "/api/v2/payment/instant/c2b/live"
    SANDBOX_ENDPOINT = "/api/v2/payment/instant/c2b/sandbox"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        merchant_id: Optional[str],
        environment: str = "sandbox",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.api_key = api_key
        self.merchant_id = merchant_id
        self.environment = environment
        self.client = httpx.Client(base_url=base_url, timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_config(cls, config: WorkflowConfig, transport: Optional[httpx.BaseTransport] = None):
        return cls(
            base_url=config.mobile_money_base_url,
            api_key=config.mobile_money_api_key,
            merchant_id=config.mobile_money_merchant_id,
            environment=config.mobile_money_environment,
            timeout_seconds=config.mobile_money_timeout_seconds,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return self.LIVE_ENDPOINT if self.environment == "production" else self.SANDBOX_ENDPOINT

    def initiate(
        self,
        correlation_id: str,
        msisdn: str,
        amount: float,
        callback_url: str,
        currency: str = "USD",
        reason: str = "Property deposit payment"
    ) -> ProcessorAck:
        """
        Ask the processor to push a payment prompt to the customer.

        Returns a rejected ack for HTTP-level refusals. Raises
        ExternalChannelFailure on timeout, transport errors or missing
        credentials.
        """
        if not self.api_key or not self.merchant_id:
            raise ExternalChannelFailure("Mobile money API credentials not configured")

        payload = {
            'customerMsisdn': msisdn,
            'amount': amount,
            'reason': reason,
            'currency': currency,
            'sourceReference': correlation_id,
            'callbackUrl': callback_url,
        }
        logger.info(f"[PROCESSOR] Initiating {correlation_id}: ${amount:,.2f} to {redact_msisdn(msisdn)}")

        started = time.monotonic()
        try:
            response = self.client.post(
                self.endpoint,
                json=payload,
                headers={'X-API-KEY': self.api_key, 'Accept': 'application/json'}
            )
        except httpx.TimeoutException as e:
            processor_initiate_duration_histogram.labels(result="timeout").observe(time.monotonic() - started)
            raise ExternalChannelFailure(f"Mobile money processor timed out: {e}", timed_out=True)
        except httpx.HTTPError as e:
            processor_initiate_duration_histogram.labels(result="error").observe(time.monotonic() - started)
            raise ExternalChannelFailure(f"Mobile money processor unreachable: {e}")

        elapsed = time.monotonic() - started
        if response.status_code >= 400:
            processor_initiate_duration_histogram.labels(result="rejected").observe(elapsed)
            message = PROCESSOR_ERROR_MESSAGES.get(response.status_code)
            if message is None:
                message = f"Mobile money API error: {response.status_code}"
                if response.status_code >= 500:
                    message = PROCESSOR_ERROR_MESSAGES[500]
            logger.error(f"[PROCESSOR] {correlation_id} rejected ({response.status_code}): {response.text[:200]}")
            return ProcessorAck(
                accepted=False,
                correlation_id=correlation_id,
                status_code=response.status_code,
                error=message
            )

        processor_initiate_duration_histogram.labels(result="accepted").observe(elapsed)
        try:
            body = response.json()
        except ValueError:
            body = {}
        return ProcessorAck(
            accepted=True,
            correlation_id=correlation_id,
            reference=body.get('sourceReference') or correlation_id,
            status_code=response.status_code
        )

    def close(self):
        self.client.close()

# ============================================
# MOBILE-MONEY PUSH ADAPTER
# ============================================

class MobileMoneyPushAdapter:
    """Initiates push payments and normalizes the processor's callbacks."""

    def __init__(
        self,
        engine: PaymentReconciliationEngine,
        processor: MobileMoneyProcessorClient,
        fanout: NotificationFanout,
        config: WorkflowConfig,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.engine = engine
        self.processor = processor
        self.fanout = fanout
        self.config = config
        self.clock = clock

    def initiate(self, offer_id: str, buyer_id: str, phone: str, amount: float) -> Payment:
        """
        Create a pending payment and ask the processor to collect it.

        If the processor refuses or times out, the payment is closed as
        failed (kept for audit) and ExternalChannelFailure is raised.
        """
        if not offer_id or not buyer_id or not phone:
            raise ValidationError("offer_id, buyer_id and phone are required")
        if amount is None or amount <= 0:
            raise ValidationError("amount must be positive")

        msisdn = normalize_msisdn(phone, self.config.country_dialing_code)
        correlation_id = str(uuid.uuid4())
        payment = self.engine.create_payment(Payment(
            id=str(uuid.uuid4()),
            offer_id=offer_id,
            buyer_id=buyer_id,
            payment_method=PaymentMethod.MOBILE_MONEY,
            amount=float(amount),
            currency=self.config.default_currency,
            status=PaymentStatus.PENDING,
            transaction_id=correlation_id,
            phone_number=msisdn,
            created_at=self.clock(),
        ))

        try:
            ack = self.processor.initiate(
                correlation_id=correlation_id,
                msisdn=msisdn,
                amount=payment.amount,
                callback_url=self.config.mobile_money_callback_url,
                currency=payment.currency,
            )
        except ExternalChannelFailure as e:
            logger.error(f"[MOBILE_MONEY] ❌ Initiation of {payment.id} failed: {e}")
            self.engine.fail_initiation(payment.id, str(e), timed_out=e.timed_out)
            raise

        if not ack.accepted:
            logger.error(f"[MOBILE_MONEY] ❌ Processor rejected {payment.id}: {ack.error}")
            self.engine.fail_initiation(payment.id, ack.error or "rejected")
            raise ExternalChannelFailure(ack.error or "Payment initiation failed", status_code=ack.status_code)

        self.engine.record_channel_facts(payment.id, {
            'initiation': {
                'processor_reference': ack.reference,
                'environment': self.processor.environment,
                'initiated_at': self.clock().isoformat(),
            }
        })
        logger.info(f"[MOBILE_MONEY] ✅ Payment {payment.id} awaiting customer approval ({correlation_id})")

        self.fanout.notify(NotificationEvent.PAYMENT_INITIATED, {
            'buyer_id': buyer_id,
            'offer_id': offer_id,
            'payment_id': payment.id,
            'amount': payment.amount,
        })
        return self.engine.get_payment(payment.id)

    def normalize(self, raw_event: Dict[str, Any]) -> PaymentOutcome:
        """Processor callback body -> PaymentOutcome."""
        correlation_id = (
            raw_event.get('transaction_id')
            or raw_event.get('correlation_id')
            or raw_event.get('correlationId')
        )
        raw_status = raw_event.get('status')
        if not correlation_id or not raw_status:
            raise ValidationError("Missing required fields: transaction_id (or correlationId) and status")

        amount = raw_event.get('amount')
        if amount is not None:
            try:
                amount = float(amount)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid amount: {amount!r}")

        return PaymentOutcome(
            correlation_id=str(correlation_id),
            amount=amount,
            status=CALLBACK_STATUS_MAP.get(str(raw_status).strip().lower(), PaymentStatus.PENDING),
            reference=raw_event.get('reference'),
            channel_facts={
                'processor_reference': raw_event.get('reference'),
                'merchant_id': raw_event.get('merchant_id'),
                'signature': raw_event.get('signature'),
                'timestamp': raw_event.get('timestamp'),
                'callback_data': dict(raw_event),
            }
        )

    def handle_callback(self, raw_event: Dict[str, Any]) -> Payment:
        outcome = self.normalize(raw_event)
        logger.info(f"[MOBILE_MONEY] Callback {outcome.correlation_id}: {raw_event.get('status')}")
        return self.engine.apply_outcome(outcome.correlation_id, outcome)

# ============================================
# BANK-TRANSFER MANUAL ADAPTER
# ============================================

class BankTransferManualAdapter:
    """Records bank-transfer proofs; resolution is always an admin action."""

    SUBMISSION_METHOD = "bank_transfer_manual"

    def __init__(
        self,
        engine: PaymentReconciliationEngine,
        fanout: NotificationFanout,
        config: WorkflowConfig,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.engine = engine
        self.fanout = fanout
        self.config = config
        self.clock = clock

    def normalize(self, raw_event: Dict[str, Any]) -> PaymentOutcome:
        """Buyer submission -> pending PaymentOutcome carrying the proof facts."""
        proof_url = raw_event.get('proof_url')
        amount = raw_event.get('amount')
        if not proof_url:
            raise ValidationError("proof_url is required")
        if amount is None or float(amount) <= 0:
            raise ValidationError("amount must be positive")

        reference = raw_event.get('transfer_reference')
        return PaymentOutcome(
            correlation_id=reference or "",
            amount=float(amount),
            status=PaymentStatus.PENDING,
            reference=reference,
            channel_facts={
                'proof_url': proof_url,
                'transfer_reference': reference,
                'transfer_notes': raw_event.get('transfer_notes'),
                'submission_method': self.SUBMISSION_METHOD,
                'submitted_at': self.clock().isoformat(),
            }
        )

    def submit_proof(
        self,
        offer_id: str,
        buyer_id: str,
        amount: float,
        proof_ref: str,
        transfer_reference: Optional[str] = None,
        transfer_notes: Optional[str] = None
    ) -> Payment:
        if not offer_id or not buyer_id:
            raise ValidationError("offer_id and buyer_id are required")

        outcome = self.normalize({
            'amount': amount,
            'proof_url': proof_ref,
            'transfer_reference': transfer_reference,
            'transfer_notes': transfer_notes,
        })
        payment = self.engine.create_payment(Payment(
            id=str(uuid.uuid4()),
            offer_id=offer_id,
            buyer_id=buyer_id,
            payment_method=PaymentMethod.BANK_TRANSFER,
            amount=outcome.amount,
            currency=self.config.default_currency,
            status=PaymentStatus.PENDING,
            transaction_id=outcome.reference,
            payment_reference=outcome.reference,
            gateway_response=outcome.channel_facts,
            created_at=self.clock(),
        ))

        self.fanout.notify(NotificationEvent.PAYMENT_PROOF_SUBMITTED, {
            'buyer_id': buyer_id,
            'offer_id': offer_id,
            'payment_id': payment.id,
            'amount': payment.amount,
        })
        return payment
