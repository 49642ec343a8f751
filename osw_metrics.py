"""
Offer Settlement Workflow - Prometheus Metrics
Observability for the offer, invoice and payment workflow
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# OFFER METRICS
# ============================================

offer_submitted_counter = Counter(
    'osw_offers_submitted_total',
    'Total number of offers submitted',
    ['payment_method'],
    registry=metrics_registry
)

offer_decided_counter = Counter(
    'osw_offers_decided_total',
    'Total number of offer decisions',
    ['decision'],
    registry=metrics_registry
)

offer_paid_counter = Counter(
    'osw_offers_paid_total',
    'Total number of offers marked fully paid',
    registry=metrics_registry
)

# ============================================
# INVOICE METRICS
# ============================================

invoice_issued_counter = Counter(
    'osw_invoices_issued_total',
    'Total number of invoices issued',
    ['persisted'],
    registry=metrics_registry
)

invoice_amount_histogram = Histogram(
    'osw_invoice_amount_dollars',
    'Invoice totals in dollars',
    buckets=[100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000],
    registry=metrics_registry
)

invoice_settled_counter = Counter(
    'osw_invoices_settled_total',
    'Total number of invoices settled',
    registry=metrics_registry
)

invoice_settlement_skipped_counter = Counter(
    'osw_invoice_settlements_skipped_total',
    'Settlement attempts that did not change an invoice',
    ['reason'],  # no_invoice, already_paid, concurrent_update
    registry=metrics_registry
)

# ============================================
# PAYMENT METRICS
# ============================================

payment_created_counter = Counter(
    'osw_payments_created_total',
    'Total number of payment records created',
    ['payment_method'],
    registry=metrics_registry
)

payment_transition_counter = Counter(
    'osw_payment_transitions_total',
    'Payment terminal transitions applied',
    ['status', 'source'],  # source: callback, admin, initiation
    registry=metrics_registry
)

payment_noop_counter = Counter(
    'osw_payment_events_ignored_total',
    'Channel events that left a payment unchanged',
    ['reason'],  # already_terminal, non_terminal_status, lost_race
    registry=metrics_registry
)

processor_initiate_duration_histogram = Histogram(
    'osw_processor_initiate_duration_seconds',
    'Mobile-money processor initiate latency',
    ['result'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0],
    registry=metrics_registry
)

pending_payments_gauge = Gauge(
    'osw_pending_payments',
    'Payments awaiting resolution',
    registry=metrics_registry
)

# ============================================
# NOTIFICATION METRICS
# ============================================

notification_send_counter = Counter(
    'osw_notification_sends_total',
    'Notification delivery attempts',
    ['event', 'audience', 'result'],
    registry=metrics_registry
)

# ============================================
# HEALTH METRICS
# ============================================

invariant_violation_gauge = Gauge(
    'osw_invariant_violations',
    'Rows currently violating a workflow invariant',
    ['invariant_id'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_payment_transition(status: str, source: str):
    """Record a terminal payment transition."""
    payment_transition_counter.labels(status=status, source=source).inc()


def record_notification(event: str, audience: str, success: bool):
    """Record one notification delivery attempt."""
    notification_send_counter.labels(
        event=event,
        audience=audience,
        result="sent" if success else "failed"
    ).inc()


def update_invariant_health(findings):
    """Publish the latest invariant audit."""
    for finding in findings:
        invariant_violation_gauge.labels(invariant_id=finding.invariant_id).set(len(finding.violations))
