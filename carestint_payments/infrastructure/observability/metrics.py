"""Prometheus metrics for payment, payout and ledger monitoring"""

from prometheus_client import Counter, Histogram

# Payment intent metrics
payment_transition_counter = Counter(
    "carestint_payment_transitions_total",
    "Payment intent status transitions",
    ["status"],  # pending | success | failed | expired | cancelled | refunded | partially_refunded
)

duplicate_confirmation_counter = Counter(
    "carestint_duplicate_confirmations_total",
    "Gateway confirmations ignored as duplicates",
)

refund_amount_counter = Counter(
    "carestint_refunded_amount_total",
    "Currency units refunded to employers",
    ["currency"],
)

# Payout metrics
payout_transition_counter = Counter(
    "carestint_payout_transitions_total",
    "Payout record status transitions",
    ["status"],
)

settlement_outcome_counter = Counter(
    "carestint_settlement_outcomes_total",
    "Disbursement attempts by outcome",
    ["outcome"],  # completed | failed | in_flight
)

# Ledger metrics
ledger_entry_counter = Counter(
    "carestint_ledger_entries_total",
    "Ledger entries appended",
    ["reference_type"],
)

invariant_violation_counter = Counter(
    "carestint_invariant_violations_total",
    "Engine invariant violations (bugs)",
)

# External service latency
gateway_latency_histogram = Histogram(
    "gateway_latency_seconds",
    "Payment gateway response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

rail_latency_histogram = Histogram(
    "rail_latency_seconds",
    "Disbursement rail response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "gateway_failures_total",
    "Failed or timed out payment gateway calls",
)

rail_failure_counter = Counter(
    "rail_failures_total",
    "Failed or timed out disbursement rail calls",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_settlement_outcome(outcome: str) -> None:
    """Count one disbursement attempt result"""
    settlement_outcome_counter.labels(outcome=outcome).inc()
