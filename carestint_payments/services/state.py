"""Apply status transitions together with their ledger entries"""

from datetime import datetime
from typing import List, Optional

from carestint_payments.domain.models import PaymentIntentStatus, PayoutStatus
from carestint_payments.domain.transitions import check_payment_transition, check_payout_transition
from carestint_payments.infrastructure.database.models import LedgerEntry, PaymentIntent, PayoutRecord
from carestint_payments.infrastructure.observability.logging import log_payment_transition, log_payout_transition
from carestint_payments.infrastructure.observability.metrics import (
    payment_transition_counter,
    payout_transition_counter,
)
from carestint_payments.services.ledger import LedgerStore


def apply_payment_transition(
    ledger: LedgerStore,
    intent: PaymentIntent,
    target: PaymentIntentStatus,
    entries: List[LedgerEntry],
    now: datetime,
    reason: Optional[str] = None,
) -> None:
    """
    Move a payment intent to target, appending exactly the entries the
    transition table demands. Validation happens before anything is written.
    """
    current = PaymentIntentStatus(intent.status)
    check_payment_transition(current, target, len(entries))

    if entries:
        ledger.append_all(entries)
    intent.status = target.value
    intent.updated_at = now
    ledger.db.flush()

    payment_transition_counter.labels(status=target.value).inc()
    log_payment_transition(intent.id, intent.stint_id, current.value, target.value, intent.amount, reason)


def apply_payout_transition(
    ledger: LedgerStore,
    payout: PayoutRecord,
    target: PayoutStatus,
    entries: List[LedgerEntry],
    now: datetime,
    reason: Optional[str] = None,
) -> None:
    """Payout counterpart of apply_payment_transition"""
    current = PayoutStatus(payout.status)
    check_payout_transition(current, target, len(entries))

    if entries:
        ledger.append_all(entries)
    payout.status = target.value
    payout.updated_at = now
    ledger.db.flush()

    payout_transition_counter.labels(status=target.value).inc()
    log_payout_transition(payout.id, payout.stint_id, current.value, target.value, payout.net_amount, reason)
