"""Allowed status transitions and the ledger entries each one must carry"""

from typing import Dict, FrozenSet

from carestint_payments.domain.exceptions import InvalidTransitionError, LedgerInvariantError
from carestint_payments.domain.models import PaymentIntentStatus as PI
from carestint_payments.domain.models import PayoutStatus as PO

PAYMENT_TRANSITIONS: Dict[PI, FrozenSet[PI]] = {
    PI.INITIATED: frozenset({PI.PENDING, PI.EXPIRED, PI.CANCELLED}),
    PI.PENDING: frozenset({PI.SUCCESS, PI.FAILED, PI.CANCELLED}),
    PI.SUCCESS: frozenset({PI.REFUNDED, PI.PARTIALLY_REFUNDED}),
    PI.PARTIALLY_REFUNDED: frozenset({PI.PARTIALLY_REFUNDED, PI.REFUNDED}),
    PI.FAILED: frozenset(),
    PI.EXPIRED: frozenset(),
    PI.CANCELLED: frozenset(),
    PI.REFUNDED: frozenset(),
}

PAYOUT_TRANSITIONS: Dict[PO, FrozenSet[PO]] = {
    PO.SCHEDULED: frozenset({PO.READY_FOR_SETTLEMENT, PO.HELD}),
    PO.READY_FOR_SETTLEMENT: frozenset({PO.PROCESSING, PO.HELD}),
    PO.PROCESSING: frozenset({PO.COMPLETED, PO.FAILED}),
    PO.FAILED: frozenset({PO.PROCESSING, PO.HELD}),
    PO.HELD: frozenset({PO.SCHEDULED, PO.READY_FOR_SETTLEMENT}),
    PO.COMPLETED: frozenset(),
}

# Number of ledger entries that must be appended together with a transition
# into each state. States not listed move no money and take none.
PAYMENT_LEDGER_EFFECTS: Dict[PI, int] = {
    PI.SUCCESS: 1,
    PI.FAILED: 1,  # zero-amount audit entry
    PI.EXPIRED: 1,
    PI.CANCELLED: 1,
    PI.REFUNDED: 1,
    PI.PARTIALLY_REFUNDED: 1,
}

PAYOUT_LEDGER_EFFECTS: Dict[PO, int] = {
    PO.COMPLETED: 2,  # payout + fee
}

PAYMENT_TERMINAL_FAILURES = frozenset({PI.FAILED, PI.EXPIRED, PI.CANCELLED})
PAYMENT_OPEN = frozenset({PI.INITIATED, PI.PENDING})


def check_payment_transition(current: PI, target: PI, ledger_entries: int) -> None:
    """Raise unless current -> target is legal and carries the right ledger entries"""
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError("payment_intent", current.value, target.value)
    expected = PAYMENT_LEDGER_EFFECTS.get(target, 0)
    if ledger_entries != expected:
        raise LedgerInvariantError(
            f"payment_intent transition {current.value} -> {target.value} "
            f"requires {expected} ledger entries, got {ledger_entries}"
        )


def check_payout_transition(current: PO, target: PO, ledger_entries: int) -> None:
    """Raise unless current -> target is legal and carries the right ledger entries"""
    if target not in PAYOUT_TRANSITIONS[current]:
        raise InvalidTransitionError("payout", current.value, target.value)
    expected = PAYOUT_LEDGER_EFFECTS.get(target, 0)
    if ledger_entries != expected:
        raise LedgerInvariantError(
            f"payout transition {current.value} -> {target.value} "
            f"requires {expected} ledger entries, got {ledger_entries}"
        )
