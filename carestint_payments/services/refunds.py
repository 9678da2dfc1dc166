"""Refund/dispute resolver - reverses prior ledger effects on admin decision"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from carestint_payments.config import Settings
from carestint_payments.domain.exceptions import (
    InvalidRefundError,
    InvalidTransitionError,
    NotFoundError,
    PayoutNotEligibleError,
    RefundExceedsBalanceError,
)
from carestint_payments.domain.models import (
    LedgerReferenceType,
    PaymentIntentStatus,
    PayoutStatus,
    RefundResult,
)
from carestint_payments.infrastructure.clients.gateway import PaymentGateway
from carestint_payments.infrastructure.database.models import LedgerEntry, PaymentIntent
from carestint_payments.infrastructure.database.repositories import (
    PaymentIntentRepository,
    PayoutRepository,
    StintRepository,
)
from carestint_payments.infrastructure.observability.metrics import refund_amount_counter
from carestint_payments.services.ledger import LedgerStore, ledger_entry
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.state import apply_payment_transition
from carestint_payments.services.unit_of_work import unit_of_work
from carestint_payments.utils.date_utils import ensure_utc, hours_between, utcnow

REFUNDABLE_STATUSES = (PaymentIntentStatus.SUCCESS.value, PaymentIntentStatus.PARTIALLY_REFUNDED.value)


class RefundResolver:
    """
    Refunds employer payments and applies post-settlement adjustments.

    Refunds never touch a completed payout. When money has already gone to
    the professional the books are brought back to zero explicitly, either
    by recovering the payout or by the platform absorbing the refund.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        scheduler: PayoutScheduler,
        locks: StintLockRegistry,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.scheduler = scheduler
        self.locks = locks
        self.settings = settings
        self.clock = clock
        self.ledger = LedgerStore(db)
        self.intents = PaymentIntentRepository(db)
        self.payouts = PayoutRepository(db)
        self.stints = StintRepository(db)

    def _intent(self, payment_intent_id: str) -> PaymentIntent:
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise NotFoundError(f"Payment intent {payment_intent_id} not found")
        return intent

    def refunded_so_far(self, intent: PaymentIntent) -> int:
        # Refund entries are negative against the clearing balance
        return -self.ledger.sum_by_reference(LedgerReferenceType.REFUND, intent.id)

    def issue_refund(self, payment_intent_id: str, reason: str, amount: Optional[int] = None) -> RefundResult:
        """
        Refund an employer payment in full or in part.

        Requirements:
        - Full refund (amount omitted) only while the intent is success
        - Partial refunds allowed until cumulative refunds reach the amount paid
        - The gateway refund happens before any state change

        Raises:
            InvalidRefundError: non-positive amount
            RefundExceedsBalanceError: amount above what is still refundable
            InvalidTransitionError: intent was never paid or is fully refunded
        """
        intent = self._intent(payment_intent_id)
        with self.locks.hold(intent.stint_id):
            self.db.refresh(intent)
            refunded = self.refunded_so_far(intent)
            remaining = intent.amount - refunded

            if amount is None:
                if intent.status != PaymentIntentStatus.SUCCESS.value:
                    raise InvalidTransitionError("payment_intent", intent.status, PaymentIntentStatus.REFUNDED.value)
                amount = remaining
                if amount <= 0:
                    raise InvalidRefundError(f"Payment intent {intent.id} has nothing to refund")
            else:
                if intent.status not in REFUNDABLE_STATUSES:
                    raise InvalidTransitionError(
                        "payment_intent", intent.status, PaymentIntentStatus.PARTIALLY_REFUNDED.value
                    )
                if amount <= 0:
                    raise InvalidRefundError(f"Refund amount must be positive, got {amount}")
                if amount > remaining:
                    raise RefundExceedsBalanceError(intent.id, amount, remaining)

            target = PaymentIntentStatus.REFUNDED if amount == remaining else PaymentIntentStatus.PARTIALLY_REFUNDED

            # Gateway errors propagate here with nothing written
            self.gateway.refund(intent.external_reference, amount)

            with unit_of_work(self.db, intent.stint_id):
                now = self.clock()
                entry = ledger_entry(
                    intent.stint_id,
                    f"Refund to employer: {reason}",
                    -amount,
                    intent.currency,
                    LedgerReferenceType.REFUND,
                    intent.id,
                    now,
                )
                apply_payment_transition(self.ledger, intent, target, [entry], now, reason)
                if target == PaymentIntentStatus.REFUNDED:
                    self.scheduler.hold_for_refund(intent.stint_id, now)

            refund_amount_counter.labels(currency=intent.currency).inc(amount)
            return RefundResult(
                payment_intent_id=intent.id,
                refunded_amount=amount,
                total_refunded=refunded + amount,
                remaining_refundable=remaining - amount,
                status=target,
                ledger_entry_id=entry.id,
            )

    def refund_for_cancellation(self, payment_intent_id: str, reason: str) -> RefundResult:
        """
        Employer cancels a paid stint.

        Cancelling at least 24h before the first shift refunds whatever is
        still refundable; a later cancellation refunds nothing.
        """
        intent = self._intent(payment_intent_id)
        snapshot = self.stints.get(intent.stint_id)
        if snapshot is None:
            raise NotFoundError(f"Stint {intent.stint_id} not found")

        now = self.clock()
        first_shift = min(ensure_utc(datetime.fromisoformat(d)) for d in snapshot.shift_dates)
        notice_hours = hours_between(now, first_shift)

        if notice_hours >= self.settings.cancellation_refund_window_hours:
            refundable = intent.amount - self.refunded_so_far(intent)
            partial = None if intent.status == PaymentIntentStatus.SUCCESS.value else refundable
            return self.issue_refund(intent.id, f"cancellation: {reason}", partial)

        logging.info(
            "Late cancellation, no refund",
            extra={
                "payment_intent_id": intent.id,
                "stint_id": intent.stint_id,
                "step": "cancellation_refund",
                "notice_hours": round(notice_hours, 2),
            },
        )
        refunded = self.refunded_so_far(intent)
        return RefundResult(
            payment_intent_id=intent.id,
            refunded_amount=0,
            total_refunded=refunded,
            remaining_refundable=intent.amount - refunded,
            status=PaymentIntentStatus(intent.status),
        )

    def recover_payout(self, payout_id: str, amount: int, reason: str) -> LedgerEntry:
        """Claw back part or all of a completed payout from the professional"""
        payout = self.scheduler.get(payout_id)
        with self.locks.hold(payout.stint_id), unit_of_work(self.db, payout.stint_id):
            self.db.refresh(payout)
            if payout.status != PayoutStatus.COMPLETED.value:
                raise PayoutNotEligibleError(f"Payout {payout.id} is {payout.status}; only completed payouts can be recovered")
            if amount <= 0:
                raise InvalidRefundError(f"Recovery amount must be positive, got {amount}")

            # -net at completion, moving towards zero with every recovery
            outstanding = -self.ledger.sum_by_reference(LedgerReferenceType.PAYOUT, payout.id)
            if amount > outstanding:
                raise InvalidRefundError(
                    f"Recovery of {amount} exceeds the {outstanding} still held by the professional"
                )

            entry = ledger_entry(
                payout.stint_id,
                f"Payout recovered: {reason}",
                amount,
                payout.currency,
                LedgerReferenceType.PAYOUT,
                payout.id,
                self.clock(),
            )
            self.ledger.append(entry)
            logging.info(
                "Payout recovered",
                extra={"payout_id": payout.id, "stint_id": payout.stint_id, "step": "recover_payout", "amount": amount},
            )
            return entry

    def absorb_refund(self, stint_id: str, amount: int, reason: str) -> LedgerEntry:
        """Platform funds a refund issued after the professional was paid"""
        payout = self.payouts.get_by_stint(stint_id)
        if payout is None:
            raise NotFoundError(f"Stint {stint_id} has no payout")
        with self.locks.hold(stint_id), unit_of_work(self.db, stint_id):
            self.db.refresh(payout)
            if payout.status != PayoutStatus.COMPLETED.value:
                raise PayoutNotEligibleError(f"Payout for stint {stint_id} is not completed")
            if amount <= 0:
                raise InvalidRefundError(f"Absorbed amount must be positive, got {amount}")

            deficit = -self.ledger.balance(stint_id)
            if amount > deficit:
                raise InvalidRefundError(f"Absorbing {amount} exceeds the stint's deficit of {deficit}")

            entry = ledger_entry(
                stint_id,
                f"Refund absorbed by platform: {reason}",
                amount,
                payout.currency,
                LedgerReferenceType.FEE,
                payout.id,
                self.clock(),
            )
            self.ledger.append(entry)
            logging.info(
                "Refund absorbed by platform",
                extra={"payout_id": payout.id, "stint_id": stint_id, "step": "absorb_refund", "amount": amount},
            )
            return entry
