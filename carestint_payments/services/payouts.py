"""Payout scheduler - derives payout obligations and tracks eligibility timing"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carestint_payments.config import Settings
from carestint_payments.domain.exceptions import (
    DuplicatePayoutError,
    InvalidTransitionError,
    NotFoundError,
    PayoutNotEligibleError,
)
from carestint_payments.domain.fees import FeeSchedule, compute_payout
from carestint_payments.domain.models import PaymentIntentStatus, PayoutStatus
from carestint_payments.infrastructure.database.models import PaymentIntent, PayoutRecord, StintSnapshot
from carestint_payments.infrastructure.database.repositories import (
    PaymentIntentRepository,
    PayoutRepository,
    StintRepository,
)
from carestint_payments.infrastructure.observability.logging import log_payout_transition
from carestint_payments.infrastructure.observability.metrics import payout_transition_counter
from carestint_payments.services.ledger import LedgerStore
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.services.state import apply_payout_transition
from carestint_payments.services.unit_of_work import unit_of_work
from carestint_payments.utils.date_utils import ensure_utc, utcnow

# Intent states in which the employer's money is (at least partly) still held
PAYABLE_INTENT_STATUSES = (PaymentIntentStatus.SUCCESS.value, PaymentIntentStatus.PARTIALLY_REFUNDED.value)

# Payouts that have not left the platform yet and can still be paused
HOLDABLE_STATUSES = (PayoutStatus.SCHEDULED, PayoutStatus.READY_FOR_SETTLEMENT, PayoutStatus.FAILED)

REFUND_HOLD_REASON = "payment refunded"


class PayoutScheduler:
    """
    Creates one payout record per stint once the employer payment succeeded
    and the shift is completed, and moves it between scheduled, ready and
    held. Actually sending money is the settlement runner's job.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        locks: StintLockRegistry,
        fee_schedule: Optional[FeeSchedule] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.locks = locks
        self.fee_schedule = fee_schedule or FeeSchedule.from_settings(settings)
        self.clock = clock
        self.ledger = LedgerStore(db)
        self.stints = StintRepository(db)
        self.intents = PaymentIntentRepository(db)
        self.payouts = PayoutRepository(db)

    @property
    def hold_window(self) -> timedelta:
        return timedelta(hours=self.settings.payout_hold_window_hours)

    def get(self, payout_id: str) -> PayoutRecord:
        payout = self.payouts.get(payout_id)
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        return payout

    def get_by_stint(self, stint_id: str) -> Optional[PayoutRecord]:
        return self.payouts.get_by_stint(stint_id)

    def _snapshot(self, stint_id: str) -> StintSnapshot:
        snapshot = self.stints.get(stint_id)
        if snapshot is None:
            raise NotFoundError(f"Stint {stint_id} has no payment history")
        return snapshot

    def _paid_intent(self, stint_id: str) -> Optional[PaymentIntent]:
        for intent in self.intents.list_by_stint(stint_id):
            if intent.status in PAYABLE_INTENT_STATUSES:
                return intent
        return None

    # Scheduling

    def schedule(self, stint_id: str) -> PayoutRecord:
        """
        Create the payout obligation for a stint.

        Raises:
            PayoutNotEligibleError: payment not successful or shift not completed
            DuplicatePayoutError: the stint already has a payout record
        """
        with self.locks.hold(stint_id), unit_of_work(self.db, stint_id):
            snapshot = self._snapshot(stint_id)
            intent = self._paid_intent(stint_id)
            if intent is None:
                raise PayoutNotEligibleError(f"Stint {stint_id} has no successful payment")
            if snapshot.completed_at is None:
                raise PayoutNotEligibleError(f"Shift for stint {stint_id} is not completed")
            if self.payouts.get_by_stint(stint_id) is not None:
                raise DuplicatePayoutError(f"Stint {stint_id} already has a payout record")
            return self._create(snapshot, intent, self.clock())

    def schedule_if_ready(self, stint_id: str, now: datetime) -> Optional[PayoutRecord]:
        """
        Event hook for payment success and shift completion: create the payout
        once both have happened. Runs inside the caller's transaction.
        """
        snapshot = self.stints.get(stint_id)
        if snapshot is None or snapshot.completed_at is None:
            return None
        if self.payouts.get_by_stint(stint_id) is not None:
            return None
        intent = self._paid_intent(stint_id)
        if intent is None:
            return None
        return self._create(snapshot, intent, now)

    def _create(self, snapshot: StintSnapshot, intent: PaymentIntent, now: datetime) -> PayoutRecord:
        breakdown = compute_payout(intent.subtotal, self.fee_schedule)
        status = PayoutStatus.HELD if snapshot.disputed else PayoutStatus.SCHEDULED

        payout = PayoutRecord(
            stint_id=snapshot.stint_id,
            payment_intent_id=intent.id,
            professional_id=snapshot.professional_id,
            gross_amount=breakdown.gross_amount,
            platform_fee=breakdown.platform_fee,
            transfer_cost=breakdown.transfer_cost,
            net_amount=breakdown.net_amount,
            currency=intent.currency,
            payout_method=snapshot.payout_method,
            destination=snapshot.payout_destination,
            status=status.value,
            hold_reason=snapshot.dispute_reason if snapshot.disputed else None,
            shift_completed_at=snapshot.completed_at,
            eligible_at=snapshot.completed_at + self.hold_window,
            created_at=now,
            updated_at=now,
        )
        try:
            self.payouts.add(payout)
        except IntegrityError as e:
            # Unique stint_id index: someone else created it first
            raise DuplicatePayoutError(f"Stint {snapshot.stint_id} already has a payout record") from e

        payout_transition_counter.labels(status=status.value).inc()
        log_payout_transition(payout.id, payout.stint_id, "none", status.value, payout.net_amount, payout.hold_reason)
        return payout

    # Stint events

    def record_shift_completion(self, stint_id: str, completed_at: Optional[datetime] = None) -> Optional[PayoutRecord]:
        """Mark the shift completed; returns the payout if one now exists"""
        with self.locks.hold(stint_id), unit_of_work(self.db, stint_id):
            now = self.clock()
            snapshot = self._snapshot(stint_id)
            if snapshot.completed_at is None:
                snapshot.completed_at = ensure_utc(completed_at) if completed_at else now
                self.db.flush()
                logging.info(
                    "Shift completed",
                    extra={"stint_id": stint_id, "step": "shift_completion", "completed_at": snapshot.completed_at.isoformat()},
                )
            created = self.schedule_if_ready(stint_id, now)
            return created or self.payouts.get_by_stint(stint_id)

    def flag_dispute(self, stint_id: str, reason: str) -> Optional[PayoutRecord]:
        """Hold the stint's payout regardless of timing until an admin clears it"""
        with self.locks.hold(stint_id), unit_of_work(self.db, stint_id):
            now = self.clock()
            snapshot = self._snapshot(stint_id)
            snapshot.disputed = True
            snapshot.dispute_reason = reason

            payout = self.payouts.get_by_stint(stint_id)
            if payout is not None and PayoutStatus(payout.status) in HOLDABLE_STATUSES:
                self._hold(payout, reason, now)
            elif payout is not None:
                logging.warning(
                    "Dispute flagged on a payout that can no longer be held",
                    extra={"stint_id": stint_id, "payout_id": payout.id, "status": payout.status},
                )
            self.db.flush()
            return payout

    def hold_for_refund(self, stint_id: str, now: datetime) -> Optional[PayoutRecord]:
        """Hold any unreleased payout after a full refund; caller's transaction"""
        payout = self.payouts.get_by_stint(stint_id)
        if payout is not None and PayoutStatus(payout.status) in HOLDABLE_STATUSES:
            self._hold(payout, REFUND_HOLD_REASON, now)
        return payout

    def _hold(self, payout: PayoutRecord, reason: str, now: datetime) -> None:
        payout.hold_reason = reason
        apply_payout_transition(self.ledger, payout, PayoutStatus.HELD, [], now, reason)

    def release_hold(self, payout_id: str) -> PayoutRecord:
        """Admin clears a hold; the payout resumes where its timing puts it"""
        payout = self.get(payout_id)
        with self.locks.hold(payout.stint_id), unit_of_work(self.db, payout.stint_id):
            now = self.clock()
            self.db.refresh(payout)
            if payout.status != PayoutStatus.HELD.value:
                raise InvalidTransitionError("payout", payout.status, PayoutStatus.SCHEDULED.value)

            target = PayoutStatus.READY_FOR_SETTLEMENT if payout.eligible_at <= now else PayoutStatus.SCHEDULED
            reason = f"hold released: {payout.hold_reason}"
            payout.hold_reason = None
            snapshot = self.stints.get(payout.stint_id)
            if snapshot is not None:
                snapshot.disputed = False
            apply_payout_transition(self.ledger, payout, target, [], now, reason)
            return payout

    def promote_eligible(self, now: Optional[datetime] = None) -> int:
        """Flip scheduled payouts whose hold window has elapsed to ready_for_settlement"""
        now = now or self.clock()
        promoted = 0
        for payout in self.payouts.list_due(now):
            with self.locks.hold(payout.stint_id), unit_of_work(self.db, payout.stint_id):
                # Re-read under the lock; a dispute may have held it meanwhile
                self.db.refresh(payout)
                if payout.status != PayoutStatus.SCHEDULED.value:
                    continue
                apply_payout_transition(self.ledger, payout, PayoutStatus.READY_FOR_SETTLEMENT, [], now)
                promoted += 1
        return promoted
