"""Settlement runner - releases eligible payouts through the disbursement rail"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from carestint_payments.config import Settings
from carestint_payments.domain.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    RailAPIError,
    RailTimeoutError,
    RetryLimitExceededError,
    RetryTooSoonError,
)
from carestint_payments.domain.models import (
    LedgerReferenceType,
    PayoutStatus,
    RailResult,
    SettlementStats,
    SettlementSummary,
)
from carestint_payments.infrastructure.clients.rail import FINAL_STATUSES, DisbursementRail
from carestint_payments.infrastructure.database.models import PayoutRecord
from carestint_payments.infrastructure.database.repositories import LedgerRepository, PayoutRepository
from carestint_payments.infrastructure.observability.logging import log_settlement_run
from carestint_payments.infrastructure.observability.metrics import record_settlement_outcome
from carestint_payments.services.ledger import LedgerStore, ledger_entry
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.services.payment_intents import PaymentIntentManager
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.state import apply_payout_transition
from carestint_payments.services.unit_of_work import unit_of_work
from carestint_payments.utils.date_utils import utcnow

COMPLETED = "completed"
FAILED = "failed"
IN_FLIGHT = "in_flight"

PROCESSING_TIMEOUT_REASON = "processing timeout with no answer from rail"


class SettlementRunner:
    """
    Batch process for professional payouts.

    Each attempt is committed as processing before the rail is called, and
    carries a fresh attempt token that the rail uses as its idempotency key.
    A timeout is neither success nor failure: the record stays processing
    until the reconciliation sweep gets a definitive answer.
    """

    def __init__(
        self,
        db: Session,
        rail: DisbursementRail,
        scheduler: PayoutScheduler,
        locks: StintLockRegistry,
        settings: Settings,
        intents: Optional[PaymentIntentManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rail = rail
        self.scheduler = scheduler
        self.locks = locks
        self.settings = settings
        self.intents = intents
        self.clock = clock
        self.ledger = LedgerStore(db)
        self.payouts = PayoutRepository(db)

    def process_eligible_payouts(self, now: Optional[datetime] = None) -> SettlementSummary:
        """
        Promote due payouts, then attempt every ready_for_settlement record.

        Scheduled payouts still inside their hold window and held payouts are
        left alone.
        """
        start_time = time.time()
        now = now or self.clock()
        summary = SettlementSummary(promoted=self.scheduler.promote_eligible(now))

        for payout_id in [p.id for p in self.payouts.list_by_status(PayoutStatus.READY_FOR_SETTLEMENT)]:
            payout = self.payouts.get(payout_id)
            try:
                outcome = self._attempt(payout, retry=False)
            except (InvalidTransitionError, ConcurrentModificationError):
                # Moved on (held, or picked up elsewhere) since it was listed
                continue
            self._tally(summary, outcome)

        duration_ms = (time.time() - start_time) * 1000
        log_settlement_run(summary.processed, summary.failed, summary.in_flight, summary.promoted, duration_ms)
        return summary

    def retry_payout(self, payout_id: str) -> PayoutRecord:
        """
        Admin-driven retry: failed -> processing -> completed | failed.

        Raises:
            InvalidTransitionError: payout is not failed
            RetryLimitExceededError: payout already retried the maximum times
            RetryTooSoonError: the spacing since the last failure has not elapsed
        """
        payout = self.scheduler.get(payout_id)
        self._attempt(payout, retry=True)
        self.db.refresh(payout)
        return payout

    def reconcile_stuck_payouts(self, now: Optional[datetime] = None) -> int:
        """
        Resolve payouts left in processing past the timeout, e.g. after a crash
        mid-batch. The rail is asked first; without a definitive answer the
        attempt is marked failed so an admin can retry it.
        """
        now = now or self.clock()
        started_before = now - timedelta(minutes=self.settings.processing_timeout_minutes)
        resolved = 0

        for payout_id in [p.id for p in self.payouts.list_stuck_processing(started_before)]:
            payout = self.payouts.get(payout_id)
            with self.locks.hold(payout.stint_id):
                self.db.refresh(payout)
                if payout.status != PayoutStatus.PROCESSING.value:
                    continue

                reference = payout.rail_reference or payout.attempt_token
                result: Optional[RailResult] = None
                if reference:
                    try:
                        result = self.rail.get_status(reference)
                    except (RailTimeoutError, RailAPIError) as e:
                        logging.warning(
                            f"Rail status lookup failed: {e}",
                            extra={"payout_id": payout.id, "stint_id": payout.stint_id, "step": "reconcile"},
                        )

                if result is not None and result.status == "pending":
                    continue

                with unit_of_work(self.db, payout.stint_id):
                    now = self.clock()
                    if result is not None and result.status in FINAL_STATUSES:
                        self._apply_rail_result(payout, result, now)
                    else:
                        self._fail(payout, PROCESSING_TIMEOUT_REASON, now)
                resolved += 1

        if resolved:
            logging.info("Reconciled stuck payouts", extra={"step": "reconcile", "count": resolved})
        return resolved

    def run_cycle(self, now: Optional[datetime] = None) -> SettlementSummary:
        """One scheduled tick: expire stale intents, sweep stuck payouts, settle"""
        now = now or self.clock()
        if self.intents is not None:
            self.intents.expire_stale(now)
        self.reconcile_stuck_payouts(now)
        return self.process_eligible_payouts(now)

    def stats(self) -> SettlementStats:
        """Payout counts per status, total paid out and retained platform revenue"""
        by_status = {status.value: 0 for status in PayoutStatus}
        by_status.update(self.payouts.count_by_status())
        pending = sum(
            by_status[s.value]
            for s in (PayoutStatus.SCHEDULED, PayoutStatus.READY_FOR_SETTLEMENT, PayoutStatus.PROCESSING)
        )
        # Fee entries leave the clearing balance, so revenue is their negated sum
        revenue = -LedgerRepository(self.db).sum_by_type(LedgerReferenceType.FEE.value)
        return SettlementStats(
            payouts_by_status=by_status,
            total_paid_out=self.payouts.total_net_completed(),
            platform_revenue=revenue,
            pending_payouts=pending,
        )

    # Attempts

    def _attempt(self, payout: PayoutRecord, retry: bool) -> str:
        """Run one disbursement attempt; returns completed, failed or in_flight"""
        with self.locks.hold(payout.stint_id):
            with unit_of_work(self.db, payout.stint_id):
                now = self.clock()
                self.db.refresh(payout)
                expected = PayoutStatus.FAILED if retry else PayoutStatus.READY_FOR_SETTLEMENT
                if payout.status != expected.value:
                    raise InvalidTransitionError("payout", payout.status, PayoutStatus.PROCESSING.value)
                if retry:
                    if payout.retry_count >= self.settings.max_payout_retries:
                        raise RetryLimitExceededError(
                            f"Payout {payout.id} already retried {payout.retry_count} times"
                        )
                    earliest = self._next_retry_at(payout)
                    if earliest is not None and now < earliest:
                        raise RetryTooSoonError(
                            f"Payout {payout.id} can be retried from {earliest.isoformat()}"
                        )
                    payout.retry_count += 1

                payout.attempt_token = f"pat_{uuid.uuid4().hex}"
                payout.rail_reference = None
                payout.failure_reason = None
                payout.processing_started_at = now
                apply_payout_transition(self.ledger, payout, PayoutStatus.PROCESSING, [], now)

            # Committed as processing: a crash from here on is picked up by the sweep
            try:
                result = self.rail.initiate_payout(
                    payout.payout_method,
                    payout.destination,
                    payout.net_amount,
                    payout.currency,
                    payout.attempt_token,
                )
            except (RailTimeoutError, RailAPIError) as e:
                logging.warning(
                    f"Disbursement outcome unknown: {e}",
                    extra={"payout_id": payout.id, "stint_id": payout.stint_id, "step": "disbursement"},
                )
                record_settlement_outcome(IN_FLIGHT)
                return IN_FLIGHT

            with unit_of_work(self.db, payout.stint_id):
                now = self.clock()
                if result.rail_reference:
                    payout.rail_reference = result.rail_reference
                if result.status not in FINAL_STATUSES:
                    record_settlement_outcome(IN_FLIGHT)
                    return IN_FLIGHT
                outcome = self._apply_rail_result(payout, result, now)

            record_settlement_outcome(outcome)
            return outcome

    def _next_retry_at(self, payout: PayoutRecord) -> Optional[datetime]:
        """Retries back off from the last failure: base, 3*base, 9*base minutes"""
        if payout.failed_at is None:
            return None
        delay = self.settings.payout_retry_base_minutes * 3**payout.retry_count
        return payout.failed_at + timedelta(minutes=delay)

    def _apply_rail_result(self, payout: PayoutRecord, result: RailResult, now: datetime) -> str:
        if result.rail_reference:
            payout.rail_reference = result.rail_reference
        if result.status == COMPLETED:
            self._complete(payout, now)
            return COMPLETED
        self._fail(payout, result.message or "rejected by disbursement rail", now)
        return FAILED

    def _complete(self, payout: PayoutRecord, now: datetime) -> None:
        """
        Record the transfer and the platform's retained share.

        The fee entry takes whatever the payout leaves on the clearing balance:
        booking fee, service fee and transfer cost, net of promo credit and
        earlier refunds. Together the pair settle the stint to zero.
        """
        balance = self.ledger.balance(payout.stint_id)
        retained = balance - payout.net_amount
        booking_fee = retained - payout.platform_fee - payout.transfer_cost
        entries = [
            ledger_entry(
                payout.stint_id,
                f"Payout to professional via {payout.payout_method}",
                -payout.net_amount,
                payout.currency,
                LedgerReferenceType.PAYOUT,
                payout.id,
                now,
            ),
            ledger_entry(
                payout.stint_id,
                (
                    f"Platform fees retained: service fee {payout.platform_fee}, "
                    f"transfer cost {payout.transfer_cost}, "
                    f"booking fee net of credits and refunds {booking_fee}"
                ),
                -retained,
                payout.currency,
                LedgerReferenceType.FEE,
                payout.id,
                now,
            ),
        ]
        payout.completed_at = now
        apply_payout_transition(self.ledger, payout, PayoutStatus.COMPLETED, entries, now)
        self.ledger.assert_settled(payout.stint_id)

    def _fail(self, payout: PayoutRecord, reason: str, now: datetime) -> None:
        payout.failure_reason = reason
        payout.failed_at = now
        apply_payout_transition(self.ledger, payout, PayoutStatus.FAILED, [], now, reason)

    @staticmethod
    def _tally(summary: SettlementSummary, outcome: str) -> None:
        if outcome == COMPLETED:
            summary.processed += 1
        elif outcome == FAILED:
            summary.failed += 1
        else:
            summary.in_flight += 1
