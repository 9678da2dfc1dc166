"""Payment intent manager - employer payment lifecycle from invoice to settlement"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carestint_payments.config import Settings
from carestint_payments.domain.exceptions import (
    AlreadyFinalizedError,
    GatewayAPIError,
    GatewayDeclinedError,
    GatewayTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    PromotionNotApplicableError,
)
from carestint_payments.domain.fees import FeeSchedule, compute_fees
from carestint_payments.domain.models import (
    GatewayResult,
    LedgerReferenceType,
    PaymentDetails,
    PaymentIntentStatus,
    Promotion,
    Stint,
)
from carestint_payments.domain.promotions import check_promotion_eligibility
from carestint_payments.infrastructure.clients.gateway import NOT_FOUND, PaymentGateway
from carestint_payments.infrastructure.database.models import PaymentIntent
from carestint_payments.infrastructure.database.repositories import (
    ConfirmationRepository,
    PaymentIntentRepository,
    PromotionUsageRepository,
    StintRepository,
)
from carestint_payments.infrastructure.observability.logging import log_payment_transition
from carestint_payments.infrastructure.observability.metrics import (
    duplicate_confirmation_counter,
    payment_transition_counter,
)
from carestint_payments.services.ledger import LedgerStore, ledger_entry
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.state import apply_payment_transition
from carestint_payments.services.unit_of_work import unit_of_work
from carestint_payments.utils.date_utils import utcnow

SUCCESS = "success"
FAILED = "failed"


class PaymentIntentManager:
    """
    Owns the employer-side state machine:

        initiated -> pending -> success | failed
        initiated -> expired
        initiated | pending -> cancelled

    Refunds out of success are handled by the refund resolver. Success is
    the only outcome that hands the stint to the payout scheduler.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        scheduler: PayoutScheduler,
        locks: StintLockRegistry,
        settings: Settings,
        fee_schedule: Optional[FeeSchedule] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.gateway = gateway
        self.scheduler = scheduler
        self.locks = locks
        self.settings = settings
        self.fee_schedule = fee_schedule or FeeSchedule.from_settings(settings)
        self.clock = clock
        self.sleep = sleep
        self.ledger = LedgerStore(db)
        self.intents = PaymentIntentRepository(db)
        self.confirmations = ConfirmationRepository(db)
        self.promotion_usage = PromotionUsageRepository(db)
        self.stints = StintRepository(db)

    def get(self, intent_id: str) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise NotFoundError(f"Payment intent {intent_id} not found")
        return intent

    def list_by_stint(self, stint_id: str) -> List[PaymentIntent]:
        return self.intents.list_by_stint(stint_id)

    def create_intent(
        self,
        stint: Stint,
        payment_method: str,
        promotion: Optional[Promotion] = None,
        employer_signed_up_at: Optional[datetime] = None,
    ) -> PaymentIntent:
        """
        Open an intent for the stint's payable total.

        A stint has at most one live intent; a new one may be opened only after
        the previous one failed, expired or was cancelled. An eligible promotion
        is applied and its use recorded against the employer.

        Raises:
            InvalidFeeInputError: bad rate or dates
            PromotionNotApplicableError: promotion inactive, expired or used up
            InvalidTransitionError: the stint already has a live intent
        """
        with self.locks.hold(stint.stint_id), unit_of_work(self.db, stint.stint_id):
            now = self.clock()

            live = self.intents.get_live_for_stint(stint.stint_id)
            if live is not None:
                raise InvalidTransitionError("payment_intent", live.status, PaymentIntentStatus.INITIATED.value)

            promo_credit = 0
            if promotion is not None:
                if employer_signed_up_at is None:
                    raise PromotionNotApplicableError(
                        f"Promotion {promotion.promotion_id} needs the employer signup date"
                    )
                uses = self.promotion_usage.count_uses(promotion.promotion_id, stint.employer_id)
                check_promotion_eligibility(promotion, employer_signed_up_at, uses, now)
                promo_credit = promotion.credit_amount

            breakdown = compute_fees(stint.offered_rate, stint.shift_dates, promo_credit, now, self.fee_schedule)

            self.stints.upsert_from_stint(stint)
            intent = self.intents.add(
                PaymentIntent(
                    stint_id=stint.stint_id,
                    employer_id=stint.employer_id,
                    amount=breakdown.final_total,
                    subtotal=breakdown.subtotal,
                    platform_fee=breakdown.total_fee,
                    promo_discount=breakdown.promo_discount,
                    promotion_id=promotion.promotion_id if promotion else None,
                    currency=stint.currency,
                    payment_method=payment_method,
                    status=PaymentIntentStatus.INITIATED.value,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + timedelta(minutes=self.settings.payment_expiry_minutes),
                )
            )
            if promotion is not None:
                self.promotion_usage.record(
                    promotion.promotion_id, stint.employer_id, stint.stint_id, breakdown.promo_discount, now
                )

            payment_transition_counter.labels(status=PaymentIntentStatus.INITIATED.value).inc()
            log_payment_transition(intent.id, intent.stint_id, "none", intent.status, intent.amount)
            return intent

    def submit(self, intent_id: str, details: PaymentDetails) -> PaymentIntent:
        """
        Charge the employer through the gateway.

        Accepted charges move to pending; an immediate confirmation is applied
        on the spot and a decline ends in failed. A gateway timeout or outage
        propagates with the intent still initiated and the charge attempt
        recorded, so the expiry sweep asks the gateway before expiring it.
        """
        intent = self.get(intent_id)
        with self.locks.hold(intent.stint_id):
            with unit_of_work(self.db, intent.stint_id):
                now = self.clock()
                self.db.refresh(intent)
                if intent.status != PaymentIntentStatus.INITIATED.value:
                    raise InvalidTransitionError("payment_intent", intent.status, PaymentIntentStatus.PENDING.value)
                expired = intent.expires_at <= now
                if not expired:
                    intent.charge_attempted_at = now
                elif intent.charge_attempted_at is None:
                    self._terminate(intent, PaymentIntentStatus.EXPIRED, "payment window elapsed", now)
            if expired:
                raise InvalidTransitionError("payment_intent", PaymentIntentStatus.EXPIRED.value, PaymentIntentStatus.PENDING.value)

            try:
                result = self.gateway.charge_or_confirm(intent.id, intent.amount, intent.currency, details)
            except GatewayDeclinedError as e:
                with unit_of_work(self.db, intent.stint_id):
                    now = self.clock()
                    intent.external_reference = e.gateway_reference or intent.external_reference
                    apply_payment_transition(self.ledger, intent, PaymentIntentStatus.PENDING, [], now)
                    self._terminate(intent, PaymentIntentStatus.FAILED, e.reason, now)
                return intent

            with unit_of_work(self.db, intent.stint_id):
                now = self.clock()
                intent.external_reference = result.gateway_reference
                apply_payment_transition(self.ledger, intent, PaymentIntentStatus.PENDING, [], now, result.message or None)
                if result.status == SUCCESS:
                    self._apply_confirmation(intent, result.gateway_reference, SUCCESS, None, now)
            return intent

    def confirm(
        self,
        stint_id: str,
        external_reference: str,
        outcome: str,
        reason: Optional[str] = None,
        tx_ref: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Apply a gateway confirmation (webhook).

        A charge whose submit timed out never learned its gateway reference.
        Such an intent is matched by tx_ref (the intent id) when the gateway
        sends it, otherwise as the stint's live intent awaiting a reference.

        Raises:
            AlreadyFinalizedError: this (stint, reference) was applied before
            NotFoundError: no intent carries the reference
            InvalidTransitionError: the intent is no longer pending
        """
        with self.locks.hold(stint_id), unit_of_work(self.db, stint_id):
            now = self.clock()
            if self.confirmations.exists(stint_id, external_reference):
                duplicate_confirmation_counter.inc()
                raise AlreadyFinalizedError(
                    f"Confirmation {external_reference} for stint {stint_id} was already applied"
                )

            intent = self.intents.get_by_external_reference(stint_id, external_reference)
            if intent is None:
                intent = self._awaiting_reference(stint_id, tx_ref)
            if intent is None:
                raise NotFoundError(f"No payment intent for stint {stint_id} with reference {external_reference}")

            if intent.status == PaymentIntentStatus.INITIATED.value:
                self._mark_pending(intent, external_reference, now)
            self._apply_confirmation(intent, external_reference, outcome, reason, now)
            return intent

    def poll_confirmation(self, intent_id: str) -> PaymentIntent:
        """
        Ask the gateway for the outcome of a pending intent.

        Retry strategy:
        - Exponential backoff on GatewayTimeoutError: base, 2*base, 4*base, ...
        - After the last attempt the timeout propagates; the intent stays pending
        """
        intent = self.get(intent_id)
        if intent.status != PaymentIntentStatus.PENDING.value or not intent.external_reference:
            return intent

        attempt = 0
        while True:
            try:
                result = self.gateway.check_status(intent.external_reference)
                outcome, reason = result.status, None
                break
            except GatewayDeclinedError as e:
                outcome, reason = FAILED, e.reason
                break
            except GatewayTimeoutError:
                attempt += 1
                if attempt >= self.settings.gateway_max_retries:
                    raise
                backoff = self.settings.gateway_backoff_base * (2 ** (attempt - 1))
                self.sleep(backoff)

        if outcome not in (SUCCESS, FAILED):
            return intent

        with self.locks.hold(intent.stint_id), unit_of_work(self.db, intent.stint_id):
            now = self.clock()
            self.db.refresh(intent)
            # A webhook may have landed while we were polling
            if self.confirmations.exists(intent.stint_id, intent.external_reference):
                return intent
            self._apply_confirmation(intent, intent.external_reference, outcome, reason, now)
            return intent

    def cancel(self, intent_id: str, reason: str) -> PaymentIntent:
        """Employer or admin abandons an unresolved intent"""
        intent = self.get(intent_id)
        with self.locks.hold(intent.stint_id), unit_of_work(self.db, intent.stint_id):
            self.db.refresh(intent)
            self._terminate(intent, PaymentIntentStatus.CANCELLED, reason, self.clock())
            return intent

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """
        Expire initiated intents whose payment window has elapsed.

        An intent whose charge was sent but never answered is looked up at
        the gateway by tx_ref first. A success or failure is applied, a charge
        still in progress moves to pending, and only a charge the gateway has
        no record of expires. Without an answer the intent is left for the
        next sweep.
        """
        now = now or self.clock()
        expired = 0
        for intent_id in [i.id for i in self.intents.list_expired_unconfirmed(now)]:
            intent = self.intents.get(intent_id)
            result: Optional[GatewayResult] = None
            if intent.charge_attempted_at is not None:
                try:
                    result = self._lookup_charge(intent)
                except (GatewayTimeoutError, GatewayAPIError) as e:
                    logging.warning(
                        f"Charge lookup failed, intent left initiated: {e}",
                        extra={"payment_intent_id": intent.id, "stint_id": intent.stint_id, "step": "expire_stale"},
                    )
                    continue

            with self.locks.hold(intent.stint_id), unit_of_work(self.db, intent.stint_id):
                self.db.refresh(intent)
                if intent.status != PaymentIntentStatus.INITIATED.value:
                    continue
                if result is None or result.status == NOT_FOUND:
                    self._terminate(intent, PaymentIntentStatus.EXPIRED, "payment window elapsed", now)
                    expired += 1
                    continue

                reference = result.gateway_reference or intent.id
                if self.confirmations.exists(intent.stint_id, reference):
                    continue
                self._mark_pending(intent, reference, now)
                if result.status in (SUCCESS, FAILED):
                    self._apply_confirmation(intent, reference, result.status, result.message or None, now)
        if expired:
            logging.info("Expired stale payment intents", extra={"step": "expire_stale", "count": expired})
        return expired

    def _lookup_charge(self, intent: PaymentIntent) -> GatewayResult:
        """Gateway view of a charge by tx_ref; a decline comes back as a failed result"""
        try:
            return self.gateway.check_status(intent.external_reference or intent.id)
        except GatewayDeclinedError as e:
            return GatewayResult(status=FAILED, gateway_reference=e.gateway_reference or intent.id, message=e.reason)

    def _awaiting_reference(self, stint_id: str, tx_ref: Optional[str]) -> Optional[PaymentIntent]:
        if tx_ref:
            intent = self.intents.get(tx_ref)
            if intent is None or intent.stint_id != stint_id:
                return None
        else:
            intent = self.intents.get_live_for_stint(stint_id)
            if intent is None or intent.external_reference is not None:
                return None
        if intent.charge_attempted_at is None:
            return None
        return intent

    # Internal transitions, always inside the caller's transaction

    def _mark_pending(self, intent: PaymentIntent, external_reference: str, now: datetime) -> None:
        """Attach the gateway reference a timed-out submit never received"""
        intent.external_reference = external_reference
        apply_payment_transition(self.ledger, intent, PaymentIntentStatus.PENDING, [], now)

    def _apply_confirmation(
        self,
        intent: PaymentIntent,
        external_reference: str,
        outcome: str,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        if intent.status != PaymentIntentStatus.PENDING.value:
            target = PaymentIntentStatus.SUCCESS if outcome == SUCCESS else PaymentIntentStatus.FAILED
            raise InvalidTransitionError("payment_intent", intent.status, target.value)

        try:
            self.confirmations.record(intent.stint_id, external_reference, intent.id, outcome, now)
        except IntegrityError as e:
            duplicate_confirmation_counter.inc()
            raise AlreadyFinalizedError(
                f"Confirmation {external_reference} for stint {intent.stint_id} was already applied"
            ) from e

        if outcome == SUCCESS:
            entry = ledger_entry(
                intent.stint_id,
                f"Employer payment received ({intent.payment_method})",
                intent.amount,
                intent.currency,
                LedgerReferenceType.PAYMENT,
                intent.id,
                now,
            )
            intent.completed_at = now
            apply_payment_transition(self.ledger, intent, PaymentIntentStatus.SUCCESS, [entry], now)
            self.scheduler.schedule_if_ready(intent.stint_id, now)
        else:
            self._terminate(intent, PaymentIntentStatus.FAILED, reason or "declined by gateway", now)

    def _terminate(self, intent: PaymentIntent, target: PaymentIntentStatus, reason: str, now: datetime) -> None:
        """failed / expired / cancelled: zero-amount audit entry, no payout"""
        entry = ledger_entry(
            intent.stint_id,
            f"Payment {target.value}: {reason}",
            0,
            intent.currency,
            LedgerReferenceType.PAYMENT,
            intent.id,
            now,
        )
        intent.failure_reason = reason
        intent.completed_at = now
        apply_payment_transition(self.ledger, intent, target, [entry], now, reason)
