"""Integration tests for the payment intent lifecycle"""

import pytest
from datetime import timedelta
from carestint_payments.domain.exceptions import (
    AlreadyFinalizedError,
    GatewayDeclinedError,
    GatewayTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    PromotionNotApplicableError,
)
from carestint_payments.domain.models import GatewayResult, PaymentDetails, Promotion
from carestint_payments.services.ledger import LedgerStore

DETAILS = PaymentDetails(payment_method="mpesa", phone_number="254711111111")
WELCOME = Promotion(promotion_id="Welcome1000", credit_amount=1000)


def test_create_intent_computes_amount_and_expiry(manager, make_stint, clock):
    intent = manager.create_intent(make_stint(), "mpesa")

    assert intent.status == "initiated"
    assert intent.subtotal == 5000
    assert intent.platform_fee == 750
    assert intent.amount == 5750
    assert intent.expires_at == clock.now + timedelta(minutes=15)


def test_promotion_applied_once_per_employer(manager, make_stint, clock):
    signed_up = clock.now - timedelta(days=2)
    intent = manager.create_intent(make_stint(shift_hours=(30,)), "mpesa", WELCOME, signed_up)

    assert intent.promo_discount == 1000
    assert intent.amount == 4750

    with pytest.raises(PromotionNotApplicableError):
        manager.create_intent(make_stint("stint_2"), "mpesa", WELCOME, signed_up)


def test_promotion_requires_signup_date(manager, make_stint):
    with pytest.raises(PromotionNotApplicableError):
        manager.create_intent(make_stint(), "mpesa", WELCOME)


def test_only_one_live_intent_per_stint(manager, make_stint):
    manager.create_intent(make_stint(), "mpesa")

    with pytest.raises(InvalidTransitionError):
        manager.create_intent(make_stint(), "mpesa")


def test_submit_moves_to_pending(manager, make_stint, gateway, db):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)

    assert intent.status == "pending"
    assert intent.external_reference == f"gw_{intent.id}"
    assert gateway.charges == [{"tx_ref": intent.id, "amount": 5750, "currency": "KES"}]
    assert LedgerStore(db).list_by_stint(intent.stint_id) == []


def test_confirmation_success_appends_payment_entry(manager, make_stint, db):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)
    intent = manager.confirm(intent.stint_id, intent.external_reference, "success")

    entries = LedgerStore(db).list_by_stint(intent.stint_id)
    assert intent.status == "success"
    assert intent.completed_at is not None
    assert [(e.reference_type, e.amount) for e in entries] == [("payment", 5750)]


def test_duplicate_confirmation_is_a_no_op(manager, make_stint, db):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)
    manager.confirm(intent.stint_id, intent.external_reference, "success")

    with pytest.raises(AlreadyFinalizedError):
        manager.confirm(intent.stint_id, intent.external_reference, "success")

    assert len(LedgerStore(db).list_by_stint(intent.stint_id)) == 1
    assert manager.get(intent.id).status == "success"


def test_confirmation_for_unknown_reference(manager):
    with pytest.raises(NotFoundError):
        manager.confirm("stint_x", "gw_missing", "success")


def test_immediate_gateway_success_is_applied(manager, make_stint, gateway, db):
    gateway.charge_outcomes.append(GatewayResult(status="success", gateway_reference="card_1"))
    intent = manager.create_intent(make_stint(), "card")

    intent = manager.submit(intent.id, PaymentDetails(payment_method="card", card_token="tok_1"))

    assert intent.status == "success"
    assert LedgerStore(db).balance(intent.stint_id) == 5750


def test_decline_ends_in_failed_with_zero_entry(manager, make_stint, gateway, db):
    gateway.charge_outcomes.append(GatewayDeclinedError("insufficient funds", "gw_declined"))
    intent = manager.create_intent(make_stint(), "mpesa")

    intent = manager.submit(intent.id, DETAILS)

    entries = LedgerStore(db).list_by_stint(intent.stint_id)
    assert intent.status == "failed"
    assert intent.failure_reason == "insufficient funds"
    assert [(e.reference_type, e.amount) for e in entries] == [("payment", 0)]
    assert "insufficient funds" in entries[0].description


def test_new_intent_allowed_after_failure(manager, make_stint, gateway):
    gateway.charge_outcomes.append(GatewayDeclinedError("insufficient funds"))
    first = manager.create_intent(make_stint(), "mpesa")
    manager.submit(first.id, DETAILS)

    second = manager.create_intent(make_stint(), "mpesa")

    assert second.id != first.id
    assert second.status == "initiated"


def test_gateway_timeout_leaves_intent_initiated(manager, make_stint, gateway):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")

    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)

    assert manager.get(intent.id).status == "initiated"


def test_failed_confirmation_via_webhook(manager, make_stint, db, scheduler):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)

    intent = manager.confirm(intent.stint_id, intent.external_reference, "failed", "cancelled by employer")

    assert intent.status == "failed"
    assert LedgerStore(db).balance(intent.stint_id) == 0
    assert scheduler.get_by_stint(intent.stint_id) is None


def test_poll_retries_timeouts_then_applies_success(manager, make_stint, gateway):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)
    gateway.status_outcomes.extend(
        [
            GatewayTimeoutError("slow"),
            GatewayTimeoutError("slow"),
            GatewayResult(status="success", gateway_reference=intent.external_reference),
        ]
    )

    intent = manager.poll_confirmation(intent.id)

    assert intent.status == "success"


def test_poll_gives_up_after_max_retries(manager, make_stint, gateway):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)
    gateway.status_outcomes.extend([GatewayTimeoutError("slow")] * 3)

    with pytest.raises(GatewayTimeoutError):
        manager.poll_confirmation(intent.id)

    assert manager.get(intent.id).status == "pending"


def test_poll_after_webhook_does_nothing(manager, make_stint, gateway, db):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)
    manager.confirm(intent.stint_id, intent.external_reference, "success")

    intent = manager.poll_confirmation(intent.id)

    assert intent.status == "success"
    assert len(LedgerStore(db).list_by_stint(intent.stint_id)) == 1


def test_cancel_pending_intent(manager, make_stint, db):
    intent = manager.create_intent(make_stint(), "mpesa")
    intent = manager.submit(intent.id, DETAILS)

    intent = manager.cancel(intent.id, "employer changed plans")

    assert intent.status == "cancelled"
    assert [e.amount for e in LedgerStore(db).list_by_stint(intent.stint_id)] == [0]


def test_cannot_cancel_successful_intent(manager, paid_intent):
    intent = paid_intent()

    with pytest.raises(InvalidTransitionError):
        manager.cancel(intent.id, "too late")


def test_expire_stale_only_touches_elapsed_initiated_intents(manager, make_stint, clock):
    stale = manager.create_intent(make_stint("stint_1"), "mpesa")
    pending = manager.create_intent(make_stint("stint_2"), "mpesa")
    manager.submit(pending.id, DETAILS)
    clock.advance(minutes=10)
    fresh = manager.create_intent(make_stint("stint_3"), "mpesa")
    clock.advance(minutes=6)

    assert manager.expire_stale() == 1
    assert manager.get(stale.id).status == "expired"
    assert manager.get(pending.id).status == "pending"
    assert manager.get(fresh.id).status == "initiated"


def test_submit_after_expiry_expires_intent(manager, make_stint, clock, gateway):
    intent = manager.create_intent(make_stint(), "mpesa")
    clock.advance(minutes=16)

    with pytest.raises(InvalidTransitionError):
        manager.submit(intent.id, DETAILS)

    assert manager.get(intent.id).status == "expired"
    assert gateway.charges == []


def test_gateway_timeout_records_charge_attempt(manager, make_stint, gateway, clock):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")

    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)

    intent = manager.get(intent.id)
    assert intent.charge_attempted_at == clock.now
    assert intent.external_reference is None


def test_webhook_after_submit_timeout_applies_success(manager, make_stint, gateway, db):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)

    intent = manager.confirm(intent.stint_id, "gw_late", "success")

    assert intent.status == "success"
    assert intent.external_reference == "gw_late"
    entries = LedgerStore(db).list_by_stint(intent.stint_id)
    assert [(e.reference_type, e.amount) for e in entries] == [("payment", 5750)]


def test_webhook_after_submit_timeout_matches_tx_ref(manager, make_stint, gateway):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)

    with pytest.raises(NotFoundError):
        manager.confirm(intent.stint_id, "gw_late", "success", tx_ref="pi_other")

    intent = manager.confirm(intent.stint_id, "gw_late", "success", tx_ref=intent.id)
    assert intent.status == "success"


def test_webhook_for_never_charged_intent_is_not_found(manager, make_stint):
    intent = manager.create_intent(make_stint(), "mpesa")

    with pytest.raises(NotFoundError):
        manager.confirm(intent.stint_id, "gw_unknown", "success")

    assert manager.get(intent.id).status == "initiated"


def test_sweep_after_submit_timeout_applies_captured_charge(manager, make_stint, gateway, clock, db, scheduler):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)
    clock.advance(minutes=16)
    gateway.status_outcomes.append(GatewayResult(status="success", gateway_reference="gw_captured"))

    assert manager.expire_stale() == 0

    intent = manager.get(intent.id)
    assert intent.status == "success"
    assert intent.external_reference == "gw_captured"
    assert LedgerStore(db).balance(intent.stint_id) == 5750
    assert scheduler.get_by_stint(intent.stint_id) is not None


def test_sweep_after_submit_timeout_applies_decline(manager, make_stint, gateway, clock, db):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)
    clock.advance(minutes=16)
    gateway.status_outcomes.append(GatewayDeclinedError("insufficient funds", "gw_declined"))

    manager.expire_stale()

    intent = manager.get(intent.id)
    assert intent.status == "failed"
    assert intent.failure_reason == "insufficient funds"
    assert LedgerStore(db).balance(intent.stint_id) == 0


def test_sweep_moves_charge_in_progress_to_pending(manager, make_stint, gateway, clock):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)
    clock.advance(minutes=16)

    assert manager.expire_stale() == 0

    intent = manager.get(intent.id)
    assert intent.status == "pending"
    assert intent.external_reference == intent.id


def test_sweep_expires_charge_unknown_to_gateway(manager, make_stint, gateway, clock):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)
    clock.advance(minutes=16)
    gateway.status_outcomes.append(GatewayResult(status="not_found", gateway_reference=intent.id))

    assert manager.expire_stale() == 1
    assert manager.get(intent.id).status == "expired"


def test_sweep_without_gateway_answer_keeps_intent(manager, make_stint, gateway, clock):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)
    clock.advance(minutes=16)
    gateway.status_outcomes.append(GatewayTimeoutError("still slow"))

    assert manager.expire_stale() == 0
    assert manager.get(intent.id).status == "initiated"

    gateway.status_outcomes.append(GatewayResult(status="success", gateway_reference="gw_captured"))
    manager.expire_stale()
    assert manager.get(intent.id).status == "success"


def test_submit_after_expiry_with_charge_attempt_defers_to_sweep(manager, make_stint, gateway, clock):
    gateway.charge_outcomes.append(GatewayTimeoutError("slow"))
    intent = manager.create_intent(make_stint(), "mpesa")
    with pytest.raises(GatewayTimeoutError):
        manager.submit(intent.id, DETAILS)
    clock.advance(minutes=16)

    with pytest.raises(InvalidTransitionError):
        manager.submit(intent.id, DETAILS)

    assert manager.get(intent.id).status == "initiated"
    assert len(gateway.charges) == 1
