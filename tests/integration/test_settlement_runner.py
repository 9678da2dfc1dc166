"""Integration tests for settlement runs, retries and the stuck-payout sweep"""

import pytest
from carestint_payments.domain.exceptions import (
    InvalidTransitionError,
    RailTimeoutError,
    RetryLimitExceededError,
    RetryTooSoonError,
)
from carestint_payments.domain.models import RailResult
from carestint_payments.services.ledger import LedgerStore


def ledger_amounts(db, stint_id):
    return [(e.reference_type, e.amount) for e in LedgerStore(db).list_by_stint(stint_id)]


def test_completed_lifecycle_sums_to_zero(completed_payout, runner, rail, db):
    intent, payout = completed_payout()

    summary = runner.process_eligible_payouts()

    assert (summary.processed, summary.failed, summary.in_flight, summary.promoted) == (1, 0, 0, 1)
    assert runner.scheduler.get(payout.id).status == "completed"
    assert ledger_amounts(db, intent.stint_id) == [("payment", 5750), ("payout", -4700), ("fee", -1050)]
    assert LedgerStore(db).reconcile(intent.stint_id).balanced
    assert rail.calls[0]["amount"] == 4700
    assert rail.calls[0]["method"] == "mpesa"


def test_payout_skipped_inside_hold_window(paid_intent, scheduler, runner, rail, clock):
    intent = paid_intent()
    payout = scheduler.record_shift_completion(intent.stint_id, clock.now)
    clock.advance(hours=12)

    summary = runner.process_eligible_payouts()

    assert summary.processed == 0
    assert rail.calls == []
    assert scheduler.get(payout.id).status == "scheduled"


def test_held_payout_is_skipped(completed_payout, scheduler, runner, rail):
    intent, payout = completed_payout()
    scheduler.flag_dispute(intent.stint_id, "no-show reported")

    summary = runner.process_eligible_payouts()

    assert summary.processed == 0
    assert rail.calls == []
    assert scheduler.get(payout.id).status == "held"


def test_rail_failure_records_reason_and_no_ledger_entry(completed_payout, runner, rail, db):
    intent, payout = completed_payout()
    rail.outcomes.append(RailResult(status="failed", message="invalid M-Pesa number"))

    summary = runner.process_eligible_payouts()

    failed = runner.scheduler.get(payout.id)
    assert summary.failed == 1
    assert failed.status == "failed"
    assert failed.failure_reason == "invalid M-Pesa number"
    assert ledger_amounts(db, intent.stint_id) == [("payment", 5750)]


def test_failed_payouts_are_not_auto_retried(completed_payout, runner, rail):
    completed_payout()
    rail.outcomes.append(RailResult(status="failed", message="rail down"))
    runner.process_eligible_payouts()

    summary = runner.process_eligible_payouts()

    assert summary.processed == 0
    assert len(rail.calls) == 1


def test_retry_success_appends_payout_and_fee(completed_payout, runner, rail, db, clock):
    intent, payout = completed_payout()
    rail.outcomes.append(RailResult(status="failed", message="rail down"))
    runner.process_eligible_payouts()
    clock.advance(minutes=5)

    retried = runner.retry_payout(payout.id)

    assert retried.status == "completed"
    assert retried.retry_count == 1
    assert ledger_amounts(db, intent.stint_id) == [("payment", 5750), ("payout", -4700), ("fee", -1050)]
    assert rail.calls[0]["token"] != rail.calls[1]["token"]


def test_retry_is_capped(completed_payout, runner, rail, clock):
    intent, payout = completed_payout()
    rail.outcomes.extend([RailResult(status="failed", message="rail down")] * 4)
    runner.process_eligible_payouts()

    for _ in range(3):
        clock.advance(hours=1)
        assert runner.retry_payout(payout.id).status == "failed"

    with pytest.raises(RetryLimitExceededError):
        runner.retry_payout(payout.id)
    assert runner.scheduler.get(payout.id).retry_count == 3


def test_retry_waits_for_spacing_after_failure(completed_payout, runner, rail, clock):
    intent, payout = completed_payout()
    rail.outcomes.extend([RailResult(status="failed", message="rail down")] * 2)
    runner.process_eligible_payouts()
    failed_at = runner.scheduler.get(payout.id).failed_at
    assert failed_at == clock.now

    clock.advance(minutes=4)
    with pytest.raises(RetryTooSoonError):
        runner.retry_payout(payout.id)
    assert runner.scheduler.get(payout.id).retry_count == 0
    assert len(rail.calls) == 1

    clock.advance(minutes=1)
    assert runner.retry_payout(payout.id).status == "failed"

    clock.advance(minutes=14)
    with pytest.raises(RetryTooSoonError):
        runner.retry_payout(payout.id)

    clock.advance(minutes=1)
    assert runner.retry_payout(payout.id).status == "completed"
    assert len(rail.calls) == 3


def test_fee_entry_itemises_retained_fees(completed_payout, runner, db):
    intent, payout = completed_payout()

    runner.process_eligible_payouts()

    fee = [e for e in LedgerStore(db).list_by_stint(intent.stint_id) if e.reference_type == "fee"][0]
    assert fee.amount == -1050
    assert fee.description == (
        "Platform fees retained: service fee 250, transfer cost 50, booking fee net of credits and refunds 750"
    )


def test_retry_requires_failed_payout(completed_payout, runner):
    intent, payout = completed_payout()

    with pytest.raises(InvalidTransitionError):
        runner.retry_payout(payout.id)


def test_rail_timeout_leaves_payout_processing(completed_payout, runner, rail, db):
    intent, payout = completed_payout()
    rail.outcomes.append(RailTimeoutError("no answer"))

    summary = runner.process_eligible_payouts()

    in_flight = runner.scheduler.get(payout.id)
    assert summary.in_flight == 1
    assert in_flight.status == "processing"
    assert in_flight.attempt_token is not None
    assert ledger_amounts(db, intent.stint_id) == [("payment", 5750)]


def test_sweep_applies_rail_answer_for_stuck_payout(completed_payout, runner, rail, clock, db):
    intent, payout = completed_payout()
    rail.outcomes.append(RailTimeoutError("no answer"))
    runner.process_eligible_payouts()
    token = runner.scheduler.get(payout.id).attempt_token
    rail.statuses[token] = RailResult(status="completed", rail_reference="tr_late")

    clock.advance(minutes=31)
    assert runner.reconcile_stuck_payouts() == 1

    settled = runner.scheduler.get(payout.id)
    assert settled.status == "completed"
    assert settled.rail_reference == "tr_late"
    assert LedgerStore(db).balance(intent.stint_id) == 0


def test_sweep_fails_payout_without_an_answer(completed_payout, runner, rail, clock):
    intent, payout = completed_payout()
    rail.outcomes.append(RailTimeoutError("no answer"))
    runner.process_eligible_payouts()

    clock.advance(minutes=10)
    assert runner.reconcile_stuck_payouts() == 0

    clock.advance(minutes=21)
    assert runner.reconcile_stuck_payouts() == 1
    assert runner.scheduler.get(payout.id).status == "failed"


def test_sweep_leaves_pending_transfers_alone(completed_payout, runner, rail, clock):
    intent, payout = completed_payout()
    rail.outcomes.append(RailResult(status="pending", rail_reference="tr_slow"))
    runner.process_eligible_payouts()
    rail.statuses["tr_slow"] = RailResult(status="pending", rail_reference="tr_slow")

    clock.advance(minutes=45)

    assert runner.reconcile_stuck_payouts() == 0
    assert runner.scheduler.get(payout.id).status == "processing"


def test_run_cycle_expires_sweeps_and_settles(completed_payout, manager, make_stint, runner, clock):
    completed_payout()
    stale = manager.create_intent(make_stint("stint_2"), "mpesa")
    clock.advance(minutes=20)

    summary = runner.run_cycle()

    assert summary.processed == 1
    assert manager.get(stale.id).status == "expired"


def test_stats(completed_payout, make_stint, runner, rail):
    completed_payout()
    completed_payout(make_stint("stint_2", shift_hours=(100,), employer_id="employer_2"))
    rail.outcomes.extend([RailResult(status="completed"), RailResult(status="failed", message="rail down")])
    runner.process_eligible_payouts()

    stats = runner.stats()

    assert stats.payouts_by_status["completed"] == 1
    assert stats.payouts_by_status["failed"] == 1
    assert stats.pending_payouts == 0
    assert stats.total_paid_out == 4700
    assert stats.platform_revenue == 1050
