"""Stint events and ledger: completion, dispute, scheduling, ledger view"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from carestint_payments.api.dependencies import get_payout_scheduler, get_refund_resolver
from carestint_payments.api.v1.schemas import (
    AdjustmentRequest,
    LedgerEntrySchema,
    LedgerResponse,
    PayoutResponse,
    ReasonRequest,
    ShiftCompletionRequest,
)
from carestint_payments.infrastructure.database.session import get_db
from carestint_payments.services.ledger import LedgerStore
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.refunds import RefundResolver

router = APIRouter()


@router.post("/stints/{stint_id}/completion", response_model=Optional[PayoutResponse])
def complete_shift(
    stint_id: str,
    request_body: ShiftCompletionRequest,
    scheduler: PayoutScheduler = Depends(get_payout_scheduler),
):
    """Record shift completion; returns the payout once one exists"""
    payout = scheduler.record_shift_completion(stint_id, request_body.completed_at)
    return PayoutResponse.from_record(payout) if payout else None


@router.post("/stints/{stint_id}/dispute", response_model=Optional[PayoutResponse])
def flag_dispute(
    stint_id: str,
    request_body: ReasonRequest,
    scheduler: PayoutScheduler = Depends(get_payout_scheduler),
):
    payout = scheduler.flag_dispute(stint_id, request_body.reason)
    return PayoutResponse.from_record(payout) if payout else None


@router.post("/stints/{stint_id}/payout", response_model=PayoutResponse, status_code=201)
def schedule_payout(
    stint_id: str,
    scheduler: PayoutScheduler = Depends(get_payout_scheduler),
):
    return PayoutResponse.from_record(scheduler.schedule(stint_id))


@router.post("/stints/{stint_id}/absorb-refund", response_model=LedgerEntrySchema)
def absorb_refund(
    stint_id: str,
    request_body: AdjustmentRequest,
    resolver: RefundResolver = Depends(get_refund_resolver),
):
    """Platform funds a refund issued after the professional was paid"""
    entry = resolver.absorb_refund(stint_id, request_body.amount, request_body.reason)
    return LedgerEntrySchema.from_record(entry)


@router.get("/stints/{stint_id}/ledger", response_model=LedgerResponse)
def get_ledger_entries(stint_id: str, db: Session = Depends(get_db)):
    """
    Retrieve a stint's ledger in insertion order.

    Returns:
        Entries plus the reconciliation totals finance checks against
    """
    ledger = LedgerStore(db)
    report = ledger.reconcile(stint_id)
    return LedgerResponse(
        stint_id=stint_id,
        entries=[LedgerEntrySchema.from_record(e) for e in ledger.list_by_stint(stint_id)],
        balance=report.balance,
        totals_by_type=report.totals_by_type,
        balanced=report.balanced,
        payout_completed=report.payout_completed,
    )
