"""Payout administration and settlement runs"""

from fastapi import APIRouter, Depends

from carestint_payments.api.dependencies import get_payout_scheduler, get_refund_resolver, get_settlement_runner
from carestint_payments.api.v1.schemas import (
    AdjustmentRequest,
    LedgerEntrySchema,
    PayoutResponse,
    SettlementRunResponse,
    SettlementStatsResponse,
)
from carestint_payments.domain.models import SettlementSummary
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.refunds import RefundResolver
from carestint_payments.services.settlement import SettlementRunner

router = APIRouter()


def _run_response(summary: SettlementSummary) -> SettlementRunResponse:
    return SettlementRunResponse(
        processed=summary.processed,
        failed=summary.failed,
        in_flight=summary.in_flight,
        promoted=summary.promoted,
    )


@router.get("/payouts/{payout_id}", response_model=PayoutResponse)
def get_payout(payout_id: str, scheduler: PayoutScheduler = Depends(get_payout_scheduler)):
    return PayoutResponse.from_record(scheduler.get(payout_id))


@router.post("/payouts/{payout_id}/retry", response_model=PayoutResponse)
def retry_payout(payout_id: str, runner: SettlementRunner = Depends(get_settlement_runner)):
    """Retry a failed payout: at most 3 times, 5, 15 and 45 minutes after the last failure"""
    return PayoutResponse.from_record(runner.retry_payout(payout_id))


@router.post("/payouts/{payout_id}/release", response_model=PayoutResponse)
def release_hold(payout_id: str, scheduler: PayoutScheduler = Depends(get_payout_scheduler)):
    return PayoutResponse.from_record(scheduler.release_hold(payout_id))


@router.post("/payouts/{payout_id}/recover", response_model=LedgerEntrySchema)
def recover_payout(
    payout_id: str,
    request_body: AdjustmentRequest,
    resolver: RefundResolver = Depends(get_refund_resolver),
):
    entry = resolver.recover_payout(payout_id, request_body.amount, request_body.reason)
    return LedgerEntrySchema.from_record(entry)


@router.post("/settlement/run", response_model=SettlementRunResponse)
def process_eligible_payouts(runner: SettlementRunner = Depends(get_settlement_runner)):
    return _run_response(runner.process_eligible_payouts())


@router.post("/settlement/cycle", response_model=SettlementRunResponse)
def run_settlement_cycle(runner: SettlementRunner = Depends(get_settlement_runner)):
    """Expire stale intents, sweep stuck payouts, then settle"""
    return _run_response(runner.run_cycle())


@router.get("/settlement/stats", response_model=SettlementStatsResponse)
def settlement_stats(runner: SettlementRunner = Depends(get_settlement_runner)):
    stats = runner.stats()
    return SettlementStatsResponse(
        payouts_by_status=stats.payouts_by_status,
        pending_payouts=stats.pending_payouts,
        total_paid_out=stats.total_paid_out,
        platform_revenue=stats.platform_revenue,
    )
