"""POST /v1/fees/quote - Employer fee breakdown and professional payout preview"""

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends

from carestint_payments.api.dependencies import get_clock, get_settings
from carestint_payments.api.v1.schemas import DayFeeSchema, FeeQuoteRequest, FeeQuoteResponse, PayoutPreview
from carestint_payments.config import Settings
from carestint_payments.domain.fees import FeeSchedule, compute_fees, compute_payout

router = APIRouter()


@router.post("/fees/quote", response_model=FeeQuoteResponse)
def quote_fees(
    request_body: FeeQuoteRequest,
    app_settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """
    Price a stint before an intent is opened.

    Nothing is persisted; invalid inputs are rejected with 422.
    """
    schedule = FeeSchedule.from_settings(app_settings)
    breakdown = compute_fees(
        request_body.offered_rate,
        request_body.shift_dates,
        request_body.promo_credit,
        now=clock(),
        schedule=schedule,
    )
    payout = compute_payout(breakdown.subtotal, schedule)

    return FeeQuoteResponse(
        days=[
            DayFeeSchema(shift_date=d.shift_date, urgency=d.urgency, fee_percent=d.fee_percent, fee=d.fee)
            for d in breakdown.days
        ],
        subtotal=breakdown.subtotal,
        total_fee=breakdown.total_fee,
        promo_discount=breakdown.promo_discount,
        final_total=breakdown.final_total,
        payout=PayoutPreview(
            gross_amount=payout.gross_amount,
            platform_fee=payout.platform_fee,
            transfer_cost=payout.transfer_cost,
            net_amount=payout.net_amount,
        ),
    )
