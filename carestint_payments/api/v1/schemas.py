"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from carestint_payments.domain.models import PayoutMethod, Urgency


# Fees


class FeeQuoteRequest(BaseModel):
    """Request body for POST /v1/fees/quote"""

    offered_rate: int = Field(..., description="Daily rate in whole currency units")
    shift_dates: List[datetime] = Field(..., description="Shift start times")
    promo_credit: int = Field(0, description="Promotion credit to apply")


class DayFeeSchema(BaseModel):
    shift_date: datetime
    urgency: Urgency
    fee_percent: int
    fee: int


class PayoutPreview(BaseModel):
    gross_amount: int
    platform_fee: int
    transfer_cost: int
    net_amount: int


class FeeQuoteResponse(BaseModel):
    """Response for POST /v1/fees/quote"""

    days: List[DayFeeSchema]
    subtotal: int
    total_fee: int
    promo_discount: int
    final_total: int
    payout: PayoutPreview


# Payment intents


class StintSchema(BaseModel):
    """Stint as handed over by the marketplace"""

    stint_id: str = Field(..., min_length=1)
    employer_id: str = Field(..., min_length=1)
    professional_id: str = Field(..., min_length=1)
    offered_rate: int
    currency: str = "KES"
    shift_dates: List[datetime] = Field(..., min_length=1)
    payout_method: PayoutMethod = PayoutMethod.MPESA
    payout_destination: str = ""


class PromotionSchema(BaseModel):
    promotion_id: str
    credit_amount: int = Field(..., ge=0)
    expiry_days: int = 30
    use_limit_per_employer: int = 1
    is_active: bool = True


class CreatePaymentIntentRequest(BaseModel):
    """Request body for POST /v1/payment-intents"""

    stint: StintSchema
    payment_method: str = Field("mpesa", description="mpesa or card")
    promotion: Optional[PromotionSchema] = None
    employer_signed_up_at: Optional[datetime] = None


class SubmitPaymentRequest(BaseModel):
    """Request body for POST /v1/payment-intents/{id}/submit"""

    payment_method: str = "mpesa"
    phone_number: Optional[str] = None
    card_token: Optional[str] = None
    email: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    payment_intent_id: str
    stint_id: str
    employer_id: str
    amount: int
    subtotal: int
    platform_fee: int
    promo_discount: int
    currency: str
    payment_method: str
    status: str
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: str
    expires_at: str
    completed_at: Optional[str] = None

    @classmethod
    def from_record(cls, intent) -> "PaymentIntentResponse":
        return cls(
            payment_intent_id=intent.id,
            stint_id=intent.stint_id,
            employer_id=intent.employer_id,
            amount=intent.amount,
            subtotal=intent.subtotal,
            platform_fee=intent.platform_fee,
            promo_discount=intent.promo_discount,
            currency=intent.currency,
            payment_method=intent.payment_method,
            status=intent.status,
            external_reference=intent.external_reference,
            failure_reason=intent.failure_reason,
            created_at=intent.created_at.isoformat(),
            expires_at=intent.expires_at.isoformat(),
            completed_at=intent.completed_at.isoformat() if intent.completed_at else None,
        )


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    """Request body for POST /v1/payment-intents/{id}/refund"""

    reason: str = Field(..., min_length=1)
    amount: Optional[int] = Field(None, description="Omit for a full refund")


class RefundResponse(BaseModel):
    payment_intent_id: str
    refunded_amount: int
    total_refunded: int
    remaining_refundable: int
    status: str
    ledger_entry_id: Optional[str] = None


# Gateway webhook


class GatewayConfirmationRequest(BaseModel):
    """Request body for POST /v1/webhooks/gateway"""

    stint_id: str
    external_reference: str
    status: str = Field(..., pattern="^(success|failed)$")
    reason: Optional[str] = None
    tx_ref: Optional[str] = None  # payment intent id sent as the charge tx_ref


class GatewayConfirmationResponse(BaseModel):
    result: str  # applied | duplicate
    payment_intent: Optional[PaymentIntentResponse] = None


# Stints, payouts and ledger


class ShiftCompletionRequest(BaseModel):
    completed_at: Optional[datetime] = None


class AdjustmentRequest(BaseModel):
    amount: int
    reason: str = Field(..., min_length=1)


class PayoutResponse(BaseModel):
    payout_id: str
    stint_id: str
    payment_intent_id: str
    professional_id: str
    gross_amount: int
    platform_fee: int
    transfer_cost: int
    net_amount: int
    currency: str
    payout_method: str
    status: str
    hold_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int
    rail_reference: Optional[str] = None
    shift_completed_at: str
    eligible_at: str
    completed_at: Optional[str] = None

    @classmethod
    def from_record(cls, payout) -> "PayoutResponse":
        return cls(
            payout_id=payout.id,
            stint_id=payout.stint_id,
            payment_intent_id=payout.payment_intent_id,
            professional_id=payout.professional_id,
            gross_amount=payout.gross_amount,
            platform_fee=payout.platform_fee,
            transfer_cost=payout.transfer_cost,
            net_amount=payout.net_amount,
            currency=payout.currency,
            payout_method=payout.payout_method,
            status=payout.status,
            hold_reason=payout.hold_reason,
            failure_reason=payout.failure_reason,
            retry_count=payout.retry_count,
            rail_reference=payout.rail_reference,
            shift_completed_at=payout.shift_completed_at.isoformat(),
            eligible_at=payout.eligible_at.isoformat(),
            completed_at=payout.completed_at.isoformat() if payout.completed_at else None,
        )


class LedgerEntrySchema(BaseModel):
    entry_id: str
    stint_id: str
    description: str
    amount: int
    currency: str
    reference_type: str
    reference_id: str
    created_at: str

    @classmethod
    def from_record(cls, entry) -> "LedgerEntrySchema":
        return cls(
            entry_id=entry.id,
            stint_id=entry.stint_id,
            description=entry.description,
            amount=entry.amount,
            currency=entry.currency,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
            created_at=entry.created_at.isoformat(),
        )


class LedgerResponse(BaseModel):
    """Response for GET /v1/stints/{stint_id}/ledger"""

    stint_id: str
    entries: List[LedgerEntrySchema]
    balance: int
    totals_by_type: Dict[str, int]
    balanced: bool
    payout_completed: bool


class SettlementRunResponse(BaseModel):
    processed: int
    failed: int
    in_flight: int
    promoted: int


class SettlementStatsResponse(BaseModel):
    payouts_by_status: Dict[str, int]
    pending_payouts: int
    total_paid_out: int
    platform_revenue: int
