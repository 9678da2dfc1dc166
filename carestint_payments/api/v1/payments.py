"""Payment intent endpoints: create, submit, poll, cancel and refund"""

from fastapi import APIRouter, Depends

from carestint_payments.api.dependencies import get_payment_intent_manager, get_refund_resolver
from carestint_payments.api.v1.schemas import (
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    ReasonRequest,
    RefundRequest,
    RefundResponse,
    SubmitPaymentRequest,
)
from carestint_payments.domain.models import PaymentDetails, Promotion, RefundResult, Stint
from carestint_payments.services.payment_intents import PaymentIntentManager
from carestint_payments.services.refunds import RefundResolver

router = APIRouter()


def _refund_response(result: RefundResult) -> RefundResponse:
    return RefundResponse(
        payment_intent_id=result.payment_intent_id,
        refunded_amount=result.refunded_amount,
        total_refunded=result.total_refunded,
        remaining_refundable=result.remaining_refundable,
        status=result.status.value,
        ledger_entry_id=result.ledger_entry_id,
    )


@router.post("/payment-intents", response_model=PaymentIntentResponse, status_code=201)
def create_payment_intent(
    request_body: CreatePaymentIntentRequest,
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    """
    Open a payment intent for a stint.

    Flow:
    1. Compute the fee breakdown for the stint's shift dates
    2. Apply the promotion if the employer is still eligible
    3. Persist the intent as initiated with a 15 minute payment window
    """
    stint = Stint(**request_body.stint.model_dump())
    promotion = Promotion(**request_body.promotion.model_dump()) if request_body.promotion else None
    intent = manager.create_intent(
        stint,
        request_body.payment_method,
        promotion=promotion,
        employer_signed_up_at=request_body.employer_signed_up_at,
    )
    return PaymentIntentResponse.from_record(intent)


@router.get("/payment-intents/{payment_intent_id}", response_model=PaymentIntentResponse)
def get_payment_intent(
    payment_intent_id: str,
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    return PaymentIntentResponse.from_record(manager.get(payment_intent_id))


@router.post("/payment-intents/{payment_intent_id}/submit", response_model=PaymentIntentResponse)
def submit_payment(
    payment_intent_id: str,
    request_body: SubmitPaymentRequest,
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    """Charge the employer; a decline comes back as a failed intent"""
    details = PaymentDetails(**request_body.model_dump())
    return PaymentIntentResponse.from_record(manager.submit(payment_intent_id, details))


@router.post("/payment-intents/{payment_intent_id}/poll", response_model=PaymentIntentResponse)
def poll_payment(
    payment_intent_id: str,
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    return PaymentIntentResponse.from_record(manager.poll_confirmation(payment_intent_id))


@router.post("/payment-intents/{payment_intent_id}/cancel", response_model=PaymentIntentResponse)
def cancel_payment(
    payment_intent_id: str,
    request_body: ReasonRequest,
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    return PaymentIntentResponse.from_record(manager.cancel(payment_intent_id, request_body.reason))


@router.post("/payment-intents/{payment_intent_id}/refund", response_model=RefundResponse)
def refund_payment(
    payment_intent_id: str,
    request_body: RefundRequest,
    resolver: RefundResolver = Depends(get_refund_resolver),
):
    """Full refund when amount is omitted, partial otherwise"""
    result = resolver.issue_refund(payment_intent_id, request_body.reason, request_body.amount)
    return _refund_response(result)


@router.post("/payment-intents/{payment_intent_id}/cancellation-refund", response_model=RefundResponse)
def refund_cancellation(
    payment_intent_id: str,
    request_body: ReasonRequest,
    resolver: RefundResolver = Depends(get_refund_resolver),
):
    """Employer cancelled a paid stint; refund depends on notice given"""
    result = resolver.refund_for_cancellation(payment_intent_id, request_body.reason)
    return _refund_response(result)
