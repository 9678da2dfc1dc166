"""POST /v1/webhooks/gateway - Payment gateway confirmations"""

import logging

from fastapi import APIRouter, Depends, Request

from carestint_payments.api.dependencies import get_payment_intent_manager, get_request_id
from carestint_payments.api.v1.schemas import (
    GatewayConfirmationRequest,
    GatewayConfirmationResponse,
    PaymentIntentResponse,
)
from carestint_payments.domain.exceptions import AlreadyFinalizedError
from carestint_payments.services.payment_intents import PaymentIntentManager

router = APIRouter()


@router.post("/webhooks/gateway", response_model=GatewayConfirmationResponse)
def gateway_confirmation(
    request_body: GatewayConfirmationRequest,
    request: Request,
    manager: PaymentIntentManager = Depends(get_payment_intent_manager),
):
    """
    Apply a gateway confirmation exactly once.

    Gateways redeliver webhooks; a confirmation already applied for the same
    (stint, reference) is acknowledged as a duplicate and changes nothing.
    """
    try:
        intent = manager.confirm(
            request_body.stint_id,
            request_body.external_reference,
            request_body.status,
            request_body.reason,
            request_body.tx_ref,
        )
    except AlreadyFinalizedError:
        logging.info(
            "Duplicate gateway confirmation ignored",
            extra={
                "request_id": get_request_id(request),
                "stint_id": request_body.stint_id,
                "external_reference": request_body.external_reference,
            },
        )
        return GatewayConfirmationResponse(result="duplicate")

    return GatewayConfirmationResponse(result="applied", payment_intent=PaymentIntentResponse.from_record(intent))
