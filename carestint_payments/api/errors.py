"""Translate domain exceptions into HTTP responses"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from carestint_payments.api.dependencies import get_request_id
from carestint_payments.domain.exceptions import (
    AlreadyFinalizedError,
    ConcurrentModificationError,
    DomainException,
    GatewayAPIError,
    GatewayDeclinedError,
    GatewayTimeoutError,
    InvalidFeeInputError,
    InvalidRefundError,
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    PayoutNotEligibleError,
    PromotionNotApplicableError,
    RailAPIError,
    RailTimeoutError,
    RefundExceedsBalanceError,
    RetryLimitExceededError,
    RetryTooSoonError,
)

# First match wins, so subclasses must precede their bases
STATUS_CODES = [
    (InvariantViolationError, 500),
    (NotFoundError, 404),
    ((InvalidFeeInputError, InvalidRefundError, RefundExceedsBalanceError, PromotionNotApplicableError), 422),
    (
        (
            InvalidTransitionError,
            AlreadyFinalizedError,
            PayoutNotEligibleError,
            RetryLimitExceededError,
            RetryTooSoonError,
        ),
        409,
    ),
    (ConcurrentModificationError, 409),
    (GatewayDeclinedError, 402),
    ((GatewayTimeoutError, GatewayAPIError, RailTimeoutError, RailAPIError), 503),
]


def status_code_for(exc: DomainException) -> int:
    for exc_types, status_code in STATUS_CODES:
        if isinstance(exc, exc_types):
            return status_code
    return 500


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    status_code = status_code_for(exc)
    request_id = get_request_id(request)
    if status_code >= 500:
        logging.error(f"{type(exc).__name__}: {exc}", extra={"request_id": request_id, "path": request.url.path})
    else:
        logging.warning(f"{type(exc).__name__}: {exc}", extra={"request_id": request_id, "path": request.url.path})
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainException, domain_exception_handler)
