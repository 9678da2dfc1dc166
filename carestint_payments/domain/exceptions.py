"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


# Input errors: rejected synchronously, no state change


class InvalidFeeInputError(DomainException):
    """Fee calculation inputs are malformed (negative rate, no shift dates)"""

    pass


class InvalidRefundError(DomainException):
    """Refund request is malformed (non-positive amount)"""

    pass


class RefundExceedsBalanceError(DomainException):
    """Requested refund is larger than the remaining refundable balance"""

    def __init__(self, payment_intent_id: str, requested: int, remaining: int):
        self.payment_intent_id = payment_intent_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Refund of {requested} exceeds remaining refundable balance "
            f"{remaining} for payment intent {payment_intent_id}"
        )


class PromotionNotApplicableError(DomainException):
    """Promotion is inactive, expired, or already used by this employer"""

    pass


class NotFoundError(DomainException):
    """Requested payment intent, payout or stint does not exist"""

    pass


class InvalidTransitionError(DomainException):
    """State machine does not allow the requested transition"""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition: {current} -> {target}")


class PayoutNotEligibleError(DomainException):
    """Payout preconditions are not met (payment not successful, shift not completed)"""

    pass


class RetryLimitExceededError(DomainException):
    """Payout has been retried the maximum number of times"""

    pass


class RetryTooSoonError(DomainException):
    """Payout failed too recently to be retried yet"""

    pass


class ConcurrentModificationError(DomainException):
    """Another writer updated the record first (optimistic concurrency)"""

    pass


# External errors


class GatewayTimeoutError(DomainException):
    """Payment gateway did not answer in time; the intent state is unchanged"""

    pass


class GatewayDeclinedError(DomainException):
    """Payment gateway explicitly declined the charge"""

    def __init__(self, reason: str, gateway_reference: str | None = None):
        self.reason = reason
        self.gateway_reference = gateway_reference
        super().__init__(f"Payment declined: {reason}")


class GatewayAPIError(DomainException):
    """Payment gateway returned an error or is unavailable"""

    pass


class AlreadyFinalizedError(DomainException):
    """Gateway confirmation was already applied; duplicates are a no-op"""

    pass


class RailTimeoutError(DomainException):
    """Disbursement rail did not answer in time; outcome unknown"""

    pass


class RailAPIError(DomainException):
    """Disbursement rail returned an error or is unavailable"""

    pass


# Invariant violations: indicate a bug, never a business outcome


class InvariantViolationError(DomainException):
    """Base class for broken engine invariants"""

    pass


class LedgerInvariantError(InvariantViolationError):
    """Ledger entries do not match the transition or the stint balance"""

    pass


class LedgerImmutableError(InvariantViolationError):
    """Attempt to update or delete an append-only ledger entry"""

    pass


class DuplicatePayoutError(InvariantViolationError):
    """A payout record already exists for the stint"""

    pass
