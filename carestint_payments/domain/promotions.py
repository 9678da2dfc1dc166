"""Promotion eligibility rules for employer credits"""

from datetime import datetime, timedelta

from carestint_payments.domain.exceptions import PromotionNotApplicableError
from carestint_payments.domain.models import Promotion
from carestint_payments.utils.date_utils import ensure_utc


def check_promotion_eligibility(
    promotion: Promotion,
    employer_signed_up_at: datetime,
    previous_uses: int,
    now: datetime,
) -> None:
    """
    Validate that an employer may apply a promotion.

    Rules:
    - Promotion must be active
    - Only usable within expiry_days of the employer's signup
    - Each employer may use it at most use_limit_per_employer times

    Raises:
        PromotionNotApplicableError: with the first rule that fails
    """
    if not promotion.is_active:
        raise PromotionNotApplicableError(f"Promotion {promotion.promotion_id} is no longer active")

    expires_at = ensure_utc(employer_signed_up_at) + timedelta(days=promotion.expiry_days)
    if ensure_utc(now) > expires_at:
        raise PromotionNotApplicableError(f"Promotion {promotion.promotion_id} has expired")

    if previous_uses >= promotion.use_limit_per_employer:
        raise PromotionNotApplicableError(f"Usage limit reached for promotion {promotion.promotion_id}")
