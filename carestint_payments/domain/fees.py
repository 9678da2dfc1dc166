"""Fee calculator - booking fees, urgency tiers, promo credit and professional payout"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Sequence

from carestint_payments.domain.exceptions import InvalidFeeInputError
from carestint_payments.domain.models import DayFee, FeeBreakdown, PayoutBreakdown, Urgency
from carestint_payments.utils.date_utils import ensure_utc, hours_between, utcnow


@dataclass(frozen=True)
class FeeSchedule:
    """Single authoritative set of fee constants"""

    normal_booking_fee_percent: int = 15
    urgent_booking_fee_percent: int = 20
    professional_fee_percent: int = 5
    gateway_transfer_cost: int = 50  # flat mobile-money transfer cost
    urgency_threshold_hours: int = 24
    min_cancellation_fee: int = 1000
    cancellation_fee_percent: int = 20

    @classmethod
    def from_settings(cls, settings) -> "FeeSchedule":
        return cls(
            normal_booking_fee_percent=settings.normal_booking_fee_percent,
            urgent_booking_fee_percent=settings.urgent_booking_fee_percent,
            professional_fee_percent=settings.professional_fee_percent,
            gateway_transfer_cost=settings.gateway_transfer_cost,
            urgency_threshold_hours=settings.urgency_threshold_hours,
            min_cancellation_fee=settings.min_cancellation_fee,
            cancellation_fee_percent=settings.cancellation_fee_percent,
        )


DEFAULT_FEE_SCHEDULE = FeeSchedule()


def percent_of(amount: int, percent: int) -> int:
    """Percentage of an integer amount, rounded half-up to whole currency units"""
    value = Decimal(amount) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def determine_urgency(
    shift_start: datetime,
    now: datetime | None = None,
    schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> Urgency:
    """A shift starting less than 24h from now is urgent"""
    now = now or utcnow()
    if hours_between(ensure_utc(now), ensure_utc(shift_start)) < schedule.urgency_threshold_hours:
        return Urgency.URGENT
    return Urgency.NORMAL


def compute_fees(
    rate: int,
    dates: Sequence[datetime],
    promo_credit: int = 0,
    now: datetime | None = None,
    schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE,
) -> FeeBreakdown:
    """
    Compute the employer-side breakdown for a stint.

    Requirements:
    - Each date is classified urgent (< 24h away) or normal
    - Per-day fee is 20% (urgent) or 15% (normal) of the daily rate, rounded half-up
    - subtotal = rate * days, total_fee = sum of per-day fees
    - final_total = max(0, subtotal + total_fee - promo_credit)

    Raises:
        InvalidFeeInputError: negative rate or promo credit, empty date list

    Example:
        rate 5000, one date 10h out and one 48h out
        → fees [1000, 750], subtotal 10000, total_fee 1750, final_total 11750
    """
    if rate is None or rate < 0:
        raise InvalidFeeInputError(f"Offered rate must be non-negative, got {rate}")
    if not dates:
        raise InvalidFeeInputError("At least one shift date is required")
    if promo_credit < 0:
        raise InvalidFeeInputError(f"Promo credit must be non-negative, got {promo_credit}")

    now = now or utcnow()

    days: List[DayFee] = []
    for shift_date in dates:
        urgency = determine_urgency(shift_date, now, schedule)
        fee_percent = (
            schedule.urgent_booking_fee_percent
            if urgency == Urgency.URGENT
            else schedule.normal_booking_fee_percent
        )
        days.append(
            DayFee(
                shift_date=ensure_utc(shift_date),
                urgency=urgency,
                fee_percent=fee_percent,
                fee=percent_of(rate, fee_percent),
            )
        )

    subtotal = rate * len(days)
    total_fee = sum(day.fee for day in days)
    # Discount can never push the payable total below zero
    promo_discount = min(promo_credit, subtotal + total_fee)

    return FeeBreakdown(
        days=days,
        subtotal=subtotal,
        total_fee=total_fee,
        promo_discount=promo_discount,
        final_total=max(0, subtotal + total_fee - promo_credit),
    )


def compute_payout(gross_amount: int, schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE) -> PayoutBreakdown:
    """
    Professional net payout = gross - 5% platform fee - flat transfer cost.

    A zero gross yields an all-zero breakdown; the net is never negative.
    """
    if gross_amount < 0:
        raise InvalidFeeInputError(f"Gross amount must be non-negative, got {gross_amount}")
    if gross_amount == 0:
        return PayoutBreakdown(gross_amount=0, platform_fee=0, transfer_cost=0, net_amount=0)

    platform_fee = percent_of(gross_amount, schedule.professional_fee_percent)
    net_amount = max(0, gross_amount - platform_fee - schedule.gateway_transfer_cost)

    return PayoutBreakdown(
        gross_amount=gross_amount,
        platform_fee=platform_fee,
        transfer_cost=schedule.gateway_transfer_cost,
        net_amount=net_amount,
    )


def cancellation_fee(rate: int, schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE) -> int:
    """Late-cancellation charge: KSh 1,000 or 20% of the rate, whichever is higher"""
    if rate < 0:
        raise InvalidFeeInputError(f"Offered rate must be non-negative, got {rate}")
    return max(schedule.min_cancellation_fee, percent_of(rate, schedule.cancellation_fee_percent))
