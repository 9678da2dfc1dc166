"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class PaymentIntentStatus(str, Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PayoutStatus(str, Enum):
    SCHEDULED = "scheduled"
    READY_FOR_SETTLEMENT = "ready_for_settlement"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    HELD = "held"


class LedgerReferenceType(str, Enum):
    PAYMENT = "payment"
    PAYOUT = "payout"
    REFUND = "refund"
    FEE = "fee"


class PayoutMethod(str, Enum):
    MPESA = "mpesa"
    BANK = "bank"


@dataclass
class Stint:
    """Bookable shift as handed over by the marketplace"""

    stint_id: str
    employer_id: str
    professional_id: str
    offered_rate: int
    currency: str
    shift_dates: List[datetime]
    payout_method: PayoutMethod = PayoutMethod.MPESA
    payout_destination: str = ""


@dataclass
class DayFee:
    """Booking fee for a single shift date"""

    shift_date: datetime
    urgency: Urgency
    fee_percent: int
    fee: int


@dataclass
class FeeBreakdown:
    """Employer-side amounts for a stint (computed, never persisted)"""

    days: List[DayFee]
    subtotal: int
    total_fee: int
    promo_discount: int
    final_total: int


@dataclass
class PayoutBreakdown:
    """Professional-side amounts for a stint"""

    gross_amount: int
    platform_fee: int
    transfer_cost: int
    net_amount: int


@dataclass
class Promotion:
    """Employer credit such as Welcome1000"""

    promotion_id: str
    credit_amount: int
    expiry_days: int = 30
    use_limit_per_employer: int = 1
    is_active: bool = True


@dataclass
class PaymentDetails:
    """What the employer submits to pay an intent"""

    payment_method: str  # "mpesa" or "card"
    phone_number: Optional[str] = None
    card_token: Optional[str] = None
    email: Optional[str] = None


@dataclass
class GatewayResult:
    """Response of the payment gateway charge/status calls"""

    status: str  # "pending" | "success" | "failed" | "not_found"
    gateway_reference: str
    message: str = ""


@dataclass
class RailResult:
    """Response of the disbursement rail"""

    status: str  # "pending" | "completed" | "failed"
    rail_reference: Optional[str] = None
    message: str = ""


@dataclass
class RefundResult:
    """Outcome of a refund issued against a payment intent"""

    payment_intent_id: str
    refunded_amount: int
    total_refunded: int
    remaining_refundable: int
    status: PaymentIntentStatus
    ledger_entry_id: Optional[str] = None


@dataclass
class SettlementSummary:
    """Counts produced by one pass of the settlement runner"""

    processed: int = 0
    failed: int = 0
    in_flight: int = 0
    promoted: int = 0


@dataclass
class ReconciliationReport:
    """Per-stint view of the ledger used by finance reconciliation"""

    stint_id: str
    balance: int
    entry_count: int
    totals_by_type: Dict[str, int] = field(default_factory=dict)
    payout_completed: bool = False

    @property
    def balanced(self) -> bool:
        return self.balance == 0


@dataclass
class SettlementStats:
    """Operator dashboard figures across all payouts"""

    payouts_by_status: Dict[str, int]
    total_paid_out: int
    platform_revenue: int
    pending_payouts: int = 0
