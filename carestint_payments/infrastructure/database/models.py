"""SQLAlchemy ORM models for payment intents, payouts and the ledger"""

import uuid
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base

from carestint_payments.domain.exceptions import LedgerImmutableError
from carestint_payments.infrastructure.database.types import UTCDateTime
from carestint_payments.utils.date_utils import utcnow

Base = declarative_base()


def new_id(prefix: str):
    return lambda: f"{prefix}_{uuid.uuid4().hex}"


class StintSnapshot(Base):
    """Engine-side copy of the stint fields the payment lifecycle depends on"""

    __tablename__ = "stint_snapshot"

    stint_id = Column(String(64), primary_key=True)
    employer_id = Column(Text, nullable=False, index=True)
    professional_id = Column(Text, nullable=False, index=True)
    offered_rate = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    shift_dates = Column(JSON, nullable=False)  # ISO-8601 strings
    payout_method = Column(String(16), nullable=False, default="mpesa")
    payout_destination = Column(Text, nullable=False, default="")
    completed_at = Column(UTCDateTime, nullable=True)
    disputed = Column(Boolean, nullable=False, default=False)
    dispute_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PaymentIntent(Base):
    """Employer-side payment attempt for a stint"""

    __tablename__ = "payment_intent"

    id = Column(String(64), primary_key=True, default=new_id("pi"))
    stint_id = Column(String(64), nullable=False, index=True)
    employer_id = Column(Text, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    subtotal = Column(BigInteger, nullable=False)
    platform_fee = Column(BigInteger, nullable=False)
    promo_discount = Column(BigInteger, nullable=False, default=0)
    promotion_id = Column(Text, nullable=True)
    currency = Column(String(8), nullable=False)
    payment_method = Column(String(16), nullable=False)
    status = Column(String(32), nullable=False, default="initiated", index=True)
    external_reference = Column(Text, nullable=True)
    charge_attempted_at = Column(UTCDateTime, nullable=True)  # set before the gateway is called
    failure_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class GatewayConfirmation(Base):
    """Gateway confirmations already applied, keyed for deduplication"""

    __tablename__ = "gateway_confirmation"
    __table_args__ = (UniqueConstraint("stint_id", "external_reference", name="uq_confirmation_ref"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    stint_id = Column(String(64), nullable=False)
    external_reference = Column(Text, nullable=False)
    payment_intent_id = Column(String(64), nullable=False)
    outcome = Column(String(16), nullable=False)
    received_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PayoutRecord(Base):
    """Professional-side payout obligation for a completed stint"""

    __tablename__ = "payout_record"

    id = Column(String(64), primary_key=True, default=new_id("po"))
    stint_id = Column(String(64), nullable=False, unique=True)
    payment_intent_id = Column(String(64), nullable=False)
    professional_id = Column(Text, nullable=False, index=True)
    gross_amount = Column(BigInteger, nullable=False)
    platform_fee = Column(BigInteger, nullable=False)
    transfer_cost = Column(BigInteger, nullable=False)
    net_amount = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    payout_method = Column(String(16), nullable=False)
    destination = Column(Text, nullable=False, default="")
    status = Column(String(32), nullable=False, default="scheduled", index=True)
    hold_reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    attempt_token = Column(Text, nullable=True)
    rail_reference = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    shift_completed_at = Column(UTCDateTime, nullable=False)
    eligible_at = Column(UTCDateTime, nullable=False, index=True)
    processing_started_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class LedgerEntry(Base):
    """Append-only record of one money movement tied to a stint"""

    __tablename__ = "ledger_entry"

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True, default=new_id("le"))
    stint_id = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=False)
    amount = Column(BigInteger, nullable=False)  # signed, stint clearing balance
    currency = Column(String(8), nullable=False)
    reference_type = Column(String(16), nullable=False)
    reference_id = Column(String(64), nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PromotionUsage(Base):
    """One row per (promotion, employer) use of a promotion credit"""

    __tablename__ = "promotion_usage"
    __table_args__ = (UniqueConstraint("promotion_id", "employer_id", name="uq_promotion_employer"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    promotion_id = Column(Text, nullable=False)
    employer_id = Column(Text, nullable=False)
    stint_id = Column(String(64), nullable=False)
    credit_applied = Column(BigInteger, nullable=False)
    used_at = Column(UTCDateTime, nullable=False, default=utcnow)


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only and cannot be updated")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only and cannot be deleted")
