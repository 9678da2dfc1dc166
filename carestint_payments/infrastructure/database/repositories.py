"""Data access layer for payment, payout and ledger entities"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from carestint_payments.infrastructure.database.models import (
    GatewayConfirmation,
    LedgerEntry,
    PaymentIntent,
    PayoutRecord,
    PromotionUsage,
    StintSnapshot,
)
from carestint_payments.domain.models import PaymentIntentStatus, PayoutMethod, PayoutStatus, Stint


class StintRepository:
    """Repository for stint snapshots"""

    def __init__(self, db: Session):
        self.db = db

    def upsert_from_stint(self, stint: Stint) -> StintSnapshot:
        """Create or refresh the snapshot for a stint handed over by the marketplace"""
        snapshot = self.db.get(StintSnapshot, stint.stint_id)
        if snapshot is None:
            snapshot = StintSnapshot(stint_id=stint.stint_id)
            self.db.add(snapshot)
        snapshot.employer_id = stint.employer_id
        snapshot.professional_id = stint.professional_id
        snapshot.offered_rate = stint.offered_rate
        snapshot.currency = stint.currency
        snapshot.shift_dates = [d.isoformat() for d in stint.shift_dates]
        snapshot.payout_method = PayoutMethod(stint.payout_method).value
        snapshot.payout_destination = stint.payout_destination
        self.db.flush()
        return snapshot

    def get(self, stint_id: str) -> Optional[StintSnapshot]:
        return self.db.get(StintSnapshot, stint_id)


class PaymentIntentRepository:
    """Repository for payment intents"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, intent: PaymentIntent) -> PaymentIntent:
        self.db.add(intent)
        self.db.flush()  # Get ID without committing
        return intent

    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        return self.db.get(PaymentIntent, intent_id)

    def list_by_stint(self, stint_id: str) -> List[PaymentIntent]:
        """All intents for a stint, newest first"""
        return (
            self.db.query(PaymentIntent)
            .filter(PaymentIntent.stint_id == stint_id)
            .order_by(PaymentIntent.created_at.desc())
            .all()
        )

    def get_live_for_stint(self, stint_id: str) -> Optional[PaymentIntent]:
        """The intent that is open or has collected money for the stint, if any"""
        live = [
            PaymentIntentStatus.INITIATED.value,
            PaymentIntentStatus.PENDING.value,
            PaymentIntentStatus.SUCCESS.value,
            PaymentIntentStatus.PARTIALLY_REFUNDED.value,
            PaymentIntentStatus.REFUNDED.value,
        ]
        return (
            self.db.query(PaymentIntent)
            .filter(PaymentIntent.stint_id == stint_id, PaymentIntent.status.in_(live))
            .order_by(PaymentIntent.created_at.desc())
            .first()
        )

    def get_by_external_reference(self, stint_id: str, external_reference: str) -> Optional[PaymentIntent]:
        return (
            self.db.query(PaymentIntent)
            .filter(
                PaymentIntent.stint_id == stint_id,
                PaymentIntent.external_reference == external_reference,
            )
            .first()
        )

    def list_expired_unconfirmed(self, now: datetime) -> List[PaymentIntent]:
        """Initiated intents whose expiry time has passed"""
        return (
            self.db.query(PaymentIntent)
            .filter(
                PaymentIntent.status == PaymentIntentStatus.INITIATED.value,
                PaymentIntent.expires_at < now,
            )
            .order_by(PaymentIntent.expires_at)
            .all()
        )


class ConfirmationRepository:
    """Repository for applied gateway confirmations"""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, stint_id: str, external_reference: str) -> bool:
        return (
            self.db.query(GatewayConfirmation.id)
            .filter(
                GatewayConfirmation.stint_id == stint_id,
                GatewayConfirmation.external_reference == external_reference,
            )
            .first()
            is not None
        )

    def record(self, stint_id: str, external_reference: str, payment_intent_id: str, outcome: str, now: datetime) -> None:
        self.db.add(
            GatewayConfirmation(
                stint_id=stint_id,
                external_reference=external_reference,
                payment_intent_id=payment_intent_id,
                outcome=outcome,
                received_at=now,
            )
        )
        self.db.flush()


class PayoutRepository:
    """Repository for payout records"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, payout: PayoutRecord) -> PayoutRecord:
        self.db.add(payout)
        self.db.flush()
        return payout

    def get(self, payout_id: str) -> Optional[PayoutRecord]:
        return self.db.get(PayoutRecord, payout_id)

    def get_by_stint(self, stint_id: str) -> Optional[PayoutRecord]:
        return self.db.query(PayoutRecord).filter(PayoutRecord.stint_id == stint_id).first()

    def list_by_status(self, status: PayoutStatus) -> List[PayoutRecord]:
        return (
            self.db.query(PayoutRecord)
            .filter(PayoutRecord.status == status.value)
            .order_by(PayoutRecord.eligible_at, PayoutRecord.created_at)
            .all()
        )

    def list_due(self, now: datetime) -> List[PayoutRecord]:
        """Scheduled payouts whose hold window has elapsed"""
        return (
            self.db.query(PayoutRecord)
            .filter(
                PayoutRecord.status == PayoutStatus.SCHEDULED.value,
                PayoutRecord.eligible_at <= now,
            )
            .order_by(PayoutRecord.eligible_at)
            .all()
        )

    def list_stuck_processing(self, started_before: datetime) -> List[PayoutRecord]:
        return (
            self.db.query(PayoutRecord)
            .filter(
                PayoutRecord.status == PayoutStatus.PROCESSING.value,
                PayoutRecord.processing_started_at < started_before,
            )
            .order_by(PayoutRecord.processing_started_at)
            .all()
        )

    def count_by_status(self) -> Dict[str, int]:
        rows = self.db.query(PayoutRecord.status, func.count(PayoutRecord.id)).group_by(PayoutRecord.status).all()
        return {status: count for status, count in rows}

    def total_net_completed(self) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(PayoutRecord.net_amount), 0))
            .filter(PayoutRecord.status == PayoutStatus.COMPLETED.value)
            .scalar()
        )
        return int(total)


class LedgerRepository:
    """Repository for append-only ledger entries"""

    def __init__(self, db: Session):
        self.db = db

    def add_all(self, entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
        entries = list(entries)
        self.db.add_all(entries)
        self.db.flush()  # assigns sequence numbers
        return entries

    def list_by_stint(self, stint_id: str) -> List[LedgerEntry]:
        """Entries in creation order, ties broken by sequence"""
        return (
            self.db.query(LedgerEntry)
            .filter(LedgerEntry.stint_id == stint_id)
            .order_by(LedgerEntry.created_at, LedgerEntry.sequence)
            .all()
        )

    def sum_by_stint(self, stint_id: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.stint_id == stint_id)
            .scalar()
        )
        return int(total)

    def sum_by_reference(self, reference_type: str, reference_id: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
            )
            .scalar()
        )
        return int(total)

    def sum_by_type(self, reference_type: str) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.reference_type == reference_type)
            .scalar()
        )
        return int(total)


class PromotionUsageRepository:
    """Repository for promotion usage records"""

    def __init__(self, db: Session):
        self.db = db

    def count_uses(self, promotion_id: str, employer_id: str) -> int:
        return (
            self.db.query(func.count(PromotionUsage.id))
            .filter(
                PromotionUsage.promotion_id == promotion_id,
                PromotionUsage.employer_id == employer_id,
            )
            .scalar()
        )

    def record(self, promotion_id: str, employer_id: str, stint_id: str, credit_applied: int, now: datetime) -> None:
        self.db.add(
            PromotionUsage(
                promotion_id=promotion_id,
                employer_id=employer_id,
                stint_id=stint_id,
                credit_applied=credit_applied,
                used_at=now,
            )
        )
        self.db.flush()
