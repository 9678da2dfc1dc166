"""Ledger store - append-only money movements per stint"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from carestint_payments.domain.exceptions import LedgerInvariantError
from carestint_payments.domain.models import LedgerReferenceType, ReconciliationReport
from carestint_payments.infrastructure.database.models import LedgerEntry, PayoutRecord
from carestint_payments.infrastructure.database.repositories import LedgerRepository, PayoutRepository
from carestint_payments.infrastructure.observability.metrics import ledger_entry_counter
from carestint_payments.utils.date_utils import utcnow


def ledger_entry(
    stint_id: str,
    description: str,
    amount: int,
    currency: str,
    reference_type: LedgerReferenceType,
    reference_id: str,
    created_at: Optional[datetime] = None,
) -> LedgerEntry:
    """Build an entry; nothing is written until it is appended"""
    return LedgerEntry(
        stint_id=stint_id,
        description=description,
        amount=amount,
        currency=currency,
        reference_type=LedgerReferenceType(reference_type).value,
        reference_id=reference_id,
        created_at=created_at or utcnow(),
    )


class LedgerStore:
    """
    Reconciliation source of truth.

    Entries are only ever appended, inside the caller's transaction, so they
    commit or roll back together with the status change they record.
    Amounts are signed against the stint clearing balance: money entering
    platform custody is positive, money leaving it is negative.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = LedgerRepository(db)
        self.payouts = PayoutRepository(db)

    def append(self, entry: LedgerEntry) -> str:
        self.append_all([entry])
        return entry.id

    def append_all(self, entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
        entries = self.repo.add_all(entries)
        for entry in entries:
            ledger_entry_counter.labels(reference_type=entry.reference_type).inc()
        return entries

    def list_by_stint(self, stint_id: str) -> List[LedgerEntry]:
        return self.repo.list_by_stint(stint_id)

    def balance(self, stint_id: str) -> int:
        return self.repo.sum_by_stint(stint_id)

    def sum_by_reference(self, reference_type: LedgerReferenceType, reference_id: str) -> int:
        return self.repo.sum_by_reference(LedgerReferenceType(reference_type).value, reference_id)

    def reconcile(self, stint_id: str) -> ReconciliationReport:
        """Per-stint totals; a stint whose payout completed must balance to zero"""
        entries = self.list_by_stint(stint_id)
        totals = {t.value: 0 for t in LedgerReferenceType}
        for entry in entries:
            totals[entry.reference_type] += entry.amount

        payout: Optional[PayoutRecord] = self.payouts.get_by_stint(stint_id)
        return ReconciliationReport(
            stint_id=stint_id,
            balance=sum(totals.values()),
            entry_count=len(entries),
            totals_by_type=totals,
            payout_completed=payout is not None and payout.status == "completed",
        )

    def assert_settled(self, stint_id: str) -> None:
        """Raise if a settled stint does not net to zero"""
        balance = self.balance(stint_id)
        if balance != 0:
            raise LedgerInvariantError(f"Stint {stint_id} settled with non-zero ledger balance {balance}")
