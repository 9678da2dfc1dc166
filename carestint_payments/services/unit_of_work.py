"""Transaction boundary shared by the engine services"""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from carestint_payments.domain.exceptions import ConcurrentModificationError, InvariantViolationError
from carestint_payments.infrastructure.observability.logging import log_invariant_violation
from carestint_payments.infrastructure.observability.metrics import invariant_violation_counter


@contextmanager
def unit_of_work(db: Session, stint_id: Optional[str] = None) -> Iterator[Session]:
    """
    Commit on success, roll back on any error.

    A lost optimistic-concurrency race surfaces as ConcurrentModificationError;
    invariant violations are logged at ERROR and counted before re-raising.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrentModificationError(f"Stint {stint_id} was modified concurrently: {e}") from e
    except InvariantViolationError as e:
        db.rollback()
        invariant_violation_counter.inc()
        log_invariant_violation(stint_id or "unknown", str(e))
        raise
    except Exception:
        db.rollback()
        raise
