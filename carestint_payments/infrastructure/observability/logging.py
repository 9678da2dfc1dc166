"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from carestint_payments.utils.date_utils import utcnow

SERVICE_NAME = "carestint-payments"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = SERVICE_NAME


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_payment_transition(
    payment_intent_id: str,
    stint_id: str,
    from_status: str,
    to_status: str,
    amount: int,
    reason: str | None = None,
) -> None:
    """Log a payment intent status change"""
    logging.info(
        "Payment intent transition",
        extra={
            "payment_intent_id": payment_intent_id,
            "stint_id": stint_id,
            "step": "payment_transition",
            "from_status": from_status,
            "to_status": to_status,
            "amount": amount,
            "reason": reason,
        },
    )


def log_payout_transition(
    payout_id: str,
    stint_id: str,
    from_status: str,
    to_status: str,
    net_amount: int,
    reason: str | None = None,
) -> None:
    """Log a payout record status change"""
    logging.info(
        "Payout transition",
        extra={
            "payout_id": payout_id,
            "stint_id": stint_id,
            "step": "payout_transition",
            "from_status": from_status,
            "to_status": to_status,
            "net_amount": net_amount,
            "reason": reason,
        },
    )


def log_settlement_run(processed: int, failed: int, in_flight: int, promoted: int, duration_ms: float) -> None:
    """Log the outcome of one settlement batch for operator dashboards"""
    logging.info(
        "Settlement run completed",
        extra={
            "step": "settlement_run",
            "processed": processed,
            "failed": failed,
            "in_flight": in_flight,
            "promoted": promoted,
            "duration_ms": duration_ms,
        },
    )


def log_invariant_violation(stint_id: str, detail: str) -> None:
    """Invariant violations are bugs; log loudly so they page someone"""
    logging.error(
        "Invariant violation",
        extra={
            "stint_id": stint_id,
            "step": "invariant_violation",
            "detail": detail,
        },
    )
