"""Dependency injection for FastAPI endpoints"""

from datetime import datetime
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from carestint_payments.config import Settings, settings
from carestint_payments.infrastructure.clients.gateway import GatewayClient, PaymentGateway
from carestint_payments.infrastructure.clients.rail import DisbursementRail, RailClient
from carestint_payments.infrastructure.database.session import get_db
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.services.payment_intents import PaymentIntentManager
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.refunds import RefundResolver
from carestint_payments.services.settlement import SettlementRunner
from carestint_payments.utils.date_utils import utcnow


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_settings() -> Settings:
    return settings


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_lock_registry(request: Request) -> StintLockRegistry:
    """One registry per application instance"""
    return request.app.state.locks


def get_gateway_client() -> PaymentGateway:
    """Provide payment gateway client instance"""
    return GatewayClient()


def get_rail_client() -> DisbursementRail:
    """Provide disbursement rail client instance"""
    return RailClient()


def get_payout_scheduler(
    db: Session = Depends(get_db),
    locks: StintLockRegistry = Depends(get_lock_registry),
    app_settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PayoutScheduler:
    return PayoutScheduler(db, app_settings, locks, clock=clock)


def get_payment_intent_manager(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway_client),
    scheduler: PayoutScheduler = Depends(get_payout_scheduler),
    locks: StintLockRegistry = Depends(get_lock_registry),
    app_settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PaymentIntentManager:
    return PaymentIntentManager(db, gateway, scheduler, locks, app_settings, clock=clock)


def get_refund_resolver(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway_client),
    scheduler: PayoutScheduler = Depends(get_payout_scheduler),
    locks: StintLockRegistry = Depends(get_lock_registry),
    app_settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RefundResolver:
    return RefundResolver(db, gateway, scheduler, locks, app_settings, clock=clock)


def get_settlement_runner(
    db: Session = Depends(get_db),
    rail: DisbursementRail = Depends(get_rail_client),
    scheduler: PayoutScheduler = Depends(get_payout_scheduler),
    intents: PaymentIntentManager = Depends(get_payment_intent_manager),
    locks: StintLockRegistry = Depends(get_lock_registry),
    app_settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SettlementRunner:
    return SettlementRunner(db, rail, scheduler, locks, app_settings, intents=intents, clock=clock)
