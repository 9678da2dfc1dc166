"""Pytest fixtures for testing"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from carestint_payments.api.dependencies import get_clock, get_gateway_client, get_rail_client, get_settings
from carestint_payments.api.main import create_app
from carestint_payments.config import Settings
from carestint_payments.domain.exceptions import RailTimeoutError
from carestint_payments.domain.models import GatewayResult, PaymentDetails, PayoutMethod, RailResult, Stint
from carestint_payments.infrastructure.database.models import Base, PaymentIntent
from carestint_payments.infrastructure.database.session import engine_options, get_db
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.services.payment_intents import PaymentIntentManager
from carestint_payments.services.payouts import PayoutScheduler
from carestint_payments.services.refunds import RefundResolver
from carestint_payments.services.settlement import SettlementRunner


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, **engine_options(TEST_DATABASE_URL))
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock the tests move by hand"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory payment gateway; queue outcomes before exercising the engine"""

    def __init__(self):
        self.charge_outcomes: List = []
        self.status_outcomes: List = []
        self.refund_error: Optional[Exception] = None
        self.charges: List[Dict] = []
        self.refunds: List[Dict] = []

    def _next(self, outcomes: List, default):
        outcome = outcomes.pop(0) if outcomes else default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def charge_or_confirm(self, tx_ref: str, amount: int, currency: str, details: PaymentDetails) -> GatewayResult:
        self.charges.append({"tx_ref": tx_ref, "amount": amount, "currency": currency})
        return self._next(self.charge_outcomes, GatewayResult(status="pending", gateway_reference=f"gw_{tx_ref}"))

    def check_status(self, gateway_reference: str) -> GatewayResult:
        return self._next(self.status_outcomes, GatewayResult(status="pending", gateway_reference=gateway_reference))

    def refund(self, gateway_reference: str, amount: int) -> GatewayResult:
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append({"reference": gateway_reference, "amount": amount})
        return GatewayResult(status="success", gateway_reference=f"rf_{gateway_reference}")


class FakeRail:
    """In-memory disbursement rail keyed by idempotency token"""

    def __init__(self):
        self.outcomes: List = []
        self.calls: List[Dict] = []
        self.statuses: Dict[str, RailResult] = {}

    def initiate_payout(
        self, method: str, destination: str, amount: int, currency: str, idempotency_token: str
    ) -> RailResult:
        self.calls.append(
            {"method": method, "destination": destination, "amount": amount, "token": idempotency_token}
        )
        outcome = self.outcomes.pop(0) if self.outcomes else RailResult(status="completed")
        if isinstance(outcome, Exception):
            raise outcome
        if outcome.rail_reference is None and outcome.status != "failed":
            outcome = RailResult(status=outcome.status, rail_reference=f"tr_{len(self.calls)}", message=outcome.message)
        return outcome

    def get_status(self, reference: str) -> RailResult:
        if reference not in self.statuses:
            raise RailTimeoutError(f"no answer for {reference}")
        return self.statuses[reference]


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Sessions for worker threads; each thread opens and closes its own"""
    return TestingSessionLocal


@pytest.fixture
def other_session(db: Session) -> Generator[Session, None, None]:
    """Second connection to the test database, as another worker process would hold"""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(database_url=TEST_DATABASE_URL, gateway_backoff_base=0.0, gateway_max_retries=3)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def rail() -> FakeRail:
    return FakeRail()


@pytest.fixture
def locks() -> StintLockRegistry:
    return StintLockRegistry()


@pytest.fixture
def scheduler(db: Session, test_settings: Settings, locks: StintLockRegistry, clock: FrozenClock) -> PayoutScheduler:
    return PayoutScheduler(db, test_settings, locks, clock=clock)


@pytest.fixture
def manager(
    db: Session,
    gateway: FakeGateway,
    scheduler: PayoutScheduler,
    locks: StintLockRegistry,
    test_settings: Settings,
    clock: FrozenClock,
) -> PaymentIntentManager:
    return PaymentIntentManager(db, gateway, scheduler, locks, test_settings, clock=clock, sleep=lambda _: None)


@pytest.fixture
def runner(
    db: Session,
    rail: FakeRail,
    scheduler: PayoutScheduler,
    manager: PaymentIntentManager,
    locks: StintLockRegistry,
    test_settings: Settings,
    clock: FrozenClock,
) -> SettlementRunner:
    return SettlementRunner(db, rail, scheduler, locks, test_settings, intents=manager, clock=clock)


@pytest.fixture
def resolver(
    db: Session,
    gateway: FakeGateway,
    scheduler: PayoutScheduler,
    locks: StintLockRegistry,
    test_settings: Settings,
    clock: FrozenClock,
) -> RefundResolver:
    return RefundResolver(db, gateway, scheduler, locks, test_settings, clock=clock)


@pytest.fixture
def make_stint() -> Callable[..., Stint]:
    """Stint factory: one normal-notice shift 48h out at 5000/day unless told otherwise"""

    def _make(stint_id: str = "stint_1", rate: int = 5000, shift_hours: tuple = (48,), **overrides) -> Stint:
        fields = dict(
            stint_id=stint_id,
            employer_id="employer_1",
            professional_id="pro_1",
            offered_rate=rate,
            currency="KES",
            shift_dates=[NOW + timedelta(hours=h) for h in shift_hours],
            payout_method=PayoutMethod.MPESA,
            payout_destination="254700000001",
        )
        fields.update(overrides)
        return Stint(**fields)

    return _make


@pytest.fixture
def paid_intent(
    manager: PaymentIntentManager, make_stint: Callable[..., Stint]
) -> Callable[..., PaymentIntent]:
    """Create, submit and confirm an intent; returns it in success"""

    def _pay(stint: Optional[Stint] = None) -> PaymentIntent:
        stint = stint or make_stint()
        intent = manager.create_intent(stint, "mpesa")
        intent = manager.submit(intent.id, PaymentDetails(payment_method="mpesa", phone_number="254711111111"))
        return manager.confirm(stint.stint_id, intent.external_reference, "success")

    return _pay


@pytest.fixture
def completed_payout(paid_intent, scheduler: PayoutScheduler, clock: FrozenClock):
    """Paid stint whose shift is completed and whose hold window has elapsed"""

    def _complete(stint: Optional[Stint] = None):
        intent = paid_intent(stint)
        payout = scheduler.record_shift_completion(intent.stint_id, clock.now)
        clock.advance(hours=25)
        return intent, payout

    return _complete


@pytest.fixture
def client(db: Session, gateway: FakeGateway, rail: FakeRail, clock: FrozenClock, test_settings: Settings) -> TestClient:
    """Create FastAPI test client with test database and fake external services"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_rail_client] = lambda: rail
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settings] = lambda: test_settings
    return TestClient(app)
