"""Pytest fixtures for testing"""

import pytest
from datetime import date, datetime
from types import SimpleNamespace
from typing import Generator
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from charge_engine.api.dependencies import get_gateway_client, get_sync_client
from charge_engine.api.main import create_app
from charge_engine.config import EngineConfig
from charge_engine.domain.exceptions import GatewayError, GatewayTimeoutError
from charge_engine.domain.models import GatewayCharge
from charge_engine.infrastructure.database.models import (
    Base,
    DiscountCategory,
    DiscountCode,
    RegistrationCategory,
    Season,
    User,
)
from charge_engine.infrastructure.database.repositories import CatalogRepository, DiscountUsageRepository
from charge_engine.infrastructure.database.session import get_db
from charge_engine.services.notifications import Notifier
from charge_engine.services.orchestrator import ChargeOrchestrator
from charge_engine.services.pricing import PricingCalculator
from charge_engine.services.purchases import PurchaseService
from charge_engine.services.scheduler import InstallmentScheduler
from charge_engine.services.staging import StagingLedgerWriter


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TODAY = date(2026, 3, 2)
NOW = datetime(2026, 3, 2, 12, 0, 0)


class FakeGateway:
    """
    In-memory payment intents API.

    Queued outcomes are consumed one per call: a status string, an exception
    to raise, or "timeout_after_create" (intent created, caller sees a timeout).
    Repeated idempotency keys replay the stored intent, as the real gateway does.
    Intent ids run pi_test_1, pi_test_2, ... in creation order.
    """

    def __init__(self, default_status: str = "succeeded"):
        self.default_status = default_status
        self.outcomes = []
        self.calls = []
        self.intents = {}
        self.retrieved = []

    async def create_charge(
        self,
        amount_cents,
        currency,
        payment_method,
        customer,
        metadata,
        idempotency_key,
        description="",
        receipt_email=None,
    ):
        self.calls.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "payment_method": payment_method,
                "customer": customer,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
                "description": description,
            }
        )
        if idempotency_key in self.intents:
            return self.intents[idempotency_key]

        outcome = self.outcomes.pop(0) if self.outcomes else self.default_status
        if isinstance(outcome, Exception):
            raise outcome

        timeout = outcome == "timeout_after_create"
        status = "succeeded" if timeout else outcome
        charge = GatewayCharge(
            id=f"pi_test_{len(self.intents) + 1}",
            status=status,
            failure_reason=None if status == "succeeded" else "Your card was declined.",
        )
        self.intents[idempotency_key] = charge
        if timeout:
            raise GatewayTimeoutError("Gateway request timed out")
        return charge

    async def retrieve_charge(self, charge_id):
        self.retrieved.append(charge_id)
        for charge in self.intents.values():
            if charge.id == charge_id:
                return charge
        raise GatewayError(f"No such payment intent: {charge_id}")

    def settle(self, charge_id, status):
        """Move a stored intent to its final status, as the gateway does asynchronously"""
        for key, charge in self.intents.items():
            if charge.id == charge_id:
                self.intents[key] = GatewayCharge(
                    id=charge.id,
                    status=status,
                    failure_reason=None if status == "succeeded" else "Your card was declined.",
                )


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
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sync_client() -> AsyncMock:
    client = AsyncMock()
    client.notify_staging_ready.return_value = None
    return client


@pytest.fixture
def client(db: Session, gateway: FakeGateway, sync_client: AsyncMock) -> TestClient:
    """Create FastAPI test client with test database and fake gateway"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_sync_client] = lambda: sync_client
    return TestClient(app)


@pytest.fixture
def catalog(db: Session) -> SimpleNamespace:
    """
    One season with a $50.00 registration, a sibling discount category capped
    at $15.00 per user per season with a 20% code, an uncapped 100% staff code,
    a member with a verified card, a member without one and an admin.
    """
    season = Season(name="Spring 2026")
    db.add(season)
    db.flush()

    category = RegistrationCategory(season_id=season.id, name="U12 Spring", price=5000, accounting_code="REG-2026")
    unpriced = RegistrationCategory(season_id=season.id, name="Unpriced", price=None, accounting_code="REG-2026")
    sibling = DiscountCategory(name="Sibling", accounting_code="DISC-SIB", max_discount_per_user_per_season=1500)
    staff = DiscountCategory(name="Staff", accounting_code="DISC-STAFF", max_discount_per_user_per_season=None)
    uncoded = DiscountCategory(name="Scholarship", accounting_code=None, max_discount_per_user_per_season=None)
    db.add_all([category, unpriced, sibling, staff, uncoded])
    db.flush()

    code = DiscountCode(discount_category_id=sibling.id, code="SIB20", percentage=20)
    full = DiscountCode(discount_category_id=staff.id, code="STAFF100", percentage=100)
    once = DiscountCode(discount_category_id=sibling.id, code="ONCE10", percentage=10, per_user_usage_limit=1)
    uncoded_code = DiscountCode(discount_category_id=uncoded.id, code="SCHOLAR", percentage=50)
    expired = DiscountCode(discount_category_id=sibling.id, code="OLD20", percentage=20, valid_until=date(2025, 12, 31))
    db.add_all([code, full, once, uncoded_code, expired])

    member = User(
        email="parent@example.com",
        first_name="Pat",
        last_name="Parent",
        api_token="member-token",
        payment_instrument_id="pm_card_visa",
        setup_intent_status="succeeded",
        gateway_customer_id="cus_member",
    )
    no_card = User(email="nocard@example.com", first_name="No", last_name="Card", api_token="nocard-token")
    admin = User(email="admin@example.com", first_name="Ada", last_name="Admin", api_token="admin-token", is_admin=True)
    db.add_all([member, no_card, admin])
    db.commit()

    return SimpleNamespace(
        season=season,
        category=category,
        unpriced=unpriced,
        sibling=sibling,
        code=code,
        full_code=full,
        once_code=once,
        uncoded_code=uncoded_code,
        expired_code=expired,
        member=member,
        no_card=no_card,
        admin=admin,
    )


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def services(db: Session, gateway: FakeGateway, engine_config: EngineConfig) -> SimpleNamespace:
    """Engine components wired together the way the API dependencies wire them"""
    notifier = Notifier(db)
    writer = StagingLedgerWriter(db)
    orchestrator = ChargeOrchestrator(db, gateway, notifier, currency="usd")
    scheduler = InstallmentScheduler(db, orchestrator, writer, notifier, engine_config)
    pricing = PricingCalculator(CatalogRepository(db), DiscountUsageRepository(db))
    purchases = PurchaseService(db, pricing, writer, orchestrator, scheduler)
    return SimpleNamespace(
        notifier=notifier,
        writer=writer,
        orchestrator=orchestrator,
        scheduler=scheduler,
        pricing=pricing,
        purchases=purchases,
    )
