"""
tests/conftest.py
Shared fixtures: an isolated SQLite database per test, seeded users for each
role, the domain services wired to a controllable clock, and an HTTP client
bound to the FastAPI app with its dependencies pointed at the test database.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_GATEWAY_WEBHOOK_SECRET", "whsec_test")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pybreaker import CircuitBreaker
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.database import Base, get_db, get_session_factory
from main import app
from services.booking.service import BookingCreate, BookingLifecycleService
from services.commission.engine import CommissionEngine
from services.dependencies import get_payment_gateway
from services.payment.gateway import LocalPaymentGateway
from services.payout.engine import PayoutEngine
from services.settlement.facade import SettlementFacade
from shared.actor import Actor
from shared.models.models import (
    Booking,
    Payment,
    PaymentStatus,
    PricingModel,
    ServiceCategory,
    User,
    UserRole,
    UserRoleMembership,
)
from shared.utils.security import create_access_token


# ── Helpers ────────────────────────────────────────────────────────────────────

class FakeClock:
    """Callable clock the services read instead of the wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FailingGateway(LocalPaymentGateway):
    async def refund_payment(self, payment_id, amount, reason=None, metadata=None):
        raise ConnectionError("gateway unreachable")


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user.id, [m.role for m in user.roles], user.email)
    return {"Authorization": f"Bearer {token}"}


def actor_for(user: User) -> Actor:
    return Actor.of(user.id, user.role_set)


async def make_user(sessions, email: str, full_name: str, *roles: UserRole) -> User:
    async with sessions.begin() as db:
        user = User(
            id=uuid.uuid4(),
            email=email,
            full_name=full_name,
            is_active=True,
            roles=[UserRoleMembership(role=r) for r in roles],
        )
        db.add(user)
    return user


async def completed_booking(
    bookings: BookingLifecycleService,
    clock: FakeClock,
    customer: User,
    professional: User,
    category: ServiceCategory,
    quoted: str,
    pricing_model: PricingModel = PricingModel.FIXED,
    actual_hours: str = None,
) -> Booking:
    """Drive a booking through create → accept → check-in → complete at the clock's time."""
    booking = await bookings.create(
        BookingCreate(
            professional_id=professional.id,
            category_id=category.id,
            scheduled_at=clock.now + timedelta(hours=2),
            quoted_price_bdt=Decimal(quoted),
            pricing_model=pricing_model,
        ),
        actor_for(customer),
    )
    pro = actor_for(professional)
    await bookings.accept(booking.id, pro)
    await bookings.check_in(booking.id, pro)
    return await bookings.complete(booking.id, pro, actual_hours=actual_hours)


async def captured_payment(sessions, booking: Booking, amount: str, gateway: LocalPaymentGateway) -> Payment:
    """Capture through the local gateway and record the payment row it maps to."""
    intent = await gateway.create_intent(Decimal(amount), "BDT", booking.id, booking.customer_id)
    await gateway.capture_payment(intent.id)
    async with sessions.begin() as db:
        payment = Payment(
            id=uuid.uuid4(),
            booking_id=booking.id,
            amount_bdt=Decimal(amount),
            currency="BDT",
            status=PaymentStatus.CAPTURED,
            method="card",
            gateway_ref=intent.id,
        )
        db.add(payment)
    return payment


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def sessions(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(sessions):
    async with sessions() as session:
        yield session


# ── Users & Catalog ────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def customer(sessions) -> User:
    return await make_user(sessions, "customer@example.com", "Rahim Customer", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def professional(sessions) -> User:
    return await make_user(sessions, "pro@example.com", "Karim Electrician", UserRole.PROFESSIONAL)


@pytest_asyncio.fixture
async def other_professional(sessions) -> User:
    return await make_user(sessions, "pro2@example.com", "Salma Plumber", UserRole.PROFESSIONAL)


@pytest_asyncio.fixture
async def admin(sessions) -> User:
    return await make_user(sessions, "admin@example.com", "Ops Admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def category(sessions) -> ServiceCategory:
    async with sessions.begin() as db:
        category = ServiceCategory(id=uuid.uuid4(), name="Electrical", slug="electrical", is_active=True)
        db.add(category)
    return category


@pytest_asyncio.fixture
async def other_category(sessions) -> ServiceCategory:
    async with sessions.begin() as db:
        category = ServiceCategory(id=uuid.uuid4(), name="Plumbing", slug="plumbing", is_active=True)
        db.add(category)
    return category


@pytest.fixture
def admin_actor(admin) -> Actor:
    return actor_for(admin)


# ── Services ───────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> LocalPaymentGateway:
    return LocalPaymentGateway(webhook_secret="whsec_test")


@pytest.fixture
def commission(sessions) -> CommissionEngine:
    return CommissionEngine(sessions)


@pytest.fixture
def bookings(sessions, commission, notifier, clock) -> BookingLifecycleService:
    return BookingLifecycleService(sessions, commission, notifier, clock=clock)


@pytest.fixture
def payouts(sessions, notifier, clock) -> PayoutEngine:
    return PayoutEngine(sessions, notifier, clock=clock)


@pytest.fixture
def settlements(sessions, payouts, gateway, notifier, clock) -> SettlementFacade:
    breaker = CircuitBreaker(fail_max=5, reset_timeout=60)
    return SettlementFacade(sessions, payouts, gateway, notifier, breaker=breaker, clock=clock)


# ── HTTP client ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(sessions, gateway):
    async def _get_db():
        async with sessions() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: sessions
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
