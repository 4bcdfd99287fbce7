"""Shared fixtures: a throwaway SQLite database per test and in-memory collaborators."""

import os
import sys
import uuid
from datetime import date, datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import models  # noqa: F401  registers every table
from config import Settings
from db.database import Base
from models.booking import Booking
from models.field import Field
from models.subscription import Subscription
from models.user import User
from services.payment_gateway import (
    GatewayEvent,
    InvoicePayment,
    PlanRegistration,
    RecurringPlan,
)
from services.time_of_day import slot_window

# Monday morning; every test runs against this clock
NOW = datetime(2026, 3, 2, 9, 0)
TODAY = NOW.date()


class FakeGateway:
    """Records every call; ``fail_with[method] = exc`` makes that method raise."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: dict[str, Exception] = {}
        self.pay_result: InvoicePayment | None = InvoicePayment(status="paid", invoice_id="in_test")
        self.invoices = []
        self.events: dict[bytes, GatewayEvent] = {}
        self._plans = 0

    def _record(self, name: str, /, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.fail_with:
            raise self.fail_with[name]

    def called(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def create_customer(self, email, name, metadata):
        self._record("create_customer", email=email, name=name)
        return "cus_test"

    async def attach_payment_method(self, customer_id, payment_method_id):
        self._record("attach_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)

    async def set_default_payment_method(self, customer_id, payment_method_id):
        self._record("set_default_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)

    async def create_recurring_plan(self, spec):
        self._record("create_recurring_plan", spec=spec)
        self._plans += 1
        return PlanRegistration(
            plan_ref=RecurringPlan(f"sub_test{self._plans}"),
            period_start=NOW,
            period_end=NOW + timedelta(days=7),
        )

    async def cancel_plan(self, plan_ref, immediate, comment=None):
        self._record("cancel_plan", plan_ref=plan_ref, immediate=immediate)

    async def pay_open_invoice(self, plan_ref):
        self._record("pay_open_invoice", plan_ref=plan_ref)
        return self.pay_result

    async def list_invoices(self, plan_ref):
        self._record("list_invoices", plan_ref=plan_ref)
        return self.invoices

    async def refund(self, payment_ref, amount, reason, metadata, idempotency_key=None):
        self._record(
            "refund", payment_ref=payment_ref, amount=amount, reason=reason, idempotency_key=idempotency_key
        )
        return f"re_{payment_ref}"

    def parse_event(self, payload, signature):
        return self.events[payload]


class FakeNotifier:
    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, user_id, type, title, message, data=None):
        self.sent.append(
            {"user_id": user_id, "type": type, "title": title, "message": message, "data": data or {}}
        )

    def types(self) -> list[str]:
        return [n["type"] for n in self.sent]

    def for_user(self, user_id) -> list[str]:
        return [n["type"] for n in self.sent if n["user_id"] == user_id]


# ── Database ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── Collaborators ──────────────────────────────────────────

@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def test_settings():
    return Settings(
        max_advance_booking_days=30,
        max_payment_retries=3,
        payment_retry_delay_hours=24,
        platform_commission_rate=0.20,
        currency="gbp",
    )


@pytest.fixture
def service(gateway, notifier, test_settings):
    from services.subscriptions import SubscriptionService

    return SubscriptionService(gateway, notifier, test_settings)


# ── Records ────────────────────────────────────────────────

@pytest_asyncio.fixture
async def owner(db):
    user = User(full_name="Fiona Owner", email="owner@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def customer(db):
    user = User(full_name="Casey Customer", email="casey@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def other_customer(db):
    user = User(full_name="Robin Rival", email="robin@example.com")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def field(db, owner):
    field = Field(
        owner_id=owner.id,
        name="Meadow Paddock",
        price_per_unit=10.0,
        booking_duration="60min",
    )
    db.add(field)
    await db.commit()
    return field


@pytest.fixture
def make_subscription(db, customer, field):
    async def _make(**overrides) -> Subscription:
        values = dict(
            user_id=customer.id,
            field_id=field.id,
            plan_kind="recurring",
            external_ref=f"sub_{uuid.uuid4().hex[:12]}",
            interval="weekly",
            time_slots=["10:00AM - 10:55AM"],
            number_of_dogs=1,
            total_price=10.0,
            anchor_date=TODAY,
            status="active",
            payment_retry_count=0,
        )
        values.update(overrides)
        subscription = Subscription(**values)
        db.add(subscription)
        await db.commit()
        return subscription

    return _make


@pytest.fixture
def make_booking(db, customer, field):
    counter = {"n": 5000}

    async def _make(day: date, slot: str = "10:00AM", **overrides) -> Booking:
        counter["n"] += 1
        start, end = slot_window(slot, field.session_minutes)
        values = dict(
            booking_number=str(counter["n"]),
            field_id=field.id,
            user_id=customer.id,
            date=day,
            start_minute=start.minutes,
            end_minute=end.minutes,
            time_slot=slot,
            total_price=10.0,
            platform_commission=2.0,
            field_owner_amount=8.0,
            status="confirmed",
            payment_status="paid",
        )
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        await db.commit()
        return booking

    return _make
