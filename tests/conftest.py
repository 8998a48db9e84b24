import os
# Test configuration BEFORE any payment_recovery imports
os.environ["DB_SSL_MODE"] = "disable"
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payment_recovery.models import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from payment_recovery.modules.notifications.domain.dispatcher import NotificationDispatcher
from payment_recovery.modules.recovery.domain.container import build_recovery_services
from payment_recovery.modules.recovery.domain.gateway import ChargeResult
from payment_recovery.shared.core.clock import FrozenClock
from payment_recovery.shared.core.config import get_settings
from payment_recovery.shared.db.base import Base

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeGateway:
    """
    Scripted gateway. Queue ChargeResult objects (or exceptions to raise) in
    `results`; an empty queue charges successfully.
    """

    def __init__(self):
        self.results: List[Any] = []
        self.charges: List[Dict[str, Any]] = []
        self.settled: Dict[str, ChargeResult] = {}
        self.verify_calls: List[str] = []

    def script(self, *results) -> None:
        self.results.extend(results)

    async def charge(self, method, amount, currency, reference, customer_email=None) -> ChargeResult:
        self.charges.append({
            "method": method,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "customer_email": customer_email,
        })
        outcome = self.results.pop(0) if self.results else ChargeResult(
            success=True, transaction_id=f"txn_{len(self.charges)}"
        )
        if isinstance(outcome, BaseException):
            raise outcome
        self.settled[reference] = outcome
        return outcome

    async def verify(self, reference) -> Optional[ChargeResult]:
        self.verify_calls.append(reference)
        return self.settled.get(reference)


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that records instead of delivering."""

    def __init__(self):
        super().__init__()
        self.sent: List[Dict[str, Any]] = []
        self.alerts: List[Dict[str, Any]] = []

    async def send(self, template_id, channel, recipient, context=None) -> bool:
        self.sent.append({
            "template_id": template_id,
            "channel": channel,
            "recipient": recipient,
            "context": context or {},
        })
        return True

    async def send_ops_alert(self, title, message, severity="warning") -> bool:
        self.alerts.append({"title": title, "message": message, "severity": severity})
        return True

    def templates(self) -> List[str]:
        return [m["template_id"] for m in self.sent]


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
async def session_maker(tmp_path):
    # File-backed so every transaction sees committed rows
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'recovery.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 10},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def services(session_maker, gateway, dispatcher, clock, settings):
    return build_recovery_services(
        session_maker=session_maker,
        gateway=gateway,
        dispatcher=dispatcher,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def make_subscription(session_maker, clock):
    async def _make(**overrides) -> Subscription:
        values = dict(
            id=uuid4(),
            owner_id=uuid4(),
            owner_email="owner@example.com",
            owner_phone="+2348000000000",
            plan="growth",
            status=SubscriptionStatus.ACTIVE.value,
            billing_cycle="monthly",
            amount=Decimal("49.00"),
            currency="USD",
            payment_method="AUTH_test123",
            current_period_start=clock.now() - timedelta(days=30),
            current_period_end=clock.now(),
            auto_renew=True,
            requires_manual_review=False,
        )
        values.update(overrides)
        subscription = Subscription(**values)
        async with session_maker() as db:
            async with db.begin():
                db.add(subscription)
        return subscription

    return _make


@pytest.fixture
def make_payment(session_maker):
    async def _make(subscription: Subscription, **overrides) -> Payment:
        values = dict(
            id=uuid4(),
            subscription_id=subscription.id,
            amount=subscription.amount,
            currency=subscription.currency,
            status=PaymentStatus.CREATED.value,
            payment_method=subscription.payment_method,
        )
        values.update(overrides)
        payment = Payment(**values)
        async with session_maker() as db:
            async with db.begin():
                db.add(payment)
        return payment

    return _make


@pytest.fixture
def fetch(session_maker):
    """Re-read a row by primary key in a fresh session."""
    async def _fetch(model, pk):
        async with session_maker() as db:
            return await db.get(model, pk)

    return _fetch


@pytest.fixture
def fetch_all(session_maker):
    async def _fetch_all(model, **filters):
        stmt = select(model)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        async with session_maker() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    return _fetch_all


@pytest.fixture
def failed_subscription(services, make_subscription, make_payment):
    """An active subscription whose charge just failed with insufficient funds."""
    async def _make(reason: str = "insufficient_funds", error_code: Optional[str] = None, **overrides):
        subscription = await make_subscription(**overrides)
        payment = await make_payment(subscription)
        response = await services.failure_handler.handle_failure(
            payment.id, subscription.id, reason, error_code
        )
        return subscription, payment, response

    return _make

