"""
Tests for the subscription lock registry and the recovery event bus.
"""

import asyncio
from uuid import uuid4

import pytest

from payment_recovery.shared.core.events import EventBus, RecoveryEvents
from payment_recovery.shared.core.locks import SubscriptionLockRegistry


class TestSubscriptionLocks:
    @pytest.mark.asyncio
    async def test_same_subscription_serialized(self):
        locks = SubscriptionLockRegistry()
        subscription_id = uuid4()
        order = []

        async def worker(name):
            async with locks.hold(subscription_id):
                order.append(f"{name}:in")
                await asyncio.sleep(0.01)
                order.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a:in", "a:out", "b:in", "b:out"], ["b:in", "b:out", "a:in", "a:out"])
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_subscriptions_do_not_contend(self):
        locks = SubscriptionLockRegistry()
        first, second = uuid4(), uuid4()

        async with locks.hold(first):
            assert locks.is_held(first)
            assert not locks.is_held(second)
            async with locks.hold(second):
                assert locks.is_held(second)

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = SubscriptionLockRegistry()
        subscription_id = uuid4()

        with pytest.raises(RuntimeError):
            async with locks.hold(subscription_id):
                raise RuntimeError("boom")

        assert not locks.is_held(subscription_id)
        assert len(locks) == 0


class TestEventBus:
    @pytest.mark.asyncio
    async def test_handlers_receive_ledger_and_payload(self):
        bus = EventBus()
        received = []

        async def handler(ledger, **payload):
            received.append((ledger, payload))

        bus.subscribe(RecoveryEvents.PAYMENT_RECOVERED, handler)

        ran = await bus.publish(RecoveryEvents.PAYMENT_RECOVERED, "ledger", subscription_id="s1")

        assert ran == 1
        assert received == [("ledger", {"subscription_id": "s1"})]

    @pytest.mark.asyncio
    async def test_no_handlers(self):
        assert await EventBus().publish(RecoveryEvents.CAMPAIGN_ABANDONED, None) == 0

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self):
        bus = EventBus()

        async def failing(ledger, **payload):
            raise ValueError("handler failed")

        bus.subscribe(RecoveryEvents.PAYMENT_RECOVERED, failing)

        with pytest.raises(ValueError):
            await bus.publish(RecoveryEvents.PAYMENT_RECOVERED, None)
