"""
Tests for the Retry Executor

Covers:
- Success: payment paid, subscription active, period extended, campaign resolved
- Failure: next attempt planned through the failure handler
- At-least-once delivery: duplicates never charge twice
- Not-due and abandoned attempts
- Gateway timeout / errors as soft declines
- In-doubt attempts reconciled with gateway.verify
- Manual retries and admin abandon
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from payment_recovery.models import (
    CampaignResolution,
    CampaignStatus,
    DunningCampaign,
    Payment,
    PaymentStatus,
    RetryAttempt,
    RetryMethod,
    RetryStatus,
    ScheduledTimer,
    Subscription,
    SubscriptionStatus,
    TimerStatus,
)
from payment_recovery.modules.recovery.domain.gateway import ChargeResult
from payment_recovery.modules.recovery.domain.retry_executor import add_billing_cycle
from payment_recovery.shared.core.exceptions import (
    GatewayError,
    InvalidStateError,
    ResourceNotFoundError,
)

DECLINED = ChargeResult(success=False, failure_reason="insufficient_funds", error_code="INSUFFICIENT_FUNDS")


class TestSuccess:
    @pytest.mark.asyncio
    async def test_successful_retry_recovers_subscription(
        self, services, failed_subscription, fetch, fetch_all, gateway, dispatcher, clock
    ):
        subscription, payment, handled = await failed_subscription()
        old_period_end = subscription.current_period_end
        clock.advance(days=1)

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.success is True
        assert result.executed is True
        assert result.retry_status == RetryStatus.SUCCEEDED.value
        assert result.subscription_status == SubscriptionStatus.ACTIVE.value

        assert len(gateway.charges) == 1
        charge = gateway.charges[0]
        assert charge["reference"] == str(handled.retry_id)
        assert charge["method"] == "AUTH_test123"
        assert charge["amount"] == payment.amount

        stored_payment = await fetch(Payment, payment.id)
        assert stored_payment.status == PaymentStatus.PAID.value
        assert stored_payment.gateway_transaction_id == "txn_1"
        assert stored_payment.paid_at == clock.now()

        stored = await fetch(Subscription, subscription.id)
        assert stored.status == SubscriptionStatus.ACTIVE.value
        assert stored.current_period_start == old_period_end
        assert stored.current_period_end == add_billing_cycle(old_period_end, "monthly")
        assert stored.grace_period_end is None
        assert stored.requires_manual_review is False

        campaign = (await fetch_all(DunningCampaign, subscription_id=subscription.id))[0]
        assert campaign.status == CampaignStatus.RESOLVED.value
        assert campaign.resolution == CampaignResolution.PAYMENT_RECOVERED.value
        step_timers = [
            t for t in await fetch_all(ScheduledTimer, subscription_id=subscription.id)
            if t.timer_type == "dunning_step"
        ]
        assert all(t.status == TimerStatus.CANCELLED.value for t in step_timers)

        await dispatcher.drain()
        assert dispatcher.templates() == ["payment_failed", "payment_recovered"]

    @pytest.mark.asyncio
    async def test_duplicate_delivery_returns_cached_outcome(self, services, failed_subscription, gateway, clock):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)

        first = await services.retry_executor.execute_retry(handled.retry_id)
        second = await services.retry_executor.execute_retry(handled.retry_id)

        assert len(gateway.charges) == 1
        assert second.executed is False
        assert second.success is True
        assert second.retry_status == first.retry_status
        assert second.message == first.message

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_charge_once(self, services, failed_subscription, gateway, clock):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)

        results = await asyncio.gather(*[
            services.retry_executor.execute_retry(handled.retry_id) for _ in range(4)
        ])

        assert len(gateway.charges) == 1
        assert sum(1 for r in results if r.executed) == 1
        assert all(r.success for r in results)


class TestFailure:
    @pytest.mark.asyncio
    async def test_failed_retry_schedules_next_attempt(self, services, failed_subscription, fetch, gateway, clock):
        subscription, _, handled = await failed_subscription()
        clock.advance(days=1)
        gateway.script(DECLINED)

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.success is False
        assert result.executed is True
        assert result.retry_status == RetryStatus.FAILED.value
        assert result.subscription_status == SubscriptionStatus.PAYMENT_FAILED.value
        assert result.next_retry_date == clock.now() + timedelta(days=3)

        failed = await fetch(RetryAttempt, handled.retry_id)
        assert failed.status == RetryStatus.FAILED.value
        assert failed.error_code == "INSUFFICIENT_FUNDS"

        nxt = await fetch(RetryAttempt, result.next_retry_id)
        assert nxt.attempt_number == 2
        assert nxt.status == RetryStatus.SCHEDULED.value
        assert nxt.grace_period_active is True

        stored = await fetch(Subscription, subscription.id)
        assert stored.status == SubscriptionStatus.PAYMENT_FAILED.value
        # Grace period is anchored to the start of the episode
        assert stored.grace_period_end == handled.grace_period_end

    @pytest.mark.asyncio
    async def test_full_soft_schedule_then_manual_review(self, services, failed_subscription, fetch, gateway, dispatcher, clock):
        subscription, _, handled = await failed_subscription()
        retry_id = handled.retry_id
        expected = [(2, 3, True), (3, 7, True), (4, 14, False)]

        for attempt, delay_days, grace in expected:
            retry = await fetch(RetryAttempt, retry_id)
            clock.set(retry.scheduled_at)
            gateway.script(DECLINED)
            result = await services.retry_executor.execute_retry(retry_id)
            nxt = await fetch(RetryAttempt, result.next_retry_id)
            assert nxt.attempt_number == attempt
            assert nxt.scheduled_at == clock.now() + timedelta(days=delay_days)
            assert nxt.grace_period_active is grace
            retry_id = nxt.id

        retry = await fetch(RetryAttempt, retry_id)
        clock.set(retry.scheduled_at)
        gateway.script(DECLINED)
        result = await services.retry_executor.execute_retry(retry_id)

        assert result.next_retry_id is None
        assert result.recommended_action == "manual_review"
        stored = await fetch(Subscription, subscription.id)
        assert stored.requires_manual_review is True
        assert stored.status == SubscriptionStatus.PAYMENT_FAILED.value

        await dispatcher.drain()
        assert len(dispatcher.alerts) == 1
        assert len(gateway.charges) == 4

    @pytest.mark.asyncio
    async def test_hard_decline_stops_after_one_retry(self, services, failed_subscription, fetch, fetch_all, gateway, clock):
        subscription, _, handled = await failed_subscription("card_expired")
        clock.advance(days=1)
        gateway.script(ChargeResult(success=False, failure_reason="Expired card", error_code="EXPIRED_CARD"))

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.next_retry_id is None
        assert await fetch_all(RetryAttempt, subscription_id=subscription.id, status=RetryStatus.SCHEDULED.value) == []
        stored = await fetch(Subscription, subscription.id)
        assert stored.requires_manual_review is True
        # Campaign carries on as the only recovery path
        campaign = (await fetch_all(DunningCampaign, subscription_id=subscription.id))[0]
        assert campaign.status == CampaignStatus.ACTIVE.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raised,error_code,reason", [
        (asyncio.TimeoutError(), "GATEWAY_TIMEOUT", "timeout"),
        (GatewayError("timed out", code="gateway_timeout"), "GATEWAY_TIMEOUT", "timeout"),
        (GatewayError("Paystack unavailable"), "GATEWAY_ERROR", "unknown"),
        (RuntimeError("socket closed"), "GATEWAY_ERROR", "unknown"),
    ])
    async def test_gateway_exceptions_are_soft_declines(
        self, services, failed_subscription, fetch, gateway, clock, raised, error_code, reason
    ):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)
        gateway.script(raised)

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.success is False
        assert result.next_retry_id is not None
        failed = await fetch(RetryAttempt, handled.retry_id)
        assert failed.error_code == error_code
        assert failed.failure_reason == reason

    @pytest.mark.asyncio
    async def test_slow_gateway_times_out(self, services, failed_subscription, fetch, gateway, clock, monkeypatch):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)
        monkeypatch.setattr(services.retry_executor.settings, "GATEWAY_TIMEOUT_SECONDS", 0.05)

        async def hang(**kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(gateway, "charge", hang)

        result = await services.retry_executor.execute_retry(handled.retry_id)
        assert result.success is False
        assert (await fetch(RetryAttempt, handled.retry_id)).failure_reason == "timeout"


class TestGuards:
    @pytest.mark.asyncio
    async def test_not_yet_due(self, services, failed_subscription, fetch, gateway):
        _, _, handled = await failed_subscription()

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.executed is False
        assert result.retry_status == RetryStatus.SCHEDULED.value
        assert result.next_retry_date == handled.next_retry_date
        assert gateway.charges == []
        assert (await fetch(RetryAttempt, handled.retry_id)).status == RetryStatus.SCHEDULED.value

    @pytest.mark.asyncio
    async def test_abandoned_attempt_is_noop(self, services, failed_subscription, gateway, clock):
        _, _, handled = await failed_subscription()
        await services.retry_executor.abandon_retry(handled.retry_id)
        clock.advance(days=1)

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.executed is False
        assert result.retry_status == RetryStatus.ABANDONED.value
        assert gateway.charges == []

    @pytest.mark.asyncio
    async def test_unknown_retry(self, services):
        with pytest.raises(ResourceNotFoundError):
            await services.retry_executor.execute_retry("4b7a5f0e-3c1d-4a84-9a55-1f0e6c1d2b3a")

    @pytest.mark.asyncio
    async def test_cancelled_subscription_abandons_attempt(
        self, services, failed_subscription, session_maker, fetch, gateway, clock
    ):
        subscription, _, handled = await failed_subscription()
        async with session_maker() as db:
            async with db.begin():
                stored = await db.get(Subscription, subscription.id)
                stored.status = SubscriptionStatus.CANCELLED.value
        clock.advance(days=1)

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert result.executed is False
        assert gateway.charges == []
        assert (await fetch(RetryAttempt, handled.retry_id)).status == RetryStatus.ABANDONED.value


class TestInDoubt:
    async def _mark_attempted(self, session_maker, retry_id, at):
        async with session_maker() as db:
            async with db.begin():
                retry = await db.get(RetryAttempt, retry_id)
                retry.status = RetryStatus.ATTEMPTED.value
                retry.attempted_at = at

    @pytest.mark.asyncio
    async def test_settled_charge_is_recorded_without_recharging(
        self, services, failed_subscription, session_maker, fetch, gateway, clock
    ):
        subscription, payment, handled = await failed_subscription()
        clock.advance(days=1)
        await self._mark_attempted(session_maker, handled.retry_id, clock.now())
        gateway.settled[str(handled.retry_id)] = ChargeResult(success=True, transaction_id="txn_before_crash")

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert gateway.verify_calls == [str(handled.retry_id)]
        assert gateway.charges == []
        assert result.success is True
        assert (await fetch(Payment, payment.id)).gateway_transaction_id == "txn_before_crash"
        assert (await fetch(Subscription, subscription.id)).status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_unseen_reference_is_charged_with_same_reference(
        self, services, failed_subscription, session_maker, gateway, clock
    ):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)
        await self._mark_attempted(session_maker, handled.retry_id, clock.now())

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert gateway.verify_calls == [str(handled.retry_id)]
        assert [c["reference"] for c in gateway.charges] == [str(handled.retry_id)]
        assert result.success is True

    async def _cancel_through_dunning(self, services, session_maker, fetch_all, clock, subscription, retry_id):
        """Interrupt the first retry mid-charge, then let dunning run out."""
        campaign = (await fetch_all(DunningCampaign, subscription_id=subscription.id))[0]
        clock.advance(days=1)
        await self._mark_attempted(session_maker, retry_id, clock.now())
        await services.dunning.process_step(subscription.id, campaign.id, 1)
        for step, gap in [(2, 4), (3, 5), (4, 3)]:
            clock.advance(days=gap)
            await services.dunning.process_step(subscription.id, campaign.id, step)

    @pytest.mark.asyncio
    async def test_abandonment_flags_retry_in_doubt(
        self, services, failed_subscription, session_maker, fetch, fetch_all, dispatcher, clock
    ):
        subscription, _, handled = await failed_subscription()

        await self._cancel_through_dunning(services, session_maker, fetch_all, clock, subscription, handled.retry_id)

        assert (await fetch(Subscription, subscription.id)).status == SubscriptionStatus.CANCELLED.value
        assert (await fetch(RetryAttempt, handled.retry_id)).status == RetryStatus.ATTEMPTED.value
        await dispatcher.drain()
        flagged = [a for a in dispatcher.alerts if a["title"] == "Interrupted charge on cancelled subscription"]
        assert len(flagged) == 1
        assert str(handled.retry_id) in flagged[0]["message"]

    @pytest.mark.asyncio
    async def test_unseen_reference_on_cancelled_subscription_is_never_charged(
        self, services, failed_subscription, session_maker, fetch, fetch_all, gateway, clock
    ):
        subscription, payment, handled = await failed_subscription()
        await self._cancel_through_dunning(services, session_maker, fetch_all, clock, subscription, handled.retry_id)

        result = await services.retry_executor.execute_retry(handled.retry_id)
        again = await services.retry_executor.execute_retry(handled.retry_id)

        assert gateway.verify_calls == [str(handled.retry_id)]
        assert gateway.charges == []
        assert result.success is False
        assert result.executed is False
        assert result.retry_status == RetryStatus.ABANDONED.value
        assert again.executed is False
        assert (await fetch(RetryAttempt, handled.retry_id)).status == RetryStatus.ABANDONED.value
        assert (await fetch(Payment, payment.id)).status != PaymentStatus.PAID.value
        assert (await fetch(Subscription, subscription.id)).status == SubscriptionStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_settled_charge_on_cancelled_subscription_is_recorded_and_alerted(
        self, services, failed_subscription, session_maker, fetch, fetch_all, gateway, dispatcher, clock
    ):
        subscription, payment, handled = await failed_subscription()
        await self._cancel_through_dunning(services, session_maker, fetch_all, clock, subscription, handled.retry_id)
        gateway.settled[str(handled.retry_id)] = ChargeResult(success=True, transaction_id="txn_before_crash")

        result = await services.retry_executor.execute_retry(handled.retry_id)

        assert gateway.charges == []
        assert result.success is True
        assert (await fetch(Payment, payment.id)).status == PaymentStatus.PAID.value
        assert (await fetch(Subscription, subscription.id)).status == SubscriptionStatus.CANCELLED.value
        await dispatcher.drain()
        assert "Payment collected on closed subscription" in [a["title"] for a in dispatcher.alerts]

    @pytest.mark.asyncio
    async def test_verify_timeout_leaves_attempt_in_doubt(
        self, services, failed_subscription, session_maker, fetch, gateway, clock, monkeypatch
    ):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)
        await self._mark_attempted(session_maker, handled.retry_id, clock.now())
        monkeypatch.setattr(services.retry_executor.settings, "GATEWAY_TIMEOUT_SECONDS", 0.05)

        async def hang(reference):
            await asyncio.sleep(5)

        monkeypatch.setattr(gateway, "verify", hang)

        with pytest.raises(GatewayError) as exc:
            await services.retry_executor.execute_retry(handled.retry_id)

        assert exc.value.code == "gateway_timeout"
        assert exc.value.retryable is True
        assert gateway.charges == []
        assert (await fetch(RetryAttempt, handled.retry_id)).status == RetryStatus.ATTEMPTED.value


class TestManualRetry:
    @pytest.mark.asyncio
    async def test_manual_retry_supersedes_scheduled_attempt(
        self, services, failed_subscription, fetch, fetch_all, gateway
    ):
        subscription, _, handled = await failed_subscription()

        result = await services.retry_executor.trigger_manual_retry(subscription.id)

        assert result.success is True
        assert result.executed is True
        assert len(gateway.charges) == 1

        attempts = await fetch_all(RetryAttempt, subscription_id=subscription.id)
        by_method = {a.retry_method: a for a in attempts}
        manual = by_method[RetryMethod.MANUAL.value]
        assert manual.attempt_number == 1
        assert manual.status == RetryStatus.SUCCEEDED.value
        assert (await fetch(RetryAttempt, handled.retry_id)).status == RetryStatus.ABANDONED.value

        timer = (await fetch_all(ScheduledTimer, deduplication_key=f"retry_execution:{handled.retry_id}"))[0]
        assert timer.status == TimerStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_executed_manual_retry_timer_is_cancelled(self, services, failed_subscription, fetch_all):
        subscription, _, _ = await failed_subscription()

        result = await services.retry_executor.trigger_manual_retry(subscription.id)

        timer = (await fetch_all(ScheduledTimer, deduplication_key=f"retry_execution:{result.retry_id}"))[0]
        assert timer.status == TimerStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_interrupted_manual_retry_keeps_a_timer(
        self, services, failed_subscription, fetch_all, gateway, clock, monkeypatch
    ):
        subscription, _, _ = await failed_subscription()

        async def crash(retry_id):
            raise RuntimeError("worker died")

        monkeypatch.setattr(services.retry_executor, "_execute_locked", crash)
        with pytest.raises(RuntimeError):
            await services.retry_executor.trigger_manual_retry(subscription.id)
        monkeypatch.undo()

        manual = (await fetch_all(RetryAttempt, subscription_id=subscription.id, retry_method=RetryMethod.MANUAL.value))[0]
        assert manual.status == RetryStatus.SCHEDULED.value
        timer = (await fetch_all(ScheduledTimer, deduplication_key=f"retry_execution:{manual.id}"))[0]
        assert timer.status == TimerStatus.PENDING.value
        assert timer.scheduled_for == clock.now()
        assert timer.payload["retry_id"] == str(manual.id)

        result = await services.retry_executor.execute_retry(manual.id)
        assert result.success is True
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_failed_manual_retry_advances_shared_counter(self, services, failed_subscription, fetch, gateway):
        subscription, _, _ = await failed_subscription()
        gateway.script(DECLINED)

        result = await services.retry_executor.trigger_manual_retry(subscription.id)

        assert result.success is False
        nxt = await fetch(RetryAttempt, result.next_retry_id)
        assert nxt.attempt_number == 2
        assert nxt.retry_method == RetryMethod.AUTOMATIC.value

    @pytest.mark.asyncio
    async def test_manual_retry_requires_failure_episode(self, services, make_subscription):
        subscription = await make_subscription()
        with pytest.raises(InvalidStateError):
            await services.retry_executor.trigger_manual_retry(subscription.id)

    @pytest.mark.asyncio
    async def test_manual_retry_rejected_when_budget_exhausted(self, services, failed_subscription, gateway, clock):
        subscription, _, handled = await failed_subscription("card_expired")
        clock.advance(days=1)
        gateway.script(ChargeResult(success=False, failure_reason="card_expired", error_code="EXPIRED_CARD"))
        await services.retry_executor.execute_retry(handled.retry_id)

        with pytest.raises(InvalidStateError) as exc:
            await services.retry_executor.trigger_manual_retry(subscription.id)
        assert exc.value.code == "retry_budget_exhausted"
        assert len(gateway.charges) == 1


class TestAbandonRetry:
    @pytest.mark.asyncio
    async def test_abandon_scheduled(self, services, failed_subscription, fetch_all):
        _, _, handled = await failed_subscription()

        result = await services.retry_executor.abandon_retry(handled.retry_id, actor="admin@example.com")

        assert result.changed is True
        assert result.retry_status == RetryStatus.ABANDONED.value
        timer = (await fetch_all(ScheduledTimer, deduplication_key=f"retry_execution:{handled.retry_id}"))[0]
        assert timer.status == TimerStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_abandon_executed_attempt_is_noop(self, services, failed_subscription, clock):
        _, _, handled = await failed_subscription()
        clock.advance(days=1)
        await services.retry_executor.execute_retry(handled.retry_id)

        result = await services.retry_executor.abandon_retry(handled.retry_id)

        assert result.changed is False
        assert result.retry_status == RetryStatus.SUCCEEDED.value


@pytest.mark.parametrize("start,cycle,expected", [
    (datetime(2026, 1, 31, tzinfo=timezone.utc), "monthly", datetime(2026, 2, 28, tzinfo=timezone.utc)),
    (datetime(2026, 12, 15, tzinfo=timezone.utc), "monthly", datetime(2027, 1, 15, tzinfo=timezone.utc)),
    (datetime(2028, 2, 29, tzinfo=timezone.utc), "annual", datetime(2029, 2, 28, tzinfo=timezone.utc)),
])
def test_add_billing_cycle(start, cycle, expected):
    assert add_billing_cycle(start, cycle) == expected
