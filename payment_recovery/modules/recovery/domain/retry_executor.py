"""
Retry Executor - charges a due RetryAttempt.

The subscription lock is held for the whole operation:
  tx1  guard + mark attempted (committed before any money moves)
  ---  gateway charge, idempotency reference = retry id, under a timeout
  tx2  record the outcome; on failure the failure handler plans the next step

A retry found in `attempted` with no outcome was interrupted between charge
and commit. It is reconciled with `gateway.verify` instead of being charged
blindly a second time.
"""

import asyncio
import calendar
import time
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_recovery.models.payment import PaymentStatus
from payment_recovery.models.retry_attempt import RetryAttempt, RetryMethod, RetryStatus
from payment_recovery.models.scheduled_timer import TimerType
from payment_recovery.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from payment_recovery.modules.notifications.domain.dispatcher import NotificationDispatcher, NotificationOutbox
from payment_recovery.modules.recovery.domain.failure_handler import FailureHandler
from payment_recovery.modules.recovery.domain.gateway import ChargeResult, PaymentGateway
from payment_recovery.modules.recovery.domain.ledger import LedgerStore, ledger_transaction, require_uuid
from payment_recovery.modules.recovery.domain.retry_policy import FailureReason, classify_failure, decide_retry
from payment_recovery.modules.recovery.domain.state_machine import TERMINAL_STATES, transition
from payment_recovery.modules.scheduling.domain.timers import cancel_timers, retry_timer_key, schedule_timer
from payment_recovery.schemas.recovery import AbandonRetryResult, RetryExecutionResponse
from payment_recovery.shared.core.clock import Clock
from payment_recovery.shared.core.config import Settings
from payment_recovery.shared.core.events import EventBus, RecoveryEvents
from payment_recovery.shared.core.exceptions import GatewayError, InvalidStateError, ResourceNotFoundError
from payment_recovery.shared.core.locks import SubscriptionLockRegistry
from payment_recovery.shared.core.logging import audit_log
from payment_recovery.shared.core.ops_metrics import GATEWAY_CHARGE_DURATION, RETRY_OUTCOMES

logger = structlog.get_logger()


def add_billing_cycle(moment: datetime, cycle: str) -> datetime:
    """Advance by one month or year, clamping to the last day of shorter months."""
    months = 12 if cycle == BillingCycle.ANNUAL.value else 1
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


class RetryExecutor:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        locks: SubscriptionLockRegistry,
        gateway: PaymentGateway,
        failure_handler: FailureHandler,
        dispatcher: NotificationDispatcher,
        events: EventBus,
        clock: Clock,
        settings: Settings,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.gateway = gateway
        self.failure_handler = failure_handler
        self.dispatcher = dispatcher
        self.events = events
        self.clock = clock
        self.settings = settings

    async def execute_retry(self, retry_id) -> RetryExecutionResponse:
        """
        Run a retry attempt. Safe under at-least-once delivery: only the
        first delivery of a due attempt charges the gateway.
        """
        retry_id = require_uuid(retry_id, "retry_id")
        subscription_id = await self._subscription_of(retry_id)
        async with self.locks.hold(subscription_id):
            return await self._execute_locked(retry_id)

    async def _subscription_of(self, retry_id: UUID) -> UUID:
        async with ledger_transaction(self.session_maker) as ledger:
            retry = await ledger.get_retry(retry_id)
            if retry is None:
                raise ResourceNotFoundError("Retry attempt not found", details={"retry_id": str(retry_id)})
            return retry.subscription_id

    async def _execute_locked(self, retry_id: UUID) -> RetryExecutionResponse:
        # tx1: guard and claim
        async with ledger_transaction(self.session_maker) as ledger:
            retry = await ledger.get_retry(retry_id)
            subscription = await ledger.get_subscription(retry.subscription_id, for_update=True)

            skipped = await self._guard(ledger, retry, subscription)
            if skipped is not None:
                return skipped

            in_doubt = retry.status == RetryStatus.ATTEMPTED.value
            closed = subscription.status in TERMINAL_STATES
            if not in_doubt:
                retry.status = RetryStatus.ATTEMPTED.value
                retry.attempted_at = self.clock.now()

            payment = await ledger.get_payment(retry.payment_id)
            charge_args = {
                "method": payment.payment_method or subscription.payment_method,
                "amount": payment.amount,
                "currency": payment.currency,
                "reference": str(retry.id),
                "customer_email": subscription.owner_email,
            }

        result: Optional[ChargeResult] = None
        if in_doubt:
            result = await self._reconcile(retry_id)
            if result is None and closed:
                # Never reached the gateway; a closed subscription is not charged
                return await self._abandon_unsettled(retry_id)
        if result is None:
            result = await self._charge(**charge_args)

        # tx2: record outcome
        outbox = NotificationOutbox()
        async with ledger_transaction(self.session_maker) as ledger:
            retry = await ledger.get_retry(retry_id)
            subscription = await ledger.get_subscription(retry.subscription_id, for_update=True)
            if result.success:
                response = await self._record_success(ledger, outbox, retry, subscription, result)
            else:
                response = await self._record_failure(ledger, outbox, retry, subscription, result)
            retry.outcome = response.model_dump(mode="json")
            # Direct executions leave the attempt's own timer pending
            await cancel_timers(ledger.db, [retry_timer_key(retry.id)])

        outbox.release(self.dispatcher)
        RETRY_OUTCOMES.labels(outcome=retry.status).inc()
        return response

    async def _guard(
        self,
        ledger: LedgerStore,
        retry: RetryAttempt,
        subscription: Subscription,
    ) -> Optional[RetryExecutionResponse]:
        """Return an outcome when this delivery must not charge, else None."""
        now = self.clock.now()

        if retry.status in (RetryStatus.SUCCEEDED.value, RetryStatus.FAILED.value):
            RETRY_OUTCOMES.labels(outcome="duplicate").inc()
            logger.info("retry_duplicate_delivery", retry_id=str(retry.id), status=retry.status)
            if retry.outcome:
                return RetryExecutionResponse.model_validate({**retry.outcome, "executed": False})
            return self._skip_response(retry, subscription, "Retry already executed")

        if retry.status == RetryStatus.ABANDONED.value:
            RETRY_OUTCOMES.labels(outcome="skipped").inc()
            logger.info("retry_abandoned_skip", retry_id=str(retry.id))
            return self._skip_response(retry, subscription, "Retry was cancelled")

        if retry.status == RetryStatus.ATTEMPTED.value:
            logger.warning("retry_in_doubt", retry_id=str(retry.id), attempted_at=str(retry.attempted_at))
            return None

        if subscription.status in TERMINAL_STATES:
            retry.status = RetryStatus.ABANDONED.value
            await cancel_timers(ledger.db, [retry_timer_key(retry.id)])
            RETRY_OUTCOMES.labels(outcome="skipped").inc()
            return self._skip_response(retry, subscription, f"Subscription is {subscription.status}")

        if retry.scheduled_at > now:
            RETRY_OUTCOMES.labels(outcome="not_due").inc()
            return self._skip_response(retry, subscription, "Retry not yet due", next_retry_date=retry.scheduled_at)

        return None

    def _skip_response(
        self,
        retry: RetryAttempt,
        subscription: Subscription,
        message: str,
        next_retry_date: Optional[datetime] = None,
    ) -> RetryExecutionResponse:
        return RetryExecutionResponse(
            success=retry.status == RetryStatus.SUCCEEDED.value,
            retry_id=retry.id,
            retry_status=retry.status,
            executed=False,
            next_retry_date=next_retry_date,
            grace_period_end=subscription.grace_period_end,
            subscription_status=subscription.status,
            message=message,
        )

    async def _abandon_unsettled(self, retry_id: UUID) -> RetryExecutionResponse:
        async with ledger_transaction(self.session_maker) as ledger:
            retry = await ledger.get_retry(retry_id)
            subscription = await ledger.get_subscription(retry.subscription_id)
            retry.status = RetryStatus.ABANDONED.value
            await cancel_timers(ledger.db, [retry_timer_key(retry.id)])
            response = self._skip_response(
                retry, subscription, f"Interrupted retry was never charged; subscription is {subscription.status}"
            )
            retry.outcome = response.model_dump(mode="json")

        RETRY_OUTCOMES.labels(outcome="skipped").inc()
        logger.info(
            "retry_in_doubt_abandoned",
            retry_id=str(retry_id),
            subscription_id=str(subscription.id),
            subscription_status=subscription.status,
        )
        return response

    async def _reconcile(self, retry_id: UUID) -> Optional[ChargeResult]:
        """Outcome of an interrupted charge; GatewayError leaves the attempt in doubt for the next delivery."""
        try:
            result = await asyncio.wait_for(
                self.gateway.verify(str(retry_id)),
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise GatewayError(
                "Timed out verifying an interrupted charge",
                code="gateway_timeout",
                details={"retry_id": str(retry_id)},
            )
        logger.info(
            "retry_in_doubt_reconciled",
            retry_id=str(retry_id),
            found=result is not None,
            success=result.success if result else None,
        )
        return result

    async def _charge(self, **charge_args) -> ChargeResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.gateway.charge(**charge_args),
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            )
            outcome = "succeeded" if result.success else "declined"
        except asyncio.TimeoutError:
            result = ChargeResult(success=False, failure_reason=FailureReason.TIMEOUT.value, error_code="GATEWAY_TIMEOUT")
            outcome = "timeout"
        except GatewayError as e:
            if e.code in ("gateway_timeout", "gateway_pending"):
                result = ChargeResult(success=False, failure_reason=FailureReason.TIMEOUT.value, error_code="GATEWAY_TIMEOUT")
                outcome = "timeout"
            else:
                result = ChargeResult(success=False, failure_reason=FailureReason.UNKNOWN.value, error_code="GATEWAY_ERROR")
                outcome = "error"
        except Exception as e:  # noqa: BLE001 - any gateway fault is a soft decline
            logger.error("gateway_charge_exception", reference=charge_args.get("reference"), error=str(e))
            result = ChargeResult(success=False, failure_reason=FailureReason.UNKNOWN.value, error_code="GATEWAY_ERROR")
            outcome = "error"

        GATEWAY_CHARGE_DURATION.labels(outcome=outcome).observe(time.perf_counter() - started)
        logger.info("gateway_charge_finished", reference=charge_args.get("reference"), outcome=outcome)
        return result

    async def _record_success(
        self,
        ledger: LedgerStore,
        outbox: NotificationOutbox,
        retry: RetryAttempt,
        subscription: Subscription,
        result: ChargeResult,
    ) -> RetryExecutionResponse:
        now = self.clock.now()
        retry.status = RetryStatus.SUCCEEDED.value
        retry.gateway_transaction_id = result.transaction_id

        payment = await ledger.get_payment(retry.payment_id)
        payment.status = PaymentStatus.PAID.value
        payment.gateway_transaction_id = result.transaction_id
        payment.paid_at = now
        await ledger.flush()

        await self.events.publish(
            RecoveryEvents.PAYMENT_RECOVERED,
            ledger,
            subscription_id=subscription.id,
            retry_id=retry.id,
            payment_id=payment.id,
        )

        if subscription.status in TERMINAL_STATES:
            # Interrupted charge settled after the subscription was closed
            outbox.alert(
                "Payment collected on closed subscription",
                f"Retry {retry.id} settled after subscription {subscription.id} became {subscription.status}. "
                "Review for refund or reactivation.",
                severity="critical",
            )
            message = "Payment collected after the subscription was closed; flagged for review."
        else:
            transition(subscription, SubscriptionStatus.ACTIVE, at=now)
            subscription.current_period_start = subscription.current_period_end
            subscription.current_period_end = add_billing_cycle(subscription.current_period_end, subscription.billing_cycle)
            subscription.requires_manual_review = False
            subscription.episode_started_at = None
            subscription.grace_period_end = None
            outbox.add(
                "payment_recovered",
                "email",
                subscription.owner_email,
                plan=subscription.plan,
                amount=payment.amount,
                currency=payment.currency,
                period_end=subscription.current_period_end.strftime("%B %d, %Y"),
            )
            message = "Payment retry succeeded. Subscription is now active."
        await ledger.flush()

        logger.info(
            "retry_succeeded",
            retry_id=str(retry.id),
            subscription_id=str(subscription.id),
            attempt_number=retry.attempt_number,
            retry_method=retry.retry_method,
        )
        return RetryExecutionResponse(
            success=True,
            retry_id=retry.id,
            retry_status=retry.status,
            executed=True,
            subscription_status=subscription.status,
            message=message,
        )

    async def _record_failure(
        self,
        ledger: LedgerStore,
        outbox: NotificationOutbox,
        retry: RetryAttempt,
        subscription: Subscription,
        result: ChargeResult,
    ) -> RetryExecutionResponse:
        retry.status = RetryStatus.FAILED.value
        retry.gateway_transaction_id = result.transaction_id
        retry.error_code = result.error_code
        await ledger.flush()

        logger.info(
            "retry_failed",
            retry_id=str(retry.id),
            subscription_id=str(subscription.id),
            attempt_number=retry.attempt_number,
            error_code=result.error_code,
        )

        if subscription.status in TERMINAL_STATES:
            retry.failure_reason = classify_failure(result.failure_reason, result.error_code).value
            return RetryExecutionResponse(
                success=False,
                retry_id=retry.id,
                retry_status=retry.status,
                executed=True,
                subscription_status=subscription.status,
                message=f"Payment retry failed; subscription is {subscription.status}.",
            )

        payment = await ledger.get_payment(retry.payment_id)
        handled = await self.failure_handler.apply_failure(
            ledger, outbox, subscription, payment, result.failure_reason or "unknown", result.error_code
        )
        retry.failure_reason = payment.failure_reason

        return RetryExecutionResponse(
            success=False,
            retry_id=retry.id,
            retry_status=retry.status,
            executed=True,
            next_retry_id=handled.retry_id,
            next_retry_date=handled.next_retry_date,
            grace_period_end=handled.grace_period_end,
            recommended_action=handled.recommended_action,
            subscription_status=subscription.status,
            message="Payment retry failed. " + handled.message,
        )

    # ==================== Operator overrides ====================

    async def trigger_manual_retry(self, subscription_id, actor: str = "operator") -> RetryExecutionResponse:
        """
        Charge now, on the shared attempt counter. A pending automatic attempt
        is superseded by the manual one.
        """
        subscription_id = require_uuid(subscription_id, "subscription_id")
        async with self.locks.hold(subscription_id):
            async with ledger_transaction(self.session_maker) as ledger:
                manual = await self._create_manual_attempt(ledger, subscription_id)
            audit_log(
                "manual_retry_triggered",
                str(subscription_id),
                actor=actor,
                details={"retry_id": str(manual.id), "attempt_number": manual.attempt_number},
            )
            return await self._execute_locked(manual.id)

    async def _create_manual_attempt(self, ledger: LedgerStore, subscription_id: UUID) -> RetryAttempt:
        now = self.clock.now()
        subscription = await ledger.get_subscription(subscription_id, for_update=True)
        if subscription is None:
            raise ResourceNotFoundError("Subscription not found", details={"subscription_id": str(subscription_id)})
        if not subscription.in_failure_episode:
            raise InvalidStateError(
                "Subscription has no failed payment to retry",
                details={"subscription_id": str(subscription_id), "status": subscription.status},
            )

        scheduled = await ledger.scheduled_retry(subscription.id)
        if scheduled is not None:
            # Takes over the pending attempt's slot on the shared counter
            attempt_number = scheduled.attempt_number
            reference = scheduled
        else:
            latest = await ledger.latest_retry(subscription.id, since=subscription.episode_started_at)
            if latest is None:
                raise InvalidStateError("No retry history for this failure", details={"subscription_id": str(subscription_id)})
            if latest.status == RetryStatus.ATTEMPTED.value:
                raise InvalidStateError("A retry is already in progress", details={"retry_id": str(latest.id)})
            attempt_number = latest.attempt_number + 1
            reference = latest

        reason = FailureReason(reference.failure_reason or FailureReason.UNKNOWN.value)
        decision = decide_retry(attempt_number, reason)
        if not decision.should_retry:
            raise InvalidStateError(
                "Retry budget exhausted",
                code="retry_budget_exhausted",
                details={"subscription_id": str(subscription_id), "attempt_number": attempt_number},
            )

        if scheduled is not None:
            scheduled.status = RetryStatus.ABANDONED.value
            await cancel_timers(ledger.db, [retry_timer_key(scheduled.id)])
            await ledger.flush()

        manual = RetryAttempt(
            subscription_id=subscription.id,
            payment_id=reference.payment_id,
            attempt_number=attempt_number,
            scheduled_at=now,
            status=RetryStatus.SCHEDULED.value,
            retry_method=RetryMethod.MANUAL.value,
            grace_period_active=decision.grace_active,
            failure_reason=reason.value,
        )
        await ledger.add(manual)
        # Runs immediately below; the timer picks it up if this worker dies first
        await schedule_timer(
            ledger.db,
            TimerType.RETRY_EXECUTION,
            due_at=now,
            payload={"subscription_id": str(subscription.id), "retry_id": str(manual.id)},
            deduplication_key=retry_timer_key(manual.id),
            subscription_id=subscription.id,
        )
        return manual

    async def abandon_retry(self, retry_id, actor: str = "operator") -> AbandonRetryResult:
        """Admin override: cancel a scheduled attempt. Anything else is left untouched."""
        retry_id = require_uuid(retry_id, "retry_id")
        subscription_id = await self._subscription_of(retry_id)
        async with self.locks.hold(subscription_id):
            async with ledger_transaction(self.session_maker) as ledger:
                retry = await ledger.get_retry(retry_id)
                changed = retry.status == RetryStatus.SCHEDULED.value
                if changed:
                    retry.status = RetryStatus.ABANDONED.value
                    await cancel_timers(ledger.db, [retry_timer_key(retry.id)])
                status = retry.status

        if changed:
            audit_log("retry_abandoned", str(subscription_id), actor=actor, details={"retry_id": str(retry_id)})
        return AbandonRetryResult(retry_id=retry_id, retry_status=status, changed=changed)
