"""
Failure Handler - entry point when a recurring charge fails.

Flow (one transaction, under the subscription lock):
1. Validate payment / subscription, short-circuit webhook redeliveries
2. Next attempt number: 1 on a fresh episode, latest + 1 otherwise
3. Ask the retry policy; on retry create a scheduled RetryAttempt + timer
4. Open a dunning campaign if none is active
5. Subscription -> past_due (first failure) / payment_failed (subsequent)
6. On stop: no retry, flag for manual review, the campaign carries on alone

Notifications are staged in an outbox and released only after commit.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_recovery.models.payment import Payment, PaymentStatus
from payment_recovery.models.retry_attempt import RetryAttempt, RetryMethod, RetryStatus
from payment_recovery.models.scheduled_timer import TimerType
from payment_recovery.models.subscription import Subscription, SubscriptionStatus
from payment_recovery.modules.notifications.domain.dispatcher import NotificationDispatcher, NotificationOutbox
from payment_recovery.modules.recovery.domain.dunning_service import DunningService, campaign_type_for
from payment_recovery.modules.recovery.domain.ledger import LedgerStore, ledger_transaction, require_uuid
from payment_recovery.modules.recovery.domain.retry_policy import (
    DeclineKind,
    FailureReason,
    classify_failure,
    decide_retry,
    decline_kind,
)
from payment_recovery.modules.recovery.domain.state_machine import TERMINAL_STATES, transition
from payment_recovery.modules.scheduling.domain.timers import cancel_timers, retry_timer_key, schedule_timer
from payment_recovery.schemas.recovery import FailureHandledResponse
from payment_recovery.shared.core.clock import Clock
from payment_recovery.shared.core.config import Settings
from payment_recovery.shared.core.exceptions import InvalidInputError, InvalidStateError, ResourceNotFoundError
from payment_recovery.shared.core.locks import SubscriptionLockRegistry
from payment_recovery.shared.core.ops_metrics import RETRY_ATTEMPTS_SCHEDULED, RETRY_BUDGET_EXHAUSTED

logger = structlog.get_logger()


class RecommendedAction:
    AWAIT_RETRY = "await_scheduled_retry"
    UPDATE_PAYMENT_METHOD = "update_payment_method"
    MANUAL_REVIEW = "manual_review"


def describe_delay(due: datetime, now: datetime) -> str:
    """'today', 'tomorrow', 'in 3 days'."""
    days = (due.date() - now.date()).days
    if days <= 0:
        return "today"
    if days == 1:
        return "tomorrow"
    return f"in {days} days"


class FailureHandler:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        locks: SubscriptionLockRegistry,
        dunning: DunningService,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        settings: Settings,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.dunning = dunning
        self.dispatcher = dispatcher
        self.clock = clock
        self.settings = settings

    async def handle_failure(
        self,
        payment_id,
        subscription_id,
        failure_reason: str,
        error_code: Optional[str] = None,
    ) -> FailureHandledResponse:
        """
        Record a failed charge and plan its recovery.

        Idempotent per payment: a redelivered failure returns the existing
        schedule with duplicate=True.

        Raises:
            InvalidInputError / ResourceNotFoundError / InvalidStateError: nothing written
            LedgerUnavailableError: nothing written, safe to call again
        """
        payment_id = require_uuid(payment_id, "payment_id")
        subscription_id = require_uuid(subscription_id, "subscription_id")
        if not failure_reason or not str(failure_reason).strip():
            raise InvalidInputError("failure_reason is required", details={"field": "failure_reason"})

        outbox = NotificationOutbox()
        async with self.locks.hold(subscription_id):
            async with ledger_transaction(self.session_maker) as ledger:
                subscription, payment = await self._load(ledger, payment_id, subscription_id)

                if payment.status == PaymentStatus.FAILED.value and subscription.in_failure_episode:
                    result = await self._already_handled(ledger, subscription, payment)
                else:
                    result = await self.apply_failure(
                        ledger, outbox, subscription, payment, failure_reason, error_code
                    )

        outbox.release(self.dispatcher)
        return result

    async def _load(self, ledger: LedgerStore, payment_id, subscription_id) -> tuple[Subscription, Payment]:
        subscription = await ledger.get_subscription(subscription_id, for_update=True)
        if subscription is None:
            raise ResourceNotFoundError("Subscription not found", details={"subscription_id": str(subscription_id)})

        payment = await ledger.get_payment(payment_id)
        if payment is None:
            raise ResourceNotFoundError("Payment not found", details={"payment_id": str(payment_id)})

        if payment.subscription_id != subscription.id:
            raise InvalidInputError(
                "Payment does not belong to subscription",
                details={"payment_id": str(payment_id), "subscription_id": str(subscription_id)},
            )
        if payment.is_terminal:
            raise InvalidStateError(
                f"Payment is already {payment.status}",
                code="payment_terminal",
                details={"payment_id": str(payment_id), "status": payment.status},
            )
        if subscription.status in TERMINAL_STATES:
            raise InvalidStateError(
                f"Subscription is {subscription.status}",
                code="subscription_terminal",
                details={"subscription_id": str(subscription_id), "status": subscription.status},
            )
        return subscription, payment

    async def _already_handled(
        self,
        ledger: LedgerStore,
        subscription: Subscription,
        payment: Payment,
    ) -> FailureHandledResponse:
        """Redelivered failure for a payment this episode already covers: report, don't write."""
        scheduled = await ledger.scheduled_retry(subscription.id)
        if scheduled is not None and scheduled.payment_id != payment.id:
            scheduled = None

        logger.info(
            "payment_failure_duplicate",
            payment_id=str(payment.id),
            subscription_id=str(subscription.id),
            retry_id=str(scheduled.id) if scheduled else None,
        )

        if scheduled is None:
            return FailureHandledResponse(
                success=False,
                recommended_action=RecommendedAction.MANUAL_REVIEW,
                grace_period_end=subscription.grace_period_end,
                subscription_status=subscription.status,
                requires_manual_review=subscription.requires_manual_review,
                duplicate=True,
                message="Payment failure already recorded; no automatic retry pending.",
            )

        return self._retry_response(subscription, scheduled, duplicate=True)

    async def apply_failure(
        self,
        ledger: LedgerStore,
        outbox: NotificationOutbox,
        subscription: Subscription,
        payment: Payment,
        failure_reason: str,
        error_code: Optional[str] = None,
    ) -> FailureHandledResponse:
        """
        Plan the next recovery step inside the caller's transaction.
        The retry executor calls this directly after a retry fails, with the
        subscription lock already held.
        """
        now = self.clock.now()
        reason = classify_failure(failure_reason, error_code)
        first_failure = not subscription.in_failure_episode

        if first_failure:
            attempt_number = 1
            subscription.episode_started_at = now
            subscription.grace_period_end = now + timedelta(days=self.settings.GRACE_PERIOD_DAYS)
            subscription.requires_manual_review = False
        else:
            latest = await ledger.latest_retry(subscription.id, since=subscription.episode_started_at)
            attempt_number = latest.attempt_number + 1 if latest else 1

        # A newer charge supersedes whatever retry was pending for an older one
        pending = await ledger.scheduled_retry(subscription.id)
        if pending is not None:
            await self._supersede(ledger, pending, payment)

        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = reason.value
        payment.error_code = error_code
        await ledger.flush()

        decision = decide_retry(attempt_number, reason)
        retry = None
        if decision.should_retry:
            retry = RetryAttempt(
                subscription_id=subscription.id,
                payment_id=payment.id,
                attempt_number=attempt_number,
                scheduled_at=now + decision.delay,
                status=RetryStatus.SCHEDULED.value,
                retry_method=RetryMethod.AUTOMATIC.value,
                grace_period_active=decision.grace_active,
                failure_reason=reason.value,
                error_code=error_code,
            )
            await ledger.add(retry)
            await schedule_timer(
                ledger.db,
                TimerType.RETRY_EXECUTION,
                due_at=retry.scheduled_at,
                payload={"subscription_id": str(subscription.id), "retry_id": str(retry.id)},
                deduplication_key=retry_timer_key(retry.id),
                subscription_id=subscription.id,
            )
            RETRY_ATTEMPTS_SCHEDULED.labels(failure_reason=reason.value, retry_method=retry.retry_method).inc()
        else:
            subscription.requires_manual_review = True
            RETRY_BUDGET_EXHAUSTED.labels(decline_kind=decline_kind(reason).value).inc()
            outbox.alert(
                "Payment recovery needs manual review",
                f"Subscription {subscription.id} ({subscription.plan}): retry budget exhausted after "
                f"{attempt_number - 1} attempt(s), last reason {reason.value}. Dunning continues.",
            )

        if await ledger.active_campaign(subscription.id) is None:
            await self.dunning.start_campaign(ledger, subscription, campaign_type_for(reason), now)

        target = SubscriptionStatus.PAST_DUE if first_failure else SubscriptionStatus.PAYMENT_FAILED
        transition(subscription, target, at=now)
        await ledger.flush()

        if first_failure:
            outbox.add(
                "payment_failed",
                "email",
                subscription.owner_email,
                plan=subscription.plan,
                amount=payment.amount,
                currency=payment.currency,
                next_retry_date=retry.scheduled_at.strftime("%B %d, %Y") if retry else "",
            )

        logger.info(
            "payment_failure_handled",
            payment_id=str(payment.id),
            subscription_id=str(subscription.id),
            failure_reason=reason.value,
            attempt_number=attempt_number,
            action=decision.action.value,
            retry_id=str(retry.id) if retry else None,
            subscription_status=subscription.status,
        )

        if retry is None:
            return FailureHandledResponse(
                success=False,
                attempt_number=attempt_number,
                grace_period_end=subscription.grace_period_end,
                recommended_action=RecommendedAction.MANUAL_REVIEW,
                subscription_status=subscription.status,
                requires_manual_review=True,
                message="Maximum retry attempts reached. The customer must update their payment method.",
            )
        return self._retry_response(subscription, retry, duplicate=False)

    async def _supersede(self, ledger: LedgerStore, pending: RetryAttempt, payment: Payment) -> None:
        pending.status = RetryStatus.ABANDONED.value
        await cancel_timers(ledger.db, [retry_timer_key(pending.id)])
        if pending.payment_id != payment.id:
            old_payment = await ledger.get_payment(pending.payment_id)
            if old_payment is not None and old_payment.status == PaymentStatus.FAILED.value:
                old_payment.status = PaymentStatus.CANCELLED.value
        await ledger.flush()
        logger.info(
            "retry_superseded",
            retry_id=str(pending.id),
            subscription_id=str(pending.subscription_id),
            new_payment_id=str(payment.id),
        )

    def _retry_response(self, subscription: Subscription, retry: RetryAttempt, duplicate: bool) -> FailureHandledResponse:
        reason = FailureReason(retry.failure_reason) if retry.failure_reason else FailureReason.UNKNOWN
        if decline_kind(reason) == DeclineKind.HARD:
            action = RecommendedAction.UPDATE_PAYMENT_METHOD
        else:
            action = RecommendedAction.AWAIT_RETRY
        return FailureHandledResponse(
            success=True,
            retry_id=retry.id,
            attempt_number=retry.attempt_number,
            next_retry_date=retry.scheduled_at,
            grace_period_end=subscription.grace_period_end,
            recommended_action=action,
            subscription_status=subscription.status,
            requires_manual_review=subscription.requires_manual_review,
            duplicate=duplicate,
            message=f"Payment retry scheduled {describe_delay(retry.scheduled_at, self.clock.now())}.",
        )
