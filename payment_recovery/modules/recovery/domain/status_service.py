"""
Read-side retry status for account and support dashboards.

Unsynchronized reads: results may trail an in-flight retry by a few seconds.
Summaries are plain language and never carry gateway error codes.
"""

from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_recovery.models.dunning_campaign import CampaignStatus, CampaignResolution, DunningCampaign
from payment_recovery.models.retry_attempt import RetryAttempt, RetryStatus
from payment_recovery.models.subscription import Subscription, SubscriptionStatus
from payment_recovery.modules.recovery.domain.failure_handler import describe_delay
from payment_recovery.modules.recovery.domain.ledger import LedgerStore, ledger_transaction, require_uuid
from payment_recovery.schemas.recovery import (
    DunningCampaignView,
    RetryAttemptView,
    RetryStatusResponse,
    RetrySummary,
    SubscriptionView,
)
from payment_recovery.shared.core.clock import Clock
from payment_recovery.shared.core.exceptions import ResourceNotFoundError


def summarize(
    subscriptions: Sequence[Subscription],
    retries: Sequence[RetryAttempt],
    campaigns: Sequence[DunningCampaign],
    failed_payments: int,
    now: datetime,
) -> RetrySummary:
    scheduled = sorted(
        (r for r in retries if r.status == RetryStatus.SCHEDULED.value),
        key=lambda r: r.scheduled_at,
    )
    active_campaigns = [c for c in campaigns if c.status == CampaignStatus.ACTIVE.value]
    in_episode = [s for s in subscriptions if s.in_failure_episode]

    has_issues = bool(in_episode or scheduled or active_campaigns)

    if scheduled:
        message = f"Your last payment didn't go through. We'll try again {describe_delay(scheduled[0].scheduled_at, now)}."
    elif in_episode:
        message = "Your last payment didn't go through. Please update your payment method to keep your subscription."
    elif any(
        s.status == SubscriptionStatus.CANCELLED.value for s in subscriptions
    ) and any(c.resolution == CampaignResolution.ABANDONED.value for c in campaigns):
        message = "Your subscription was cancelled because we couldn't collect payment."
    else:
        message = "All payments are up to date."

    return RetrySummary(
        has_payment_issues=has_issues,
        total_failed_payments=failed_payments,
        active_retry_attempts=len(scheduled),
        active_dunning_campaigns=len(active_campaigns),
        message=message,
    )


class RetryStatusService:
    def __init__(self, session_maker: async_sessionmaker, clock: Clock):
        self.session_maker = session_maker
        self.clock = clock

    async def get_retry_status(self, subscription_id) -> RetryStatusResponse:
        subscription_id = require_uuid(subscription_id, "subscription_id")
        async with ledger_transaction(self.session_maker) as ledger:
            subscription = await ledger.get_subscription(subscription_id)
            if subscription is None:
                raise ResourceNotFoundError("Subscription not found", details={"subscription_id": str(subscription_id)})
            return await self._build(ledger, [subscription])

    async def get_owner_status(self, owner_id) -> RetryStatusResponse:
        """All of an owner's subscriptions; an owner without any gets an empty, healthy summary."""
        owner_id = require_uuid(owner_id, "owner_id")
        async with ledger_transaction(self.session_maker) as ledger:
            subscriptions = await ledger.subscriptions_for_owner(owner_id)
            return await self._build(ledger, subscriptions)

    async def _build(self, ledger: LedgerStore, subscriptions: list[Subscription]) -> RetryStatusResponse:
        ids: list[UUID] = [s.id for s in subscriptions]
        retries = await ledger.retries_for(ids)
        campaigns = await ledger.campaigns_for(ids)
        failed_payments = await ledger.failed_payment_count(ids)

        return RetryStatusResponse(
            subscriptions=[SubscriptionView.model_validate(s) for s in subscriptions],
            retry_attempts=[RetryAttemptView.model_validate(r) for r in retries],
            dunning_campaigns=[DunningCampaignView.model_validate(c) for c in campaigns],
            summary=summarize(subscriptions, retries, campaigns, failed_payments, self.clock.now()),
        )
