"""
Dunning Service - escalating customer communication for failed payments.

Drives DunningCampaign rows through the dunning engine:
1. Failure handler opens a campaign on the first failure of an episode
2. DUNNING_STEP timer fires -> process_step sends the step's communication
3. payment_recovered event or a customer response -> resolved (recovered)
4. Final step without response -> abandoned: scheduled retry abandoned,
   subscription cancelled
"""

from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_recovery.models.dunning_campaign import (
    DunningCampaign,
    CampaignStatus,
    CampaignType,
    CampaignResolution,
)
from payment_recovery.models.retry_attempt import RetryStatus
from payment_recovery.models.scheduled_timer import TimerType
from payment_recovery.models.subscription import Subscription, SubscriptionStatus
from payment_recovery.modules.notifications.domain.dispatcher import NotificationDispatcher, NotificationOutbox
from payment_recovery.modules.recovery.domain.dunning_policy import (
    DunningResolution,
    evaluate_step,
    stage_gap_days,
)
from payment_recovery.modules.recovery.domain.ledger import LedgerStore, ledger_transaction, require_uuid
from payment_recovery.modules.recovery.domain.retry_policy import DeclineKind, FailureReason, decline_kind
from payment_recovery.modules.recovery.domain.state_machine import transition
from payment_recovery.modules.scheduling.domain.timers import (
    cancel_campaign_timers,
    cancel_timers,
    dunning_timer_key,
    retry_timer_key,
    schedule_timer,
)
from payment_recovery.schemas.recovery import CustomerResponseResult
from payment_recovery.shared.core.clock import Clock
from payment_recovery.shared.core.config import Settings
from payment_recovery.shared.core.events import EventBus, RecoveryEvents
from payment_recovery.shared.core.exceptions import ResourceNotFoundError
from payment_recovery.shared.core.locks import SubscriptionLockRegistry
from payment_recovery.shared.core.logging import audit_log
from payment_recovery.shared.core.ops_metrics import CAMPAIGN_RESOLUTIONS, DUNNING_COMMUNICATIONS_SENT

logger = structlog.get_logger()

SECONDS_PER_DAY = 86400


def campaign_type_for(reason: FailureReason) -> CampaignType:
    if decline_kind(reason) == DeclineKind.HARD:
        return CampaignType.CARD_UPDATE_REQUIRED
    return CampaignType.PAYMENT_FAILED


class DunningService:
    """
    Owns every DunningCampaign write.

    Public methods take the subscription lock and open their own transaction;
    `start_campaign`, `on_payment_recovered` and `abandon_campaign` run inside
    a caller's transaction.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        locks: SubscriptionLockRegistry,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        events: EventBus,
        settings: Settings,
    ):
        self.session_maker = session_maker
        self.locks = locks
        self.dispatcher = dispatcher
        self.clock = clock
        self.events = events
        self.settings = settings

    async def start_campaign(
        self,
        ledger: LedgerStore,
        subscription: Subscription,
        campaign_type: CampaignType,
        now: datetime,
    ) -> DunningCampaign:
        first_gap = stage_gap_days(1)
        campaign = DunningCampaign(
            subscription_id=subscription.id,
            campaign_type=CampaignType(campaign_type).value,
            status=CampaignStatus.ACTIVE.value,
            current_step=1,
            total_steps=self.settings.DUNNING_TOTAL_STEPS,
            next_action_date=now + timedelta(days=first_gap),
            communications_sent=0,
            response_received=False,
            started_at=now,
        )
        await ledger.add(campaign)
        await self._schedule_step(ledger, campaign)

        logger.info(
            "dunning_campaign_started",
            subscription_id=str(subscription.id),
            campaign_id=str(campaign.id),
            campaign_type=campaign.campaign_type,
            total_steps=campaign.total_steps,
        )
        return campaign

    async def process_step(self, subscription_id: UUID, campaign_id: UUID, step: int) -> dict:
        """Timer callback for one campaign step. Stale deliveries are no-ops."""
        outbox = NotificationOutbox()
        async with self.locks.hold(subscription_id):
            async with ledger_transaction(self.session_maker) as ledger:
                result = await self._process_step(ledger, outbox, campaign_id, step)
        outbox.release(self.dispatcher)
        return result

    async def _process_step(self, ledger: LedgerStore, outbox: NotificationOutbox, campaign_id: UUID, step: int) -> dict:
        now = self.clock.now()
        campaign = await ledger.get_campaign(campaign_id)
        if campaign is None:
            raise ResourceNotFoundError("Dunning campaign not found", details={"campaign_id": str(campaign_id)})

        if not campaign.is_active or campaign.current_step != step:
            logger.info(
                "dunning_step_stale",
                campaign_id=str(campaign.id),
                step=step,
                current_step=campaign.current_step,
                status=campaign.status,
            )
            return {"status": "skipped", "campaign_status": campaign.status, "current_step": campaign.current_step}

        subscription = await ledger.get_subscription(campaign.subscription_id, for_update=True)
        last_action = campaign.last_action_at or campaign.started_at
        days_since = max((now - last_action).total_seconds(), 0) / SECONDS_PER_DAY

        decision = evaluate_step(
            current_step=campaign.current_step,
            total_steps=campaign.total_steps,
            days_since_last_step=days_since,
            response_received=campaign.response_received,
            campaign_type=campaign.campaign_type,
        )

        if decision.resolve == DunningResolution.RECOVERED:
            await self._resolve(ledger, campaign, CampaignResolution.CUSTOMER_RESPONSE, now)
            return {"status": "resolved", "resolution": campaign.resolution}

        if not decision.advance:
            campaign.next_action_date = now + timedelta(days=decision.wait_days)
            await self._schedule_step(ledger, campaign)
            return {"status": "waiting", "next_action_date": campaign.next_action_date.isoformat()}

        communication = decision.communication
        for channel in communication.channels:
            recipient = subscription.owner_email if channel.value == "email" else subscription.owner_phone
            outbox.add(
                communication.template_id,
                channel.value,
                recipient,
                plan=subscription.plan,
                amount=subscription.amount,
                currency=subscription.currency,
            )
            DUNNING_COMMUNICATIONS_SENT.labels(template_id=communication.template_id, channel=channel.value).inc()
        campaign.communications_sent += len(communication.channels)
        campaign.last_action_at = now

        logger.info(
            "dunning_step_executed",
            campaign_id=str(campaign.id),
            step=campaign.current_step,
            template_id=communication.template_id,
            channels=[c.value for c in communication.channels],
        )

        if decision.resolve == DunningResolution.ABANDONED:
            await self.abandon_campaign(ledger, outbox, campaign, subscription, now)
            return {"status": "abandoned", "template_id": communication.template_id}

        campaign.current_step += 1
        campaign.next_action_date = now + timedelta(days=decision.next_gap_days)
        await self._schedule_step(ledger, campaign)
        return {
            "status": "sent",
            "template_id": communication.template_id,
            "current_step": campaign.current_step,
        }

    async def on_payment_recovered(self, ledger: LedgerStore, subscription_id: UUID, **_payload) -> None:
        """`payment_recovered` subscriber: resolve the active campaign in the publisher's transaction."""
        campaign = await ledger.active_campaign(subscription_id)
        if campaign is None:
            return
        await self._resolve(ledger, campaign, CampaignResolution.PAYMENT_RECOVERED, self.clock.now())

    async def abandon_campaign(
        self,
        ledger: LedgerStore,
        outbox: NotificationOutbox,
        campaign: DunningCampaign,
        subscription: Subscription,
        now: datetime,
    ) -> None:
        campaign.status = CampaignStatus.ABANDONED.value
        campaign.resolution = CampaignResolution.ABANDONED.value
        campaign.completed_at = now
        campaign.next_action_date = None
        await cancel_campaign_timers(ledger.db, campaign.id)

        # Coupling point: no charge may run after the campaign gives up
        scheduled = await ledger.scheduled_retry(subscription.id)
        if scheduled is not None:
            scheduled.status = RetryStatus.ABANDONED.value
            await cancel_timers(ledger.db, [retry_timer_key(scheduled.id)])

        # Interrupted charges are only reconciled from here on, never re-charged
        in_flight = await ledger.in_flight_retries(subscription.id)
        for retry in in_flight:
            logger.warning(
                "dunning_abandoned_with_retry_in_doubt",
                subscription_id=str(subscription.id),
                retry_id=str(retry.id),
                attempted_at=str(retry.attempted_at),
            )

        if subscription.in_failure_episode:
            transition(subscription, SubscriptionStatus.CANCELLED, at=now)
            subscription.auto_renew = False
        await ledger.flush()

        await self.events.publish(
            RecoveryEvents.CAMPAIGN_ABANDONED,
            ledger,
            subscription_id=subscription.id,
            campaign_id=campaign.id,
        )
        outbox.alert(
            "Subscription cancelled after dunning",
            f"Subscription {subscription.id} ({subscription.plan}) was cancelled: "
            f"dunning campaign exhausted {campaign.total_steps} steps without payment.",
            severity="info",
        )
        if in_flight:
            outbox.alert(
                "Interrupted charge on cancelled subscription",
                f"Subscription {subscription.id} was cancelled while retry "
                f"{', '.join(str(r.id) for r in in_flight)} was in doubt. "
                "It will be reconciled with the gateway and never charged again.",
                severity="warning",
            )
        CAMPAIGN_RESOLUTIONS.labels(resolution=CampaignResolution.ABANDONED.value).inc()
        logger.warning(
            "dunning_campaign_abandoned",
            subscription_id=str(subscription.id),
            campaign_id=str(campaign.id),
            retry_abandoned=scheduled is not None,
        )

    async def record_customer_response(self, subscription_id, actor: str = "customer") -> CustomerResponseResult:
        """Customer acted (e.g. updated their card): resolve the active campaign as recovered."""
        subscription_id = require_uuid(subscription_id, "subscription_id")
        async with self.locks.hold(subscription_id):
            async with ledger_transaction(self.session_maker) as ledger:
                subscription = await ledger.get_subscription(subscription_id, for_update=True)
                if subscription is None:
                    raise ResourceNotFoundError("Subscription not found", details={"subscription_id": str(subscription_id)})

                campaign = await ledger.active_campaign(subscription_id)
                if campaign is None:
                    return CustomerResponseResult(
                        subscription_id=subscription_id,
                        campaign_id=None,
                        campaign_status=None,
                        message="No active dunning campaign",
                    )

                campaign.response_received = True
                decision = evaluate_step(
                    current_step=campaign.current_step,
                    total_steps=campaign.total_steps,
                    days_since_last_step=0,
                    response_received=True,
                    campaign_type=campaign.campaign_type,
                )
                if decision.resolve == DunningResolution.RECOVERED:
                    await self._resolve(ledger, campaign, CampaignResolution.CUSTOMER_RESPONSE, self.clock.now())

        audit_log("dunning_customer_response", str(subscription_id), actor=actor, details={"campaign_id": str(campaign.id)})
        return CustomerResponseResult(
            subscription_id=subscription_id,
            campaign_id=campaign.id,
            campaign_status=campaign.status,
            message="Thanks, we'll stop sending payment reminders",
        )

    async def _resolve(
        self,
        ledger: LedgerStore,
        campaign: DunningCampaign,
        resolution: CampaignResolution,
        now: datetime,
    ) -> None:
        campaign.status = CampaignStatus.RESOLVED.value
        campaign.resolution = resolution.value
        campaign.completed_at = now
        campaign.next_action_date = None
        await cancel_campaign_timers(ledger.db, campaign.id)
        await ledger.flush()

        CAMPAIGN_RESOLUTIONS.labels(resolution=resolution.value).inc()
        logger.info(
            "dunning_campaign_resolved",
            campaign_id=str(campaign.id),
            subscription_id=str(campaign.subscription_id),
            resolution=resolution.value,
            step=campaign.current_step,
        )

    async def _schedule_step(self, ledger: LedgerStore, campaign: DunningCampaign) -> None:
        await schedule_timer(
            ledger.db,
            TimerType.DUNNING_STEP,
            due_at=campaign.next_action_date,
            payload={
                "subscription_id": str(campaign.subscription_id),
                "campaign_id": str(campaign.id),
                "step": campaign.current_step,
            },
            deduplication_key=dunning_timer_key(campaign.id, campaign.current_step),
            subscription_id=campaign.subscription_id,
        )