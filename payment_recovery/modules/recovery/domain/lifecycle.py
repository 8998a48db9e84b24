"""Period-end expiry for subscriptions that will not renew."""

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_recovery.models.subscription import Subscription, SubscriptionStatus
from payment_recovery.modules.recovery.domain.ledger import ledger_transaction
from payment_recovery.modules.recovery.domain.state_machine import transition
from payment_recovery.shared.core.clock import Clock
from payment_recovery.shared.core.locks import SubscriptionLockRegistry

logger = structlog.get_logger()


class SubscriptionLifecycle:
    def __init__(self, session_maker: async_sessionmaker, locks: SubscriptionLockRegistry, clock: Clock):
        self.session_maker = session_maker
        self.locks = locks
        self.clock = clock

    async def expire_lapsed_subscriptions(self, limit: int = 500) -> int:
        """active + auto_renew off + period ended -> expired. Returns how many expired."""
        now = self.clock.now()
        async with ledger_transaction(self.session_maker) as ledger:
            result = await ledger.db.execute(
                select(Subscription.id)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.auto_renew.is_(False),
                    Subscription.current_period_end <= now,
                )
                .limit(limit)
            )
            candidates = [row[0] for row in result.all()]

        expired = 0
        for subscription_id in candidates:
            if await self._expire_one(subscription_id):
                expired += 1

        if candidates:
            logger.info("subscription_expiry_sweep_complete", candidates=len(candidates), expired=expired)
        return expired

    async def _expire_one(self, subscription_id: UUID) -> bool:
        # Re-check under the lock: a failure may have arrived since the scan
        async with self.locks.hold(subscription_id):
            async with ledger_transaction(self.session_maker) as ledger:
                subscription = await ledger.get_subscription(subscription_id, for_update=True)
                if (
                    subscription is None
                    or subscription.status != SubscriptionStatus.ACTIVE.value
                    or subscription.auto_renew
                    or subscription.current_period_end > self.clock.now()
                ):
                    return False
                return transition(subscription, SubscriptionStatus.EXPIRED, at=self.clock.now())
