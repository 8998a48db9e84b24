"""
Ledger Store

Transactional access to subscriptions, payments, retry attempts and dunning
campaigns. Every recovery operation runs inside exactly one
`ledger_transaction`: either all of its writes commit or none do.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_recovery.models.subscription import Subscription
from payment_recovery.models.payment import Payment, PaymentStatus
from payment_recovery.models.retry_attempt import RetryAttempt, RetryStatus
from payment_recovery.models.dunning_campaign import DunningCampaign, CampaignStatus
from payment_recovery.shared.core.exceptions import InvalidInputError, LedgerUnavailableError

logger = structlog.get_logger()


def require_uuid(value, field: str) -> UUID:
    """Coerce an inbound identifier, rejecting missing or malformed ids."""
    if isinstance(value, UUID):
        return value
    if not value:
        raise InvalidInputError(f"{field} is required", details={"field": field})
    try:
        return UUID(str(value))
    except ValueError as e:
        raise InvalidInputError(f"{field} is not a valid id", details={"field": field}) from e


class LedgerStore:
    """Query and write helpers bound to one open transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ---- subscriptions / payments ----

    async def get_subscription(self, subscription_id: UUID, for_update: bool = False) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            # Row lock for multi-process deployments (no-op on SQLite)
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def subscriptions_for_owner(self, owner_id: UUID) -> list[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.owner_id == owner_id)
            .order_by(Subscription.created_at)
        )
        return list(result.scalars().all())

    async def get_payment(self, payment_id: UUID) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalar_one_or_none()

    async def failed_payment_count(self, subscription_ids: Iterable[UUID]) -> int:
        ids = list(subscription_ids)
        if not ids:
            return 0
        result = await self.db.execute(
            select(func.count(Payment.id)).where(
                Payment.subscription_id.in_(ids),
                Payment.status == PaymentStatus.FAILED.value,
            )
        )
        return int(result.scalar() or 0)

    # ---- retry attempts ----

    async def get_retry(self, retry_id: UUID) -> Optional[RetryAttempt]:
        result = await self.db.execute(select(RetryAttempt).where(RetryAttempt.id == retry_id))
        return result.scalar_one_or_none()

    async def scheduled_retry(self, subscription_id: UUID) -> Optional[RetryAttempt]:
        result = await self.db.execute(
            select(RetryAttempt).where(
                RetryAttempt.subscription_id == subscription_id,
                RetryAttempt.status == RetryStatus.SCHEDULED.value,
            )
        )
        return result.scalar_one_or_none()

    async def in_flight_retries(self, subscription_id: UUID) -> list[RetryAttempt]:
        """Attempts marked attempted whose charge outcome was never recorded."""
        result = await self.db.execute(
            select(RetryAttempt).where(
                RetryAttempt.subscription_id == subscription_id,
                RetryAttempt.status == RetryStatus.ATTEMPTED.value,
            )
        )
        return list(result.scalars().all())

    async def latest_retry(self, subscription_id: UUID, since: Optional[datetime] = None) -> Optional[RetryAttempt]:
        """
        Highest-numbered live attempt, optionally restricted to the current
        failure episode. Abandoned attempts never ran and do not count.
        """
        stmt = select(RetryAttempt).where(
            RetryAttempt.subscription_id == subscription_id,
            RetryAttempt.status != RetryStatus.ABANDONED.value,
        )
        if since is not None:
            stmt = stmt.where(RetryAttempt.scheduled_at >= since)
        stmt = stmt.order_by(RetryAttempt.attempt_number.desc(), RetryAttempt.scheduled_at.desc()).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def retries_for(self, subscription_ids: Iterable[UUID]) -> list[RetryAttempt]:
        ids = list(subscription_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(RetryAttempt)
            .where(RetryAttempt.subscription_id.in_(ids))
            .order_by(RetryAttempt.scheduled_at.desc())
        )
        return list(result.scalars().all())

    # ---- dunning campaigns ----

    async def get_campaign(self, campaign_id: UUID) -> Optional[DunningCampaign]:
        result = await self.db.execute(select(DunningCampaign).where(DunningCampaign.id == campaign_id))
        return result.scalar_one_or_none()

    async def active_campaign(self, subscription_id: UUID) -> Optional[DunningCampaign]:
        result = await self.db.execute(
            select(DunningCampaign).where(
                DunningCampaign.subscription_id == subscription_id,
                DunningCampaign.status == CampaignStatus.ACTIVE.value,
            )
        )
        return result.scalar_one_or_none()

    async def campaigns_for(self, subscription_ids: Iterable[UUID]) -> list[DunningCampaign]:
        ids = list(subscription_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(DunningCampaign)
            .where(DunningCampaign.subscription_id.in_(ids))
            .order_by(DunningCampaign.started_at.desc())
        )
        return list(result.scalars().all())

    # ---- writes ----

    async def add(self, obj):
        """Stage a new row and flush so partial-unique indexes are checked immediately."""
        self.db.add(obj)
        await self.db.flush()
        return obj

    async def flush(self) -> None:
        await self.db.flush()


@asynccontextmanager
async def ledger_transaction(session_maker: async_sessionmaker) -> AsyncIterator[LedgerStore]:
    """
    One atomic unit of work.

    Commits on clean exit, rolls back on any exception. Database failures are
    re-raised as a retryable LedgerUnavailableError so callers never see a
    partial commit.
    """
    try:
        async with session_maker() as db:
            async with db.begin():
                yield LedgerStore(db)
    except SQLAlchemyError as e:
        logger.error("ledger_transaction_failed", error=str(e), error_type=type(e).__name__)
        raise LedgerUnavailableError(details={"error_type": type(e).__name__}) from e
