"""
Timer registration helpers.

Timers are rows in `scheduled_timers`, written through the caller's session
so a timer commits (or rolls back) together with the state it belongs to.
Callbacks carry only identifiers; handlers re-read current state before
acting.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_recovery.models.scheduled_timer import ScheduledTimer, TimerStatus, TimerType
from payment_recovery.shared.core.config import get_settings
from payment_recovery.shared.core.ops_metrics import TIMERS_SCHEDULED

logger = structlog.get_logger()


def retry_timer_key(retry_id: UUID) -> str:
    return f"{TimerType.RETRY_EXECUTION.value}:{retry_id}"


def dunning_timer_key(campaign_id: UUID, step: int) -> str:
    return f"{TimerType.DUNNING_STEP.value}:{campaign_id}:{step}"


async def schedule_timer(
    db: AsyncSession,
    timer_type: TimerType,
    due_at: datetime,
    payload: Dict[str, Any],
    deduplication_key: str,
    subscription_id: Optional[UUID] = None,
    max_attempts: Optional[int] = None,
) -> ScheduledTimer:
    """
    Register a callback for `due_at`.

    Re-registering an existing key re-arms that timer instead of adding a
    second one.
    """
    result = await db.execute(
        select(ScheduledTimer).where(ScheduledTimer.deduplication_key == deduplication_key)
    )
    timer = result.scalar_one_or_none()

    if timer is not None:
        timer.status = TimerStatus.PENDING.value
        timer.scheduled_for = due_at
        timer.payload = payload
        timer.attempts = 0
        timer.error_message = None
        timer.completed_at = None
        logger.info(
            "timer_rearmed",
            timer_id=str(timer.id),
            timer_type=timer.timer_type,
            scheduled_for=due_at.isoformat(),
        )
        await db.flush()
        return timer

    timer = ScheduledTimer(
        timer_type=TimerType(timer_type).value,
        subscription_id=subscription_id,
        deduplication_key=deduplication_key,
        status=TimerStatus.PENDING.value,
        payload=payload,
        scheduled_for=due_at,
        max_attempts=max_attempts or get_settings().TIMER_MAX_ATTEMPTS,
    )
    db.add(timer)
    await db.flush()

    TIMERS_SCHEDULED.labels(timer_type=timer.timer_type).inc()
    logger.info(
        "timer_scheduled",
        timer_id=str(timer.id),
        timer_type=timer.timer_type,
        subscription_id=str(subscription_id) if subscription_id else None,
        scheduled_for=due_at.isoformat(),
    )
    return timer


async def cancel_timers(db: AsyncSession, deduplication_keys: Iterable[str]) -> int:
    """Cancel pending timers by key. Timers already claimed still re-check state when they fire."""
    keys = list(deduplication_keys)
    if not keys:
        return 0
    result = await db.execute(
        update(ScheduledTimer)
        .where(
            ScheduledTimer.deduplication_key.in_(keys),
            ScheduledTimer.status == TimerStatus.PENDING.value,
        )
        .values(status=TimerStatus.CANCELLED.value)
        .execution_options(synchronize_session="fetch")
    )
    cancelled = result.rowcount or 0
    if cancelled:
        logger.info("timers_cancelled", count=cancelled)
    return cancelled


async def cancel_campaign_timers(db: AsyncSession, campaign_id: UUID) -> int:
    """Cancel every pending step timer of a campaign."""
    prefix = f"{TimerType.DUNNING_STEP.value}:{campaign_id}:"
    result = await db.execute(
        select(ScheduledTimer.deduplication_key).where(
            ScheduledTimer.deduplication_key.like(f"{prefix}%"),
            ScheduledTimer.status == TimerStatus.PENDING.value,
        )
    )
    return await cancel_timers(db, [row[0] for row in result.all()])
