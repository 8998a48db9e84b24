"""
Timer Processor - the worker side of the clock service.

Claims due timers from `scheduled_timers` and runs their handlers.

Key Features:
- Durable: timers survive restarts (rows in the database)
- Multiple workers: claims use SELECT FOR UPDATE SKIP LOCKED
- Handler timeout, exponential backoff, dead letter after max attempts
- Stuck RUNNING timers (worker died mid-handler) are returned to the queue

Usage:
    processor = TimerProcessor(services)
    await processor.process_due_timers()
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional, TYPE_CHECKING
from uuid import UUID

import sqlalchemy as sa
import structlog
from sqlalchemy import select

from payment_recovery.models.scheduled_timer import ScheduledTimer, TimerStatus
from payment_recovery.modules.scheduling.domain.handlers import get_handler_factory
from payment_recovery.shared.core.config import Settings, get_settings
from payment_recovery.shared.core.exceptions import RecoveryException
from payment_recovery.shared.core.ops_metrics import TIMERS_CLAIMED_LAST_BATCH, TIMERS_PROCESSED
from payment_recovery.shared.core.tracing import get_tracer

if TYPE_CHECKING:
    from payment_recovery.modules.recovery.domain.container import RecoveryServices

logger = structlog.get_logger()


class TimerProcessor:
    def __init__(self, services: "RecoveryServices", settings: Optional[Settings] = None):
        self.services = services
        self.session_maker = services.session_maker
        self.clock = services.clock
        self.settings = settings or get_settings()

    async def process_due_timers(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Claim and run every due timer up to `limit`."""
        limit = limit or self.settings.TIMER_BATCH_SIZE
        tracer = get_tracer(__name__)

        with tracer.start_as_current_span("process_due_timers") as span:
            span.set_attribute("batch_limit", limit)
            results = {
                "processed": 0,
                "succeeded": 0,
                "failed": 0,
                "errors": []
            }

            try:
                claimed = await self._claim_due_timers(limit)
            except sa.exc.SQLAlchemyError as e:
                logger.error("timer_claim_db_error", error=str(e))
                results["errors"].append({"batch_error": str(e)})
                return results

            TIMERS_CLAIMED_LAST_BATCH.set(len(claimed))
            if claimed:
                logger.info("timer_batch_start", claimed=len(claimed))

            for timer in claimed:
                ok = await self._process_single_timer(timer)
                results["processed"] += 1
                if ok:
                    results["succeeded"] += 1
                else:
                    results["failed"] += 1
                    results["errors"].append({"timer_id": str(timer.id)})

            if claimed:
                logger.info("timer_batch_complete", **{k: v for k, v in results.items() if k != "errors"})
            return results

    async def _claim_due_timers(self, limit: int) -> list[ScheduledTimer]:
        """
        Mark due PENDING timers RUNNING in one short transaction.
        SKIP LOCKED keeps concurrent workers off each other's rows.
        """
        now = self.clock.now()
        async with self.session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    select(ScheduledTimer)
                    .where(
                        ScheduledTimer.status == TimerStatus.PENDING.value,
                        ScheduledTimer.scheduled_for <= now,
                        ScheduledTimer.attempts < ScheduledTimer.max_attempts,
                    )
                    .order_by(ScheduledTimer.scheduled_for)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                timers = list(result.scalars().all())
                for timer in timers:
                    timer.status = TimerStatus.RUNNING.value
                    timer.started_at = now
                    timer.attempts += 1
        return timers

    async def _process_single_timer(self, timer: ScheduledTimer) -> bool:
        tracer = get_tracer(__name__)
        with tracer.start_as_current_span(f"timer_process:{timer.timer_type}") as span:
            span.set_attribute("timer_id", str(timer.id))
            span.set_attribute("subscription_id", str(timer.subscription_id) if timer.subscription_id else "none")

            logger.info(
                "timer_processing_start",
                timer_id=str(timer.id),
                timer_type=timer.timer_type,
                attempt=timer.attempts,
            )
            timeout = self.settings.TIMER_HANDLER_TIMEOUT_SECONDS

            try:
                handler = get_handler_factory(timer.timer_type)()
                result = await asyncio.wait_for(handler.execute(timer, self.services), timeout=timeout)

            except asyncio.TimeoutError:
                logger.error("timer_processing_timeout", timer_id=str(timer.id), timeout_seconds=timeout)
                await self._record_failure(timer, f"Timer handler timed out after {timeout}s", retryable=True)
                return False

            except RecoveryException as e:
                logger.warning(
                    "timer_handler_error",
                    timer_id=str(timer.id),
                    timer_type=timer.timer_type,
                    code=e.code,
                    retryable=e.retryable,
                )
                await self._record_failure(timer, e.message, retryable=e.retryable)
                return False

            except (KeyError, ValueError) as e:
                # Bad payload or unknown timer type: retrying cannot help
                logger.warning("timer_handler_config_error", timer_id=str(timer.id), error=str(e))
                await self._record_failure(timer, str(e), retryable=False)
                return False

            except Exception as e:  # noqa: BLE001 - Intentional catch-all for timer isolation
                logger.error(
                    "timer_processing_failed",
                    timer_id=str(timer.id),
                    timer_type=timer.timer_type,
                    error=str(e),
                )
                await self._record_failure(timer, str(e), retryable=True)
                return False

            await self._finish(timer.id, TimerStatus.COMPLETED, result=result)
            logger.info("timer_processing_success", timer_id=str(timer.id), timer_type=timer.timer_type)
            return True

    async def _record_failure(self, timer: ScheduledTimer, error: str, retryable: bool) -> None:
        if not retryable or timer.attempts >= timer.max_attempts:
            await self._finish(timer.id, TimerStatus.DEAD_LETTER, error=error)
            return

        backoff_seconds = self.settings.TIMER_BACKOFF_BASE_SECONDS * (2 ** (timer.attempts - 1))
        await self._finish(
            timer.id,
            TimerStatus.PENDING,
            error=error,
            retry_at=self.clock.now() + timedelta(seconds=backoff_seconds),
        )

    async def _finish(
        self,
        timer_id: UUID,
        status: TimerStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        retry_at=None,
    ) -> None:
        async with self.session_maker() as db:
            async with db.begin():
                timer = await db.get(ScheduledTimer, timer_id)
                if timer is None or timer.status != TimerStatus.RUNNING.value:
                    # Re-armed or cancelled by the handler itself
                    return

                timer.status = status.value
                timer.error_message = error
                if result is not None:
                    timer.result = result
                if retry_at is not None:
                    timer.scheduled_for = retry_at
                if status in (TimerStatus.COMPLETED, TimerStatus.DEAD_LETTER):
                    timer.completed_at = self.clock.now()

        TIMERS_PROCESSED.labels(timer_type=timer.timer_type, status=status.value).inc()
        if status == TimerStatus.DEAD_LETTER:
            logger.error("timer_dead_lettered", timer_id=str(timer_id), error=error)

    async def recover_stuck_timers(self) -> int:
        """Return RUNNING timers whose worker vanished to the queue (or dead letter when out of attempts)."""
        cutoff = self.clock.now() - timedelta(minutes=self.settings.TIMER_STUCK_AFTER_MINUTES)
        async with self.session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    select(ScheduledTimer)
                    .where(
                        ScheduledTimer.status == TimerStatus.RUNNING.value,
                        ScheduledTimer.started_at < cutoff,
                    )
                    .with_for_update(skip_locked=True)
                )
                stuck = list(result.scalars().all())
                for timer in stuck:
                    timer.error_message = "Stuck in RUNNING; returned to queue"
                    if timer.attempts >= timer.max_attempts:
                        timer.status = TimerStatus.DEAD_LETTER.value
                        timer.completed_at = self.clock.now()
                    else:
                        timer.status = TimerStatus.PENDING.value
                        timer.scheduled_for = self.clock.now()

        if stuck:
            logger.critical(
                "stuck_timers_detected",
                count=len(stuck),
                timer_ids=[str(t.id) for t in stuck[:10]],
            )
        return len(stuck)
