from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import time
import structlog
from typing import Optional, TYPE_CHECKING

from payment_recovery.modules.scheduling.domain.processor import TimerProcessor
from payment_recovery.shared.core.config import Settings, get_settings

if TYPE_CHECKING:
    from payment_recovery.modules.recovery.domain.container import RecoveryServices

logger = structlog.get_logger()


class SchedulerOrchestrator:
    """
    In-process driver for the clock service.

    APScheduler only provides the heartbeat; the durable schedule lives in
    `scheduled_timers`, so any number of instances can poll it.
    """

    def __init__(self, services: "RecoveryServices", settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.services = services
        self.processor = TimerProcessor(services, self.settings)
        self.scheduler = AsyncIOScheduler()
        self._last_run_success: Optional[bool] = None
        self._last_run_time: Optional[float] = None

    async def poll_timers_job(self):
        """Run every due timer."""
        try:
            results = await self.processor.process_due_timers()
            self._last_run_success = not any("batch_error" in e for e in results["errors"])
        except Exception as e:  # noqa: BLE001 - keep the heartbeat alive
            logger.error("timer_poll_failed", error=str(e))
            self._last_run_success = False
        self._last_run_time = time.time()

    async def recover_stuck_timers_job(self):
        try:
            await self.processor.recover_stuck_timers()
        except Exception as e:  # noqa: BLE001
            logger.error("stuck_timer_recovery_failed", error=str(e))

    async def expiry_sweep_job(self):
        """Expire subscriptions whose period ended without auto-renew."""
        try:
            expired = await self.services.lifecycle.expire_lapsed_subscriptions()
            logger.info("scheduler_expiry_sweep_complete", expired=expired)
        except Exception as e:  # noqa: BLE001
            logger.error("scheduler_expiry_sweep_failed", error=str(e))

    def start(self):
        """Registers the recurring jobs and starts APScheduler."""
        # Timer poll: every TIMER_POLL_INTERVAL_SECONDS
        self.scheduler.add_job(
            self.poll_timers_job,
            trigger=IntervalTrigger(seconds=self.settings.TIMER_POLL_INTERVAL_SECONDS),
            id="timer_poll",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        # Stuck timer detector: every 10 minutes
        self.scheduler.add_job(
            self.recover_stuck_timers_job,
            trigger=CronTrigger(minute="*/10", timezone="UTC"),
            id="stuck_timer_detector",
            replace_existing=True
        )
        # Expiry sweep: hourly
        self.scheduler.add_job(
            self.expiry_sweep_job,
            trigger=CronTrigger(minute=self.settings.EXPIRY_SWEEP_MINUTE, timezone="UTC"),
            id="subscription_expiry_sweep",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("scheduler_started", jobs=[job.id for job in self.scheduler.get_jobs()])

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "jobs": [job.id for job in self.scheduler.get_jobs()]
        }
