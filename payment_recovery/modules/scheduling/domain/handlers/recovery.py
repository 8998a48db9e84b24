"""
Recovery timer handlers.

RETRY_EXECUTION -> RetryExecutor.execute_retry
DUNNING_STEP    -> DunningService.process_step
"""
from typing import Any, Dict, TYPE_CHECKING
from uuid import UUID

from payment_recovery.models.scheduled_timer import ScheduledTimer
from payment_recovery.modules.scheduling.domain.handlers.base import BaseTimerHandler

if TYPE_CHECKING:
    from payment_recovery.modules.recovery.domain.container import RecoveryServices


class RetryExecutionHandler(BaseTimerHandler):
    async def execute(self, timer: ScheduledTimer, services: "RecoveryServices") -> Dict[str, Any]:
        retry_id = self.require(timer.payload, "retry_id")
        result = await services.retry_executor.execute_retry(UUID(retry_id))
        return result.model_dump(mode="json")


class DunningStepHandler(BaseTimerHandler):
    async def execute(self, timer: ScheduledTimer, services: "RecoveryServices") -> Dict[str, Any]:
        subscription_id = self.require(timer.payload, "subscription_id")
        campaign_id = self.require(timer.payload, "campaign_id")
        step = int(self.require(timer.payload, "step"))
        return await services.dunning.process_step(UUID(subscription_id), UUID(campaign_id), step)
