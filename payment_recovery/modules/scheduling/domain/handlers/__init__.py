"""
Timer Handlers Registry
"""
from typing import Dict, Type
from payment_recovery.models.scheduled_timer import TimerType
from payment_recovery.modules.scheduling.domain.handlers.base import BaseTimerHandler
from payment_recovery.modules.scheduling.domain.handlers.recovery import DunningStepHandler, RetryExecutionHandler


# Maps TimerType value to Handler Class
HANDLER_REGISTRY: Dict[str, Type[BaseTimerHandler]] = {
    TimerType.RETRY_EXECUTION.value: RetryExecutionHandler,
    TimerType.DUNNING_STEP.value: DunningStepHandler,
}


def get_handler_factory(timer_type: str) -> Type[BaseTimerHandler]:
    """
    Get the handler class for a given timer type.
    """
    handler_cls = HANDLER_REGISTRY.get(timer_type)
    if not handler_cls:
        raise ValueError(f"No handler registered for timer type: {timer_type}")
    return handler_cls
