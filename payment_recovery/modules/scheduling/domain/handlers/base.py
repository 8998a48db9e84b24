from abc import ABC, abstractmethod
from typing import Any, Dict, TYPE_CHECKING

from payment_recovery.models.scheduled_timer import ScheduledTimer

if TYPE_CHECKING:
    from payment_recovery.modules.recovery.domain.container import RecoveryServices


class BaseTimerHandler(ABC):
    """
    Callback for one timer type.

    Handlers receive identifiers only and must re-read current state: a
    timer may fire after the thing it was set for already resolved.
    """

    @abstractmethod
    async def execute(self, timer: ScheduledTimer, services: "RecoveryServices") -> Dict[str, Any]:
        """
        Returns:
            Result dictionary stored on the timer row

        Raises:
            RecoveryException: retryable ones are retried with backoff,
                the rest go straight to dead letter
        """
        pass

    @staticmethod
    def require(payload: Dict[str, Any] | None, key: str) -> Any:
        value = (payload or {}).get(key)
        if value is None:
            raise ValueError(f"{key} required in timer payload")
        return value
