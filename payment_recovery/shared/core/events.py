"""
Recovery event types and an in-process event bus.

Cross-engine coupling is published as an explicit event instead of happening
as a side effect of shared writes. Handlers run synchronously inside the
publisher's transaction: the ledger handle they receive is the publisher's,
so a failing handler rolls the whole operation back.
"""

from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

import structlog

logger = structlog.get_logger()

EventHandler = Callable[..., Awaitable[None]]


class RecoveryEvents:
    """Recovery event type constants."""

    PAYMENT_RECOVERED = "payment_recovered"
    CAMPAIGN_ABANDONED = "campaign_abandoned"


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: str) -> List[EventHandler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event_type: str, ledger: Any, **payload: Any) -> int:
        """Invoke every handler for `event_type`; returns how many ran."""
        handlers = self.handlers_for(event_type)
        logger.info(
            "recovery_event_published",
            event_type=event_type,
            handler_count=len(handlers),
            subscription_id=str(payload.get("subscription_id")),
        )
        for handler in handlers:
            await handler(ledger, **payload)
        return len(handlers)
