"""
Service wiring.

`build_recovery_services` assembles one set of recovery services around a
shared lock registry and event bus. The application uses the process-wide
instance from `get_recovery_services()`; tests build their own.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from payment_recovery.modules.notifications.domain.dispatcher import NotificationDispatcher
from payment_recovery.modules.recovery.domain.dunning_service import DunningService
from payment_recovery.modules.recovery.domain.failure_handler import FailureHandler
from payment_recovery.modules.recovery.domain.gateway import PaymentGateway, PaystackGateway
from payment_recovery.modules.recovery.domain.lifecycle import SubscriptionLifecycle
from payment_recovery.modules.recovery.domain.retry_executor import RetryExecutor
from payment_recovery.modules.recovery.domain.status_service import RetryStatusService
from payment_recovery.shared.core.clock import Clock, SystemClock
from payment_recovery.shared.core.config import Settings, get_settings
from payment_recovery.shared.core.events import EventBus, RecoveryEvents
from payment_recovery.shared.core.locks import SubscriptionLockRegistry


@dataclass
class RecoveryServices:
    session_maker: async_sessionmaker
    clock: Clock
    locks: SubscriptionLockRegistry
    events: EventBus
    dispatcher: NotificationDispatcher
    gateway: PaymentGateway
    dunning: DunningService
    failure_handler: FailureHandler
    retry_executor: RetryExecutor
    status: RetryStatusService
    lifecycle: SubscriptionLifecycle


def build_recovery_services(
    session_maker: async_sessionmaker,
    gateway: PaymentGateway,
    dispatcher: NotificationDispatcher,
    clock: Optional[Clock] = None,
    settings: Optional[Settings] = None,
) -> RecoveryServices:
    clock = clock or SystemClock()
    settings = settings or get_settings()
    locks = SubscriptionLockRegistry()
    events = EventBus()

    dunning = DunningService(session_maker, locks, dispatcher, clock, events, settings)
    failure_handler = FailureHandler(session_maker, locks, dunning, dispatcher, clock, settings)
    retry_executor = RetryExecutor(
        session_maker, locks, gateway, failure_handler, dispatcher, events, clock, settings
    )

    # Retry success -> campaign resolved (recovered), inside the executor's transaction
    events.subscribe(RecoveryEvents.PAYMENT_RECOVERED, dunning.on_payment_recovered)

    return RecoveryServices(
        session_maker=session_maker,
        clock=clock,
        locks=locks,
        events=events,
        dispatcher=dispatcher,
        gateway=gateway,
        dunning=dunning,
        failure_handler=failure_handler,
        retry_executor=retry_executor,
        status=RetryStatusService(session_maker, clock),
        lifecycle=SubscriptionLifecycle(session_maker, locks, clock),
    )


_services: Optional[RecoveryServices] = None


def get_recovery_services() -> RecoveryServices:
    """Process-wide services bound to the application database and Paystack."""
    global _services
    if _services is None:
        from payment_recovery.shared.db.session import async_session_maker
        _services = build_recovery_services(
            session_maker=async_session_maker,
            gateway=PaystackGateway(),
            dispatcher=NotificationDispatcher.from_settings(),
        )
    return _services
