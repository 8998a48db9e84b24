"""
Subscription lifecycle transitions.

    trialing/active      -> past_due        (first failure)
    past_due             -> payment_failed  (subsequent failure)
    past_due/failed      -> active          (recovered)
    past_due/failed      -> cancelled       (campaign abandoned)
    active               -> expired         (period lapsed without renewal)

cancelled and expired are terminal. Re-entering the current state is a
no-op (e.g. payment_failed on every further failure).
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

import structlog

from payment_recovery.models.subscription import Subscription, SubscriptionStatus
from payment_recovery.shared.core.exceptions import InvalidTransitionError

logger = structlog.get_logger()

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.TRIALING.value: frozenset({S.PAST_DUE.value}),
    S.ACTIVE.value: frozenset({S.PAST_DUE.value, S.EXPIRED.value}),
    S.PAST_DUE.value: frozenset({S.PAYMENT_FAILED.value, S.ACTIVE.value, S.CANCELLED.value}),
    S.PAYMENT_FAILED.value: frozenset({S.ACTIVE.value, S.CANCELLED.value}),
    S.CANCELLED.value: frozenset(),
    S.EXPIRED.value: frozenset(),
}

TERMINAL_STATES = frozenset({S.CANCELLED.value, S.EXPIRED.value})


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return current not in TERMINAL_STATES
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(subscription: Subscription, target: SubscriptionStatus, at: Optional[datetime] = None) -> bool:
    """
    Move `subscription` to `target`.

    Returns True when the status changed, False for a same-state no-op.
    Raises InvalidTransitionError for anything not in the table.
    """
    current = subscription.status
    target_value = SubscriptionStatus(target).value

    if not can_transition(current, target_value):
        raise InvalidTransitionError(current, target_value)

    if current == target_value:
        return False

    subscription.status = target_value
    if target_value == S.CANCELLED.value:
        subscription.canceled_at = at

    logger.info(
        "subscription_transition",
        subscription_id=str(subscription.id),
        from_status=current,
        to_status=target_value,
    )
    return True
