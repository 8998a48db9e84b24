"""
Retry Policy Engine

Pure decision table: (attempt number, failure reason) -> next action.
No I/O, no clock. Delays are relative to the failure being handled.

Schedule:
    attempt 1 -> +1 day   (grace)
    attempt 2 -> +3 days  (grace)
    attempt 3 -> +7 days  (grace)
    attempt 4 -> +14 days (grace period boundary, no grace)

Hard declines (expired / stolen card) get exactly one retry; the dunning
campaign is the recovery path after that.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"
    CARD_EXPIRED = "card_expired"
    STOLEN_CARD = "stolen_card"


class DeclineKind(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class RetryAction(str, Enum):
    RETRY = "retry"
    STOP = "stop"


HARD_DECLINES = frozenset({FailureReason.CARD_EXPIRED, FailureReason.STOLEN_CARD})

# (delay, grace period active) per attempt number
RETRY_SCHEDULE = (
    (timedelta(days=1), True),
    (timedelta(days=3), True),
    (timedelta(days=7), True),
    (timedelta(days=14), False),
)
MAX_RETRY_ATTEMPTS = len(RETRY_SCHEDULE)
HARD_DECLINE_MAX_ATTEMPTS = 1

# Gateway error codes (upper-cased) -> normalized reason
ERROR_CODE_REASONS = {
    "INSUFFICIENT_FUNDS": FailureReason.INSUFFICIENT_FUNDS,
    "NOT_SUFFICIENT_FUNDS": FailureReason.INSUFFICIENT_FUNDS,
    "CARD_EXPIRED": FailureReason.CARD_EXPIRED,
    "EXPIRED_CARD": FailureReason.CARD_EXPIRED,
    "CARD_STOLEN": FailureReason.STOLEN_CARD,
    "STOLEN_CARD": FailureReason.STOLEN_CARD,
    "CARD_LOST": FailureReason.STOLEN_CARD,
    "LOST_CARD": FailureReason.STOLEN_CARD,
    "GATEWAY_TIMEOUT": FailureReason.TIMEOUT,
    "TIMEOUT": FailureReason.TIMEOUT,
    "NETWORK_ERROR": FailureReason.TIMEOUT,
    "GATEWAY_ERROR": FailureReason.UNKNOWN,
    "SERVER_ERROR": FailureReason.UNKNOWN,
    "BANK_ERROR": FailureReason.UNKNOWN,
    "BAD_REQUEST_ERROR": FailureReason.UNKNOWN,
}

# Free-text gateway messages (lower-cased, stripped) -> normalized reason
REASON_ALIASES = {
    "insufficient_funds": FailureReason.INSUFFICIENT_FUNDS,
    "insufficient funds": FailureReason.INSUFFICIENT_FUNDS,
    "declined: insufficient funds": FailureReason.INSUFFICIENT_FUNDS,
    "timeout": FailureReason.TIMEOUT,
    "timed out": FailureReason.TIMEOUT,
    "card_expired": FailureReason.CARD_EXPIRED,
    "expired card": FailureReason.CARD_EXPIRED,
    "card expired": FailureReason.CARD_EXPIRED,
    "stolen_card": FailureReason.STOLEN_CARD,
    "stolen card": FailureReason.STOLEN_CARD,
    "lost card": FailureReason.STOLEN_CARD,
    "unknown": FailureReason.UNKNOWN,
}


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: Optional[timedelta] = None
    grace_active: bool = False

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


def classify_failure(reason: Optional[str], error_code: Optional[str] = None) -> FailureReason:
    """
    Normalize raw gateway output onto the closed FailureReason set.
    The error code wins over the message; anything unmapped is UNKNOWN.
    """
    if error_code:
        mapped = ERROR_CODE_REASONS.get(error_code.strip().upper())
        if mapped is not None:
            return mapped
    if reason:
        if isinstance(reason, FailureReason):
            return reason
        return REASON_ALIASES.get(reason.strip().lower(), FailureReason.UNKNOWN)
    return FailureReason.UNKNOWN


def decline_kind(reason: FailureReason) -> DeclineKind:
    return DeclineKind.HARD if reason in HARD_DECLINES else DeclineKind.SOFT


def max_attempts_for(reason: FailureReason) -> int:
    if decline_kind(reason) == DeclineKind.HARD:
        return HARD_DECLINE_MAX_ATTEMPTS
    return MAX_RETRY_ATTEMPTS


def decide_retry(attempt_number: int, failure_reason: FailureReason) -> RetryDecision:
    """
    Decide whether retry number `attempt_number` should be scheduled.

    Raises:
        ValueError: attempt_number < 1
    """
    if attempt_number < 1:
        raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")

    if attempt_number > max_attempts_for(FailureReason(failure_reason)):
        return RetryDecision(action=RetryAction.STOP)

    delay, grace_active = RETRY_SCHEDULE[attempt_number - 1]
    return RetryDecision(action=RetryAction.RETRY, delay=delay, grace_active=grace_active)
