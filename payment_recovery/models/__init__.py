from payment_recovery.models.subscription import Subscription, SubscriptionStatus, BillingCycle
from payment_recovery.models.payment import Payment, PaymentStatus, TERMINAL_PAYMENT_STATUSES
from payment_recovery.models.retry_attempt import RetryAttempt, RetryStatus, RetryMethod
from payment_recovery.models.dunning_campaign import (
    DunningCampaign,
    CampaignStatus,
    CampaignType,
    CampaignResolution,
)
from payment_recovery.models.scheduled_timer import ScheduledTimer, TimerStatus, TimerType

__all__ = [
    "Subscription", "SubscriptionStatus", "BillingCycle",
    "Payment", "PaymentStatus", "TERMINAL_PAYMENT_STATUSES",
    "RetryAttempt", "RetryStatus", "RetryMethod",
    "DunningCampaign", "CampaignStatus", "CampaignType", "CampaignResolution",
    "ScheduledTimer", "TimerStatus", "TimerType",
]
