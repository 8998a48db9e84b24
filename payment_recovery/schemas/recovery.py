from uuid import UUID
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, ConfigDict


class PaymentFailureRequest(BaseModel):
    """Gateway callback body reporting a failed recurring charge."""
    payment_id: UUID
    subscription_id: UUID
    failure_reason: str = Field(..., min_length=1, max_length=255, description="Gateway decline message")
    error_code: str | None = Field(default=None, max_length=100, description="Gateway error code, e.g. CARD_EXPIRED")


class FailureHandledResponse(BaseModel):
    """Outcome of handling a payment failure."""
    success: bool
    retry_id: UUID | None = None
    attempt_number: int | None = None
    next_retry_date: datetime | None = None
    grace_period_end: datetime | None = None
    recommended_action: str
    subscription_status: str
    requires_manual_review: bool = False
    duplicate: bool = False
    message: str


class RetryExecutionResponse(BaseModel):
    """Outcome of executing (or skipping) a retry attempt."""
    success: bool
    retry_id: UUID
    retry_status: str
    executed: bool = Field(default=False, description="True only when this call charged the gateway")
    next_retry_id: UUID | None = None
    next_retry_date: datetime | None = None
    grace_period_end: datetime | None = None
    recommended_action: str | None = None
    subscription_status: str
    message: str


class SubscriptionView(BaseModel):
    id: UUID
    plan: str
    status: str
    billing_cycle: str
    amount: Decimal
    currency: str
    auto_renew: bool
    current_period_start: datetime
    current_period_end: datetime
    grace_period_end: datetime | None
    requires_manual_review: bool
    canceled_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class RetryAttemptView(BaseModel):
    """Retry attempt as shown on dashboards. Raw gateway error codes are not exposed."""
    id: UUID
    subscription_id: UUID
    attempt_number: int
    scheduled_at: datetime
    attempted_at: datetime | None
    status: str
    retry_method: str
    grace_period_active: bool
    failure_reason: str | None

    model_config = ConfigDict(from_attributes=True)


class DunningCampaignView(BaseModel):
    id: UUID
    subscription_id: UUID
    campaign_type: str
    status: str
    resolution: str | None
    current_step: int
    total_steps: int
    next_action_date: datetime | None
    communications_sent: int
    response_received: bool
    started_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RetrySummary(BaseModel):
    has_payment_issues: bool
    total_failed_payments: int
    active_retry_attempts: int
    active_dunning_campaigns: int
    message: str = Field(..., description="Plain-language status for the account holder")


class RetryStatusResponse(BaseModel):
    subscriptions: list[SubscriptionView]
    retry_attempts: list[RetryAttemptView]
    dunning_campaigns: list[DunningCampaignView]
    summary: RetrySummary


class CustomerResponseResult(BaseModel):
    subscription_id: UUID
    campaign_id: UUID | None
    campaign_status: str | None
    message: str


class AbandonRetryResult(BaseModel):
    retry_id: UUID
    retry_status: str
    changed: bool
