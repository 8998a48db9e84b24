"""
Subscription SQLAlchemy Model

A recurring billing relationship owned by the recovery subsystem.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import String, Boolean, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from payment_recovery.shared.db.base import Base, UTCDateTime


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owner_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    plan: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.ACTIVE.value, index=True)
    billing_cycle: Mapped[str] = mapped_column(String(20), default=BillingCycle.MONTHLY.value)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    # Reusable gateway authorization (e.g. Paystack AUTH_xxx)
    payment_method: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)

    # Failure episode tracking
    episode_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    grace_period_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @property
    def in_failure_episode(self) -> bool:
        return self.status in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.PAYMENT_FAILED.value)

    def __repr__(self) -> str:
        return f"<Subscription {self.id} plan={self.plan} status={self.status}>"
