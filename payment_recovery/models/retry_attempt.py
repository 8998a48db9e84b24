"""
RetryAttempt SQLAlchemy Model

A scheduled or executed retry of a failed payment. Created by the failure
handler, mutated only by the retry executor or an operator override, never
deleted.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import String, Integer, Boolean, ForeignKey, Index, JSON, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from payment_recovery.shared.db.base import Base, UTCDateTime


class RetryStatus(str, Enum):
    SCHEDULED = "scheduled"
    ATTEMPTED = "attempted"  # Charge in flight (or in doubt after a crash)
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


class RetryMethod(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RetryAttempt(Base):
    __tablename__ = "retry_attempts"
    __table_args__ = (
        # At most one scheduled retry per subscription
        Index(
            "uq_retry_attempts_scheduled_per_subscription",
            "subscription_id",
            unique=True,
            sqlite_where=text("status = 'scheduled'"),
            postgresql_where=text("status = 'scheduled'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    attempted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=RetryStatus.SCHEDULED.value, index=True)
    retry_method: Mapped[str] = mapped_column(String(20), default=RetryMethod.AUTOMATIC.value)
    grace_period_active: Mapped[bool] = mapped_column(Boolean, default=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Result returned again on duplicate execution
    outcome: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in (RetryStatus.SCHEDULED.value, RetryStatus.ATTEMPTED.value)

    def __repr__(self) -> str:
        return f"<RetryAttempt {self.id} #{self.attempt_number} status={self.status}>"
