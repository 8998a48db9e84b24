"""
Scheduled Timer SQLAlchemy Model

Durable timers for the clock service: a row per future callback, polled by
workers once `scheduled_for` has elapsed.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import String, Text, Integer, ForeignKey, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB
from payment_recovery.shared.db.base import Base, UTCDateTime


class TimerStatus(str, Enum):
    """Timer lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DEAD_LETTER = "dead_letter"  # Max attempts exceeded


class TimerType(str, Enum):
    """Supported timer callbacks."""
    RETRY_EXECUTION = "retry_execution"
    DUNNING_STEP = "dunning_step"


class ScheduledTimer(Base):
    __tablename__ = "scheduled_timers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    timer_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    # One timer per retry attempt / campaign step
    deduplication_key: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), default=TimerStatus.PENDING.value, index=True)
    payload: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ScheduledTimer {self.id} type={self.timer_type} status={self.status}>"
