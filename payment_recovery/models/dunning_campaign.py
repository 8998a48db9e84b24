"""DunningCampaign model: the escalating communication track for one failure episode."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import String, Integer, Boolean, ForeignKey, Index, CheckConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column
from payment_recovery.shared.db.base import Base, UTCDateTime


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class CampaignType(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    CARD_UPDATE_REQUIRED = "card_update_required"


class CampaignResolution(str, Enum):
    PAYMENT_RECOVERED = "payment_recovered"
    CUSTOMER_RESPONSE = "customer_response"
    ABANDONED = "abandoned"


class DunningCampaign(Base):
    __tablename__ = "dunning_campaigns"
    __table_args__ = (
        CheckConstraint("current_step >= 1 AND current_step <= total_steps", name="step_within_bounds"),
        Index(
            "uq_dunning_campaigns_active_per_subscription",
            "subscription_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    campaign_type: Mapped[str] = mapped_column(String(30), default=CampaignType.PAYMENT_FAILED.value)
    status: Mapped[str] = mapped_column(String(20), default=CampaignStatus.ACTIVE.value, index=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    current_step: Mapped[int] = mapped_column(Integer, default=1)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    next_action_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    communications_sent: Mapped[int] = mapped_column(Integer, default=0)
    response_received: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_action_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == CampaignStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<DunningCampaign {self.id} step={self.current_step}/{self.total_steps} status={self.status}>"
