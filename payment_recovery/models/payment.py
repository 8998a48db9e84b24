"""
Payment SQLAlchemy Model

One charge attempt against a subscription. Immutable once terminal.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import String, Numeric, ForeignKey, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from payment_recovery.shared.db.base import Base, UTCDateTime


class PaymentStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"  # Non-terminal: triggers retry creation
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.PAID.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.CANCELLED.value,
})


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.CREATED.value, index=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def __repr__(self) -> str:
        return f"<Payment {self.id} status={self.status} amount={self.amount} {self.currency}>"
