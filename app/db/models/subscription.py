"""
Subscription Model - local mirror of provider subscriptions.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, ForeignKey

from app.core.clock import utcnow
from app.db.database import Base


class SubscriptionStatus(str, enum.Enum):
    """Provider statuses we act on. Unknown provider statuses are stored as-is."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


ENDED_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(String(30), nullable=False)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    pause_collection = Column(JSON, nullable=True)
    cancellation_reason = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def has_ended(self) -> bool:
        return self.status in ENDED_SUBSCRIPTION_STATUSES
