"""
Dunning Event Model - one recovery campaign for one failed invoice.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Numeric, Text, ForeignKey, Index, text,
)

from app.core.clock import utcnow
from app.db.database import Base


class DunningStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    RECOVERED = "recovered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CancellationReason(str, enum.Enum):
    MANUALLY_CANCELLED = "manually_cancelled"
    CUSTOMER_PAID = "customer_paid"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    INVOICE_VOIDED = "invoice_voided"


OPEN_DUNNING_STATUSES = (DunningStatus.ACTIVE, DunningStatus.PAUSED)
TERMINAL_DUNNING_STATUSES = (DunningStatus.RECOVERED, DunningStatus.FAILED, DunningStatus.CANCELLED)


class DunningEvent(Base):
    """Payment recovery attempt tracker"""

    __tablename__ = "dunning_events"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    invoice_id = Column(String(255), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    # מונה הניסיונות של Stripe על החשבונית בזמן היצירה
    attempt_count = Column(Integer, default=0, nullable=False)
    total_recovery_attempts = Column(Integer, default=0, nullable=False)

    status = Column(
        SQLEnum(
            DunningStatus,
            name="dunning_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x]
        ),
        default=DunningStatus.ACTIVE,
        nullable=False,
    )

    strategy_name = Column(String(50), nullable=False)
    # עותק קפוא של האסטרטגיה - עריכת האסטרטגיה לא משפיעה על אירועים רצים
    strategy_config = Column(JSON, nullable=False)

    next_retry_at = Column(DateTime, nullable=True)
    recovered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(50), nullable=True)
    failure_reason = Column(String(100), nullable=True)
    last_error = Column(Text, nullable=True)

    # [{"type": "initial", "sent_at": "...", "template_id": "..."}]
    emails_sent = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_dunning_events_status_next_retry", "status", "next_retry_at"),
        # לכל היותר קמפיין פעיל אחד לכל חשבונית
        Index(
            "uq_dunning_events_active_invoice",
            "invoice_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DUNNING_STATUSES
