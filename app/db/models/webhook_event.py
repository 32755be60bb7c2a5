"""
Webhook Event Model - durable record of every inbound payment-provider event.

Rows are deduplicated by provider_event_id and move through
pending -> processing -> completed | failed | failed_permanent.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text, Index

from app.core.clock import utcnow
from app.db.database import Base


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"


class WebhookOutcome(str, enum.Enum):
    """How a completed event was resolved"""
    HANDLED = "handled"
    DUPLICATE = "duplicate"      # מפתח ה-idempotency כבר קיים ב-ledger
    UNHANDLED = "unhandled"      # אין handler רשום לסוג האירוע


CLAIMABLE_STATUSES = (WebhookEventStatus.PENDING, WebhookEventStatus.FAILED)
TERMINAL_STATUSES = (WebhookEventStatus.COMPLETED, WebhookEventStatus.FAILED_PERMANENT)


class WebhookEvent(Base):
    """Inbound event with processing state and retry tracking"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column("type", String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(
            WebhookEventStatus,
            name="webhook_event_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x]
        ),
        default=WebhookEventStatus.PENDING,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    idempotency_key = Column(String(64), nullable=True, index=True)
    outcome = Column(
        SQLEnum(
            WebhookOutcome,
            name="webhook_outcome",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=True,
    )

    last_attempt_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # claim_next סורק שורות זכאיות לפי זמן ה-retry
        Index("ix_webhook_events_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
