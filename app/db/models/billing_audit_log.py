"""
Billing Audit Log - append-only record of escalation actions.

Written on access restriction, subscription pause and subscription cancellation.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON

from app.core.clock import utcnow
from app.db.database import Base


class BillingAuditAction(str, enum.Enum):
    ACCESS_RESTRICTED = "access_restricted"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class BillingAuditLog(Base):
    __tablename__ = "billing_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)   # customer / subscription
    entity_id = Column(Integer, nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    actor_type = Column(String(20), nullable=False, default="system")
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
