"""
Idempotency ledger - one row per logical effect that has been applied.

Written in the same transaction as the handler's side effects, so a row here
means the effect is durable.
"""
from sqlalchemy import Column, String, DateTime

from app.core.clock import utcnow
from app.db.database import Base


class IdempotencyRecord(Base):
    __tablename__ = "webhook_idempotency"

    idempotency_key = Column(String(64), primary_key=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False, index=True)
