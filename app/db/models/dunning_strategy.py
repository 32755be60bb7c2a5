"""
Dunning Strategy Model - persisted, versioned retry and escalation policy.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean

from app.core.clock import utcnow
from app.db.database import Base


class DunningStrategyRecord(Base):
    __tablename__ = "dunning_strategies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    max_attempts = Column(Integer, nullable=False)
    retry_intervals_days = Column(JSON, nullable=False)  # הערך האחרון חוזר על עצמו

    # ספי ימים שנספרים מיצירת אירוע ה-dunning, None מבטל את השלב
    restrict_access_after_days = Column(Integer, nullable=True)
    pause_subscription_after_days = Column(Integer, nullable=True)
    cancel_subscription_after_days = Column(Integer, nullable=True)

    # {"initial": ..., "reminder": ..., "final_notice": ..., "success": ...}
    email_templates = Column(JSON, nullable=False)

    version = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
