"""
Customer Model - local mirror of the payment provider's customer.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime

from app.core.clock import utcnow
from app.db.database import Base


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    RESTRICTED = "restricted"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    stripe_customer_id = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)

    account_status = Column(String(20), default=AccountStatus.ACTIVE.value, nullable=False)
    account_status_reason = Column(String(100), nullable=True)

    # אסטרטגיית dunning ללקוח, None = DUNNING_DEFAULT_STRATEGY
    dunning_strategy = Column(String(50), nullable=True)
    default_payment_method_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_restricted(self) -> bool:
        return self.account_status == AccountStatus.RESTRICTED.value
