"""
Billing Transaction Model - money movements reported by the payment provider.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Numeric, Text, ForeignKey,
)

from app.core.clock import utcnow
from app.db.database import Base


class TransactionType(str, enum.Enum):
    CHARGE = "charge"
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BillingTransaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(
        SQLEnum(
            TransactionType,
            name="transaction_type",
            native_enum=False,
            length=30,
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
    )
    status = Column(
        SQLEnum(
            TransactionStatus,
            name="transaction_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    stripe_invoice_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    stripe_charge_id = Column(String(255), nullable=True)

    failure_code = Column(String(100), nullable=True)
    failure_message = Column(Text, nullable=True)
    # השם "metadata" שמור במחלקות declarative
    extra_metadata = Column("metadata", JSON, nullable=True)

    # אותו מפתח כמו ב-ledger של ה-webhooks - שכבת הגנה נוספת מפני הכנסה כפולה
    idempotency_key = Column(String(64), unique=True, nullable=False)

    processed_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
