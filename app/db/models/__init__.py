"""
Database Models
"""
from app.db.models.customer import Customer
from app.db.models.subscription import Subscription
from app.db.models.transaction import BillingTransaction
from app.db.models.billing_audit_log import BillingAuditLog
from app.db.models.webhook_event import WebhookEvent
from app.db.models.webhook_idempotency import IdempotencyRecord
from app.db.models.dunning_event import DunningEvent
from app.db.models.dunning_strategy import DunningStrategyRecord

__all__ = [
    "Customer",
    "Subscription",
    "BillingTransaction",
    "BillingAuditLog",
    "WebhookEvent",
    "IdempotencyRecord",
    "DunningEvent",
    "DunningStrategyRecord",
]
