"""
Domain Services
"""
from app.domain.services.dunning_service import DunningService
from app.domain.services.event_store import EventStore
from app.domain.services.idempotency import IdempotencyLedger
from app.domain.services.strategy_registry import StrategyRegistry, get_strategy_registry
from app.domain.services.webhook_processor import WebhookProcessor

__all__ = [
    "DunningService",
    "EventStore",
    "IdempotencyLedger",
    "StrategyRegistry",
    "get_strategy_registry",
    "WebhookProcessor",
]
