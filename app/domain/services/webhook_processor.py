"""
Webhook Processor - runs claimed events through the handler registry.

Each event gets its own session. The handler's effects, the ledger row and the
completed status are committed together; any failure rolls all of it back and
records a failed attempt in a separate short transaction.
"""
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import get_logger, bind_log_context
from app.db.models.webhook_event import WebhookEventStatus, WebhookOutcome
from app.domain.services.dunning_service import DunningService
from app.domain.services.email import EmailService
from app.domain.services.event_store import EventStore
from app.domain.services.idempotency import IdempotencyLedger, derive_idempotency_key
from app.domain.services.payment_gateway import PaymentGateway
from app.domain.services.retry_scheduler import is_retryable_error
from app.domain.services.strategy_registry import StrategyRegistry, get_strategy_registry
from app.domain.services.webhook_handlers import HandlerContext, HandlerRegistry

logger = get_logger(__name__)


class WebhookProcessor:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        registry: HandlerRegistry | None = None,
        gateway: PaymentGateway | None = None,
        email_service: EmailService | None = None,
        strategies: StrategyRegistry | None = None,
        max_retries: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.registry = registry or HandlerRegistry()
        self.gateway = gateway
        self.email_service = email_service
        self.strategies = strategies or get_strategy_registry()
        self.max_retries = max_retries or settings.WEBHOOK_MAX_RETRIES
        self.clock = clock

    def _dunning(self, db: AsyncSession) -> DunningService:
        return DunningService(
            db,
            gateway=self.gateway,
            email_service=self.email_service,
            strategies=self.strategies,
        )

    async def claim_next(self) -> int | None:
        """Claim the next eligible event and return its id"""
        async with self.session_factory() as db:
            event = await EventStore(db).claim_next(self.clock())
            return event.id if event else None

    async def process_event(self, event_id: int) -> WebhookEventStatus | None:
        """Claim a specific event and process it. None when the claim was lost."""
        async with self.session_factory() as db:
            event = await EventStore(db).claim(event_id, self.clock())
            if event is None:
                return None
        return await self.process_claimed(event_id)

    async def process_next(self) -> WebhookEventStatus | None:
        event_id = await self.claim_next()
        if event_id is None:
            return None
        return await self.process_claimed(event_id)

    async def process_claimed(self, event_id: int) -> WebhookEventStatus | None:
        """Dispatch an event this worker already holds in processing"""
        with bind_log_context(webhook_event_id=event_id):
            try:
                return await self._dispatch(event_id)
            except Exception as exc:
                if isinstance(exc, IntegrityError):
                    status = await self._complete_if_recorded(event_id)
                    if status is not None:
                        return status
                return await self._record_failure(event_id, exc)

    async def _dispatch(self, event_id: int) -> WebhookEventStatus | None:
        async with self.session_factory() as db:
            store = EventStore(db)
            event = await store.get(event_id)
            if event is None or event.status != WebhookEventStatus.PROCESSING:
                logger.warning(
                    "Claimed webhook event no longer in processing",
                    extra_data={"status": event.status.value if event else None}
                )
                return event.status if event else None

            key = event.idempotency_key or derive_idempotency_key(event.event_type, event.payload)
            now = self.clock()
            ctx = HandlerContext(
                db=db,
                event=event,
                idempotency_key=key,
                dunning=self._dunning(db),
                now=now,
            )
            try:
                outcome = await self.registry.dispatch(ctx)
                await store.mark_completed(event, outcome, now)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

            log = logger.warning if outcome == WebhookOutcome.UNHANDLED else logger.info
            log(
                "Webhook event completed",
                extra_data={
                    "type": event.event_type,
                    "outcome": outcome.value,
                    "attempts": event.attempts,
                }
            )
            return WebhookEventStatus.COMPLETED

    async def _complete_if_recorded(self, event_id: int) -> WebhookEventStatus | None:
        """
        A unique violation while applying effects means a concurrent worker applied
        the same logical change first. If its ledger row is there, we are a duplicate.
        """
        async with self.session_factory() as db:
            store = EventStore(db)
            event = await store.get(event_id)
            if event is None or event.status != WebhookEventStatus.PROCESSING:
                return None
            key = event.idempotency_key or derive_idempotency_key(event.event_type, event.payload)
            if not await IdempotencyLedger(db).is_processed(key):
                return None
            await store.mark_completed(event, WebhookOutcome.DUPLICATE, self.clock())
            await db.commit()
            logger.info("Concurrent duplicate effect, event completed as duplicate")
            return WebhookEventStatus.COMPLETED

    async def _record_failure(self, event_id: int, exc: Exception) -> WebhookEventStatus | None:
        retryable = is_retryable_error(exc)
        logger.error(
            f"Webhook handler failed: {exc}",
            extra_data={"retryable": retryable, "error_type": type(exc).__name__},
            exc_info=True
        )
        async with self.session_factory() as db:
            event = await EventStore(db).mark_failed(
                event_id,
                f"{type(exc).__name__}: {exc}",
                retryable=retryable,
                max_retries=self.max_retries,
                now=self.clock(),
            )
        return event.status if event else None
