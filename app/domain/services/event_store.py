"""
Event Store - durable storage and atomic claiming of webhook events.

Every status change goes through a conditional UPDATE so that two workers
racing for the same row can never both win.
"""
from datetime import datetime, timedelta
from typing import NamedTuple, Sequence

from sqlalchemy import select, update, delete as sa_delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import NotFoundException, ErrorCode, InvalidWebhookStatusError
from app.core.logging import get_logger
from app.db.models.webhook_event import (
    WebhookEvent,
    WebhookEventStatus,
    WebhookOutcome,
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
)
from app.domain.services.retry_scheduler import next_retry_time

logger = get_logger(__name__)

# מספר המועמדים שנשלפים בכל סבב של claim_next
_CLAIM_CANDIDATES = 10


class StoreResult(NamedTuple):
    event: WebhookEvent
    created: bool


class EventStore:
    """Webhook event persistence and state transitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, event_id: int) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_id(self, provider_event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent).where(WebhookEvent.provider_event_id == provider_event_id)
        )
        return result.scalar_one_or_none()

    async def store_event(
        self,
        provider_event_id: str,
        event_type: str,
        payload: dict,
        idempotency_key: str | None = None,
    ) -> StoreResult:
        """
        Insert a pending event, or return the existing row for a redelivery.

        The existing row is returned unchanged, whatever its status. A concurrent
        insert of the same provider id surfaces as IntegrityError inside the
        savepoint and falls back to reading the winner's row.
        """
        existing = await self.get_by_provider_id(provider_event_id)
        if existing is not None:
            return StoreResult(existing, False)

        now = utcnow()
        event = WebhookEvent(
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=payload,
            status=WebhookEventStatus.PENDING,
            attempts=0,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_by_provider_id(provider_event_id)
            if existing is None:
                raise
            logger.info(
                "Concurrent duplicate webhook delivery",
                extra_data={"provider_event_id": provider_event_id}
            )
            return StoreResult(existing, False)

        return StoreResult(event, True)

    async def _try_claim(self, event_id: int, now: datetime) -> bool:
        """Conditional pending|failed -> processing, attempts incremented once"""
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.status.in_(CLAIMABLE_STATUSES),
                or_(
                    WebhookEvent.next_retry_at.is_(None),
                    WebhookEvent.next_retry_at <= now,
                ),
            )
            .values(
                status=WebhookEventStatus.PROCESSING,
                attempts=WebhookEvent.attempts + 1,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _reload(self, event_id: int) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim(self, event_id: int, now: datetime | None = None) -> WebhookEvent | None:
        """Claim one specific event. Returns None when it is not eligible or another worker won."""
        now = now or utcnow()
        if not await self._try_claim(event_id, now):
            return None
        return await self._reload(event_id)

    async def claim_next(self, now: datetime | None = None) -> WebhookEvent | None:
        """Claim the oldest eligible event, or None when nothing is eligible"""
        now = now or utcnow()
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.status.in_(CLAIMABLE_STATUSES),
                or_(
                    WebhookEvent.next_retry_at.is_(None),
                    WebhookEvent.next_retry_at <= now,
                ),
            )
            .order_by(WebhookEvent.next_retry_at.asc().nulls_first(), WebhookEvent.id.asc())
            .limit(_CLAIM_CANDIDATES)
        )
        candidates = list(result.scalars().all())

        for candidate_id in candidates:
            if await self._try_claim(candidate_id, now):
                return await self._reload(candidate_id)
        return None

    async def mark_completed(
        self,
        event: WebhookEvent,
        outcome: WebhookOutcome,
        now: datetime | None = None,
    ) -> None:
        """Flag the event completed. Not committed, runs in the handler's transaction."""
        now = now or utcnow()
        event.status = WebhookEventStatus.COMPLETED
        event.outcome = outcome
        event.completed_at = now
        event.next_retry_at = None
        event.error_message = None
        event.updated_at = now

    async def mark_failed(
        self,
        event_id: int,
        error: str,
        *,
        retryable: bool,
        max_retries: int,
        now: datetime | None = None,
    ) -> WebhookEvent | None:
        """
        Record a failed attempt.

        The event becomes failed with a backoff, or failed_permanent when the error
        is not retryable or the attempt budget is spent. Only a row still in
        processing under the same attempt is touched: a late failure after the
        lease was released and another worker took over returns None.
        """
        now = now or utcnow()
        current = await self._reload(event_id)
        if current is None or current.status != WebhookEventStatus.PROCESSING:
            logger.warning(
                "כישלון מאוחר נדחה - אירוע ה-webhook כבר לא ב-processing",
                extra_data={
                    "webhook_event_id": event_id,
                    "status": current.status.value if current else None,
                }
            )
            return None

        if not retryable or current.attempts >= max_retries:
            status, next_retry_at = WebhookEventStatus.FAILED_PERMANENT, None
        else:
            status, next_retry_at = WebhookEventStatus.FAILED, next_retry_time(current.attempts, now=now)

        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.status == WebhookEventStatus.PROCESSING,
                WebhookEvent.attempts == current.attempts,
            )
            .values(
                status=status,
                next_retry_at=next_retry_at,
                error_message=error[:2000],
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.warning(
                "כישלון מאוחר נדחה - אירוע ה-webhook השתנה במקביל",
                extra_data={"webhook_event_id": event_id}
            )
            return None

        event = await self._reload(event_id)

        logger.warning(
            "Webhook event processing failed",
            extra_data={
                "webhook_event_id": event.id,
                "type": event.event_type,
                "attempts": event.attempts,
                "status": event.status.value,
                "next_retry_at": event.next_retry_at.isoformat() if event.next_retry_at else None,
                "error": error[:500],
            }
        )
        return event

    async def recover_stale(
        self,
        older_than_minutes: int,
        *,
        max_retries: int,
        now: datetime | None = None,
    ) -> int:
        """Release events stuck in processing after a worker crash"""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=older_than_minutes)
        result = await self.db.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.status == WebhookEventStatus.PROCESSING,
                WebhookEvent.last_attempt_at < cutoff,
            )
        )
        stale_ids = list(result.scalars().all())

        recovered = 0
        for event_id in stale_ids:
            # מותנה בסטטוס - commit מאוחר של ה-worker המקורי גובר
            outcome = await self.db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event_id,
                    WebhookEvent.status == WebhookEventStatus.PROCESSING,
                    WebhookEvent.last_attempt_at < cutoff,
                )
                .values(
                    status=WebhookEventStatus.FAILED,
                    error_message="processing lease expired",
                    next_retry_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            recovered += outcome.rowcount or 0

        # אירועים שמיצו את תקציב הניסיונות עוברים ישירות ל-failed_permanent
        await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id.in_(stale_ids),
                WebhookEvent.status == WebhookEventStatus.FAILED,
                WebhookEvent.attempts >= max_retries,
            )
            .values(status=WebhookEventStatus.FAILED_PERMANENT, next_retry_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if recovered:
            logger.warning(
                "Recovered stale webhook events",
                extra_data={"recovered": recovered, "older_than_minutes": older_than_minutes}
            )
        return recovered

    async def cleanup_old_events(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete terminal events older than the retention window"""
        now = now or utcnow()
        cutoff = now - timedelta(days=retention_days)
        result = await self.db.execute(
            sa_delete(WebhookEvent).where(
                WebhookEvent.status.in_(TERMINAL_STATUSES),
                WebhookEvent.created_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0

    async def list_events(
        self,
        status: WebhookEventStatus | None = None,
        event_type: str | None = None,
        limit: int = 50,
    ) -> Sequence[WebhookEvent]:
        query = select(WebhookEvent)
        if status is not None:
            query = query.where(WebhookEvent.status == status)
        if event_type:
            query = query.where(WebhookEvent.event_type == event_type)
        result = await self.db.execute(
            query.order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc()).limit(limit)
        )
        return result.scalars().all()

    async def retry_now(self, event_id: int, now: datetime | None = None) -> WebhookEvent:
        """Make a failed event eligible immediately. Operator action, status unchanged."""
        event = await self.get(event_id)
        if event is None:
            raise NotFoundException("WebhookEvent", event_id, ErrorCode.WEBHOOK_EVENT_NOT_FOUND)
        if event.status != WebhookEventStatus.FAILED:
            raise InvalidWebhookStatusError(
                event_id, event.status.value, WebhookEventStatus.FAILED.value
            )

        event.next_retry_at = None
        event.updated_at = now or utcnow()
        await self.db.commit()
        logger.info("Webhook event scheduled for immediate retry", extra_data={"webhook_event_id": event_id})
        return event
