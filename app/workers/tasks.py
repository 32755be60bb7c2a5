"""
Celery Tasks

Periodic sweeps for webhook retries, stale lease recovery, dunning and
retention cleanup. Each task runs its coroutine on a fresh event loop with a
fresh engine.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id, log_async_operation
from app.db.database import get_task_session, get_task_session_factory
from app.domain.services.dunning_service import DunningService
from app.domain.services.event_store import EventStore
from app.domain.services.idempotency import IdempotencyLedger
from app.domain.services.retry_scheduler import RetryScheduler
from app.domain.services.strategy_registry import get_strategy_registry
from app.domain.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

DUNNING_SWEEP_LOCK_KEY = "locks:dunning_sweep"


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת ה-singleton של Redis לפני ה-loop - המשימה הבאה מקבלת loop חדש
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _refresh_strategies(db) -> None:
    """Pick up strategy changes made since this worker last looked"""
    await get_strategy_registry().refresh(db)


@celery_app.task(name="app.workers.tasks.process_webhook_events")
def process_webhook_events(max_claims: int | None = None):
    """
    Claim and process eligible webhook events (pending and due retries).

    Runs every 15 seconds and also catches events the intake pool rejected
    under backpressure.
    """

    @log_async_operation("webhook_sweep")
    async def _sweep():
        async with get_task_session_factory() as session_factory:
            async with session_factory() as db:
                await _refresh_strategies(db)

            processor = WebhookProcessor(session_factory)
            scheduler = RetryScheduler(
                processor.claim_next,
                processor.process_claimed,
                concurrency=settings.WEBHOOK_CONCURRENCY,
            )
            return await scheduler.run_sweep(max_claims or settings.WEBHOOK_SWEEP_MAX_CLAIMS)

    return run_async(_sweep())


@celery_app.task(name="app.workers.tasks.process_webhook_event")
def process_webhook_event(event_id: int):
    """Process one specific webhook event on demand"""

    async def _process():
        async with get_task_session_factory() as session_factory:
            async with session_factory() as db:
                await _refresh_strategies(db)

            status = await WebhookProcessor(session_factory).process_event(event_id)
            if status is None:
                return {"event_id": event_id, "claimed": False}
            return {"event_id": event_id, "claimed": True, "status": status.value}

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.recover_stale_webhook_events")
def recover_stale_webhook_events(minutes: int | None = None):
    """Release events stuck in processing after a worker crash"""

    async def _recover():
        async with get_task_session() as db:
            recovered = await EventStore(db).recover_stale(
                minutes or settings.WEBHOOK_STALE_PROCESSING_MINUTES,
                max_retries=settings.WEBHOOK_MAX_RETRIES,
            )
            return {"recovered": recovered}

    return run_async(_recover())


@celery_app.task(name="app.workers.tasks.process_dunning_events")
def process_dunning_events():
    """
    Hourly dunning sweep.

    A Redis lock keeps a single sweep running across workers. Overlap is still
    safe, the per-event claim prevents double retries.
    """
    from app.core.redis_client import acquire_lock, release_lock

    async def _process():
        token = await acquire_lock(DUNNING_SWEEP_LOCK_KEY, settings.DUNNING_SWEEP_LOCK_SECONDS)
        if token is None:
            logger.info("Dunning sweep already running, skipping")
            return {"skipped": True}

        try:
            async with get_task_session() as db:
                await _refresh_strategies(db)
                return await DunningService(db).process_due(batch_size=settings.DUNNING_BATCH_SIZE)
        finally:
            await release_lock(DUNNING_SWEEP_LOCK_KEY, token)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int | None = None):
    """Delete completed and permanently failed webhook events past retention"""

    async def _cleanup():
        days_ = days or settings.WEBHOOK_RETENTION_DAYS
        async with get_task_session() as db:
            deleted = await EventStore(db).cleanup_old_events(days_)
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days_},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_idempotency_keys")
def cleanup_idempotency_keys(days: int | None = None):
    """Delete idempotency ledger rows past retention"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await IdempotencyLedger(db).cleanup(days or settings.IDEMPOTENCY_RETENTION_DAYS)
            return {"deleted": deleted}

    return run_async(_cleanup())
