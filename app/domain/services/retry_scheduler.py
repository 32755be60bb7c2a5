"""
Retry Scheduler

Backoff calculation, error classification and the periodic sweep that
re-claims failed webhook events under a concurrency ceiling.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence

import httpx
import stripe

from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# שגיאות Stripe שמשמעותן "הבקשה עצמה שגויה" - ניסיון חוזר לא יעזור
_NON_RETRYABLE_STRIPE_ERRORS = (
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.CardError,
)


def next_retry_time(
    attempts: int,
    *,
    delays: Sequence[int] | None = None,
    now: datetime | None = None,
) -> datetime:
    """
    When a failed event becomes eligible again.

    delays is the backoff table in minutes, indexed by attempts and clamped at
    both ends: negative attempts use the first entry, large ones the last.
    """
    table = list(delays) if delays is not None else settings.webhook_retry_delays
    index = min(max(attempts, 0), len(table) - 1)
    return (now or utcnow()) + timedelta(minutes=table[index])


def _is_client_error(status: int | None) -> bool:
    return status is not None and 400 <= status < 500


def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify a processing error.

    Rejections of the request itself (4xx, validation, unknown strategy) are
    permanent. Everything else, including plain bugs in handler code, is
    retried with backoff.
    """
    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag

    if isinstance(exc, _NON_RETRYABLE_STRIPE_ERRORS):
        return False
    if isinstance(exc, stripe.StripeError):
        return not _is_client_error(getattr(exc, "http_status", None))

    if isinstance(exc, httpx.HTTPStatusError):
        return not _is_client_error(exc.response.status_code)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and _is_client_error(status):
        return False

    return True


class RetryScheduler:
    """
    Sweeps eligible webhook events and runs them with bounded concurrency.

    Claims are made one at a time, only while a slot is free, so the number of
    rows in processing owned by this sweep never exceeds the ceiling.
    """

    def __init__(
        self,
        claim_next: Callable[[], Awaitable[int | None]],
        process_claimed: Callable[[int], Awaitable[object]],
        concurrency: int | None = None,
    ):
        self._claim_next = claim_next
        self._process_claimed = process_claimed
        self.concurrency = concurrency or settings.WEBHOOK_CONCURRENCY
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._stopped = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    def stop(self) -> None:
        """Stop claiming new rows. Handlers already running finish."""
        self._stopped.set()

    async def _run_one(self, event_id: int, counts: dict) -> None:
        try:
            await self._process_claimed(event_id)
            counts["processed"] += 1
        except Exception:
            counts["errors"] += 1
            logger.error(
                "Unexpected error processing claimed webhook event",
                extra_data={"webhook_event_id": event_id},
                exc_info=True
            )
        finally:
            self.in_flight -= 1
            self._semaphore.release()

    async def run_sweep(self, max_claims: int | None = None) -> dict:
        """Claim and process until max_claims, no eligible rows, or stop()"""
        max_claims = max_claims or settings.WEBHOOK_SWEEP_MAX_CLAIMS
        counts = {"claimed": 0, "processed": 0, "errors": 0}
        tasks: list[asyncio.Task] = []

        while counts["claimed"] < max_claims and not self._stopped.is_set():
            await self._semaphore.acquire()
            if self._stopped.is_set():
                self._semaphore.release()
                break

            try:
                event_id = await self._claim_next()
            except Exception:
                self._semaphore.release()
                logger.error("Failed to claim webhook event", exc_info=True)
                counts["errors"] += 1
                break

            if event_id is None:
                self._semaphore.release()
                break

            counts["claimed"] += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            tasks.append(asyncio.create_task(self._run_one(event_id, counts)))

        if tasks:
            await asyncio.gather(*tasks)
        return counts
