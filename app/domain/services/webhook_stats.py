"""
Webhook processing statistics for the operator surface.
"""
from datetime import datetime, timedelta

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.db.compat import seconds_between
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus, WebhookOutcome


async def get_webhook_stats(
    db: AsyncSession,
    window_hours: int = 24,
    now: datetime | None = None,
) -> dict:
    """Counts by status and average processing time over the trailing window"""
    now = now or utcnow()
    since = now - timedelta(hours=window_hours)

    rows = (await db.execute(
        select(WebhookEvent.status, func.count(WebhookEvent.id))
        .where(WebhookEvent.created_at >= since)
        .group_by(WebhookEvent.status)
    )).all()
    by_status = {status.value: count for status, count in rows}

    unhandled = (await db.execute(
        select(func.count(WebhookEvent.id)).where(
            WebhookEvent.created_at >= since,
            WebhookEvent.outcome == WebhookOutcome.UNHANDLED,
        )
    )).scalar_one()

    avg_seconds = (await db.execute(
        select(func.avg(seconds_between(WebhookEvent.completed_at, WebhookEvent.created_at))).where(
            WebhookEvent.created_at >= since,
            WebhookEvent.status == WebhookEventStatus.COMPLETED,
            WebhookEvent.completed_at.is_not(None),
        )
    )).scalar_one()

    total = sum(by_status.values())
    failed_permanent = by_status.get(WebhookEventStatus.FAILED_PERMANENT.value, 0)
    failed = by_status.get(WebhookEventStatus.FAILED.value, 0) + failed_permanent

    return {
        "window_hours": window_hours,
        "total": total,
        "completed": by_status.get(WebhookEventStatus.COMPLETED.value, 0),
        "failed": failed,
        "failed_permanent": failed_permanent,
        "pending": by_status.get(WebhookEventStatus.PENDING.value, 0),
        "processing": by_status.get(WebhookEventStatus.PROCESSING.value, 0),
        "unhandled": unhandled,
        "failure_rate": round(failed / total * 100, 2) if total else 0.0,
        "avg_processing_seconds": round(float(avg_seconds), 3) if avg_seconds is not None else None,
    }
