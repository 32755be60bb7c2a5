"""
Admin Webhook Endpoints - diagnostics for the intake and processing pipeline.

1. Circuit breaker status (payment gateway, email)
2. Processing statistics over a trailing window
3. Event listing and manual retry of failed events
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import (
    CircuitBreaker,
    get_email_circuit_breaker,
    get_payment_gateway_circuit_breaker,
)
from app.core.config import settings
from app.db.database import get_db
from app.db.models.webhook_event import WebhookEventStatus, WebhookOutcome
from app.domain.services.event_store import EventStore
from app.domain.services.webhook_stats import get_webhook_stats

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Invalid API key"},
}


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float = Field(
        description="Seconds until a call is allowed again (0 when not open)"
    )


class WebhookStatsResponse(BaseModel):
    window_hours: int
    total: int
    completed: int
    failed: int
    failed_permanent: int
    pending: int
    processing: int
    unhandled: int
    failure_rate: float
    avg_processing_seconds: float | None


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_event_id: str
    event_type: str
    status: WebhookEventStatus
    outcome: WebhookOutcome | None
    attempts: int
    error_message: str | None
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    created_at: datetime | None
    completed_at: datetime | None


class WebhookEventDetailResponse(WebhookEventResponse):
    payload: dict[str, Any]


@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Circuit breaker status",
    responses=_AUTH_RESPONSES,
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> list[CircuitBreakerStatusResponse]:
    # מוודאים שה-breakers המוכרים קיימים גם לפני הקריאה הראשונה שלהם
    get_payment_gateway_circuit_breaker()
    get_email_circuit_breaker()
    breakers = sorted(CircuitBreaker.all_instances(), key=lambda cb: cb.service_name)
    return [CircuitBreakerStatusResponse(**cb.snapshot()) for cb in breakers]


@router.get(
    "/webhooks/stats",
    response_model=WebhookStatsResponse,
    summary="Webhook processing statistics",
    responses=_AUTH_RESPONSES,
)
async def webhook_stats(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    window_hours: Optional[int] = Query(default=None, ge=1, le=24 * 30),
) -> WebhookStatsResponse:
    stats = await get_webhook_stats(db, window_hours or settings.WEBHOOK_STATS_WINDOW_HOURS)
    return WebhookStatsResponse(**stats)


@router.get(
    "/webhooks/events",
    response_model=list[WebhookEventResponse],
    summary="List webhook events",
    description="Most recent first. Defaults to failed events.",
    responses=_AUTH_RESPONSES,
)
async def list_webhook_events(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    event_status: Optional[str] = Query(
        default="failed",
        alias="status",
        description="pending, processing, completed, failed or failed_permanent",
    ),
    event_type: Optional[str] = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[WebhookEventResponse]:
    status_filter = None
    if event_status:
        valid_statuses = {s.value for s in WebhookEventStatus}
        if event_status not in valid_statuses:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status. Allowed: {', '.join(sorted(valid_statuses))}",
            )
        status_filter = WebhookEventStatus(event_status)

    events = await EventStore(db).list_events(status_filter, event_type, limit)
    return [WebhookEventResponse.model_validate(event) for event in events]


@router.get(
    "/webhooks/events/{event_id}",
    response_model=WebhookEventDetailResponse,
    summary="Webhook event with payload",
    responses={**_AUTH_RESPONSES, 404: {"description": "Event not found"}},
)
async def get_webhook_event(
    event_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookEventDetailResponse:
    event = await EventStore(db).get(event_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook event {event_id} not found",
        )
    return WebhookEventDetailResponse.model_validate(event)


@router.post(
    "/webhooks/events/{event_id}/retry",
    response_model=WebhookEventResponse,
    summary="Retry a failed event now",
    description="Clears the backoff of a failed event so the next sweep claims it.",
    responses={
        **_AUTH_RESPONSES,
        400: {"description": "Event is not in failed status"},
        404: {"description": "Event not found"},
    },
)
async def retry_webhook_event(
    event_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> WebhookEventResponse:
    event = await EventStore(db).retry_now(event_id)
    return WebhookEventResponse.model_validate(event)
