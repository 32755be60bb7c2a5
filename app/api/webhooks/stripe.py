"""
Stripe Webhook Endpoint - intake only.

The event is verified and stored, then handed to the in-process worker pool.
Processing never happens inline, the provider gets its 200 as soon as the
event row is committed.
"""
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.webhook_intake import WebhookIntakeService

logger = get_logger(__name__)

router = APIRouter()


class WebhookAcceptedResponse(BaseModel):
    accepted: bool
    event_id: int
    duplicate: bool


@router.post(
    "/stripe",
    response_model=WebhookAcceptedResponse,
    summary="Webhook - Stripe",
    description=(
        "Receives Stripe events. The Stripe-Signature header is verified against "
        "the raw body, the event is stored once and processed asynchronously."
    ),
    responses={
        400: {"description": "Invalid signature or malformed event"},
    },
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
) -> WebhookAcceptedResponse:
    # החתימה מחושבת על הבייטים המדויקים, אסור לבצע serialize מחדש
    raw_payload = await request.body()
    result = await WebhookIntakeService(db).ingest(raw_payload, stripe_signature)

    if not result.duplicate:
        pool = getattr(request.app.state, "webhook_pool", None)
        if pool is not None and not pool.submit(result.event_id):
            logger.info(
                "Webhook event not queued, left for sweep",
                extra_data={"webhook_event_id": result.event_id}
            )

    return WebhookAcceptedResponse(
        accepted=result.accepted,
        event_id=result.event_id,
        duplicate=result.duplicate,
    )
