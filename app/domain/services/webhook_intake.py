"""
Webhook Intake - verify, validate and store inbound provider events.

Intake never processes. It stores a pending event and returns, so the
provider gets a fast 200 and processing happens on the worker pool or sweep.
"""
import json
from typing import NamedTuple

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ValidationException, WebhookSignatureError
from app.core.logging import get_logger
from app.domain.services.event_store import EventStore
from app.domain.services.idempotency import derive_idempotency_key

logger = get_logger(__name__)


class IngestResult(NamedTuple):
    accepted: bool
    event_id: int
    duplicate: bool


def verify_signature(raw_payload: bytes, signature_header: str | None) -> dict:
    """Check the Stripe-Signature header and return the decoded event"""
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise WebhookSignatureError("webhook secret is not configured")
    if not signature_header:
        raise WebhookSignatureError("missing signature header")

    try:
        stripe.Webhook.construct_event(
            raw_payload,
            signature_header,
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e) or "signature mismatch") from e
    except ValueError as e:
        raise ValidationException(f"Invalid JSON payload: {e}") from e

    # נשמר כפי שהתקבל, לא אובייקט ה-SDK
    event = json.loads(raw_payload)
    if not isinstance(event, dict):
        raise ValidationException("Event payload must be a JSON object")
    return event


def validate_event_schema(event: dict) -> None:
    """Minimum shape every handler relies on: id, type and data.object"""
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise ValidationException("Event is missing 'id'", field="id")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise ValidationException("Event is missing 'type'", field="type")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise ValidationException("Event is missing 'data.object'", field="data.object")


class WebhookIntakeService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = EventStore(db)

    async def ingest(self, raw_payload: bytes, signature_header: str | None) -> IngestResult:
        """
        Verify and store one delivery.

        Raises:
            WebhookSignatureError: bad or missing signature
            ValidationException: payload is not a well-formed event
        """
        event = verify_signature(raw_payload, signature_header)
        validate_event_schema(event)

        result = await self.store.store_event(
            provider_event_id=event["id"],
            event_type=event["type"],
            payload=event,
            idempotency_key=derive_idempotency_key(event["type"], event),
        )

        logger.info(
            "Webhook event received",
            extra_data={
                "provider_event_id": event["id"],
                "type": event["type"],
                "webhook_event_id": result.event.id,
                "duplicate": not result.created,
            }
        )
        return IngestResult(accepted=True, event_id=result.event.id, duplicate=not result.created)
