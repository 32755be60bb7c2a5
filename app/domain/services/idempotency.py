"""
Idempotency Ledger

A webhook event can be delivered many times, under different provider event ids,
for the same logical change. The ledger keys effects by a logical identity
(canonical type + object id + state discriminator) rather than by delivery.
"""
import hashlib
import json
from datetime import timedelta
from typing import Any

from sqlalchemy import select, delete as sa_delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.logging import get_logger
from app.db.models.webhook_idempotency import IdempotencyRecord

logger = get_logger(__name__)

# סוגי אירועים שמתארים את אותו שינוי לוגי
_CANONICAL_TYPES = {
    "invoice.paid": "invoice.payment_succeeded",
}


def canonical_event_type(event_type: str) -> str:
    return _CANONICAL_TYPES.get(event_type, event_type)


def _ref_id(value: Any) -> Any:
    """Stripe sends references either as an id or as an expanded object"""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _discriminator(event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    """State fields that make two deliveries for the same object distinct changes"""
    if event_type == "customer.subscription.updated":
        return {
            "status": obj.get("status"),
            "current_period_start": obj.get("current_period_start"),
            "current_period_end": obj.get("current_period_end"),
            "cancel_at_period_end": obj.get("cancel_at_period_end"),
            "canceled_at": obj.get("canceled_at"),
            "ended_at": obj.get("ended_at"),
            "pause_collection": obj.get("pause_collection"),
        }
    if event_type == "invoice.payment_failed":
        return {"attempt_count": obj.get("attempt_count")}
    if event_type == "charge.refunded":
        return {"amount_refunded": obj.get("amount_refunded")}
    if event_type == "customer.updated":
        return {
            "email": obj.get("email"),
            "name": obj.get("name"),
            "default_payment_method": _ref_id(
                (obj.get("invoice_settings") or {}).get("default_payment_method")
            ),
        }
    if event_type == "payment_intent.payment_failed":
        # כל אישור שנכשל הוא ניסיון חיוב נפרד
        error = obj.get("last_payment_error") or {}
        return {
            "latest_charge": _ref_id(obj.get("latest_charge")),
            "charge": _ref_id(error.get("charge")),
            "code": error.get("code"),
            "decline_code": error.get("decline_code"),
        }
    return {}


def derive_idempotency_key(event_type: str, payload: dict[str, Any]) -> str:
    """
    Derive the logical idempotency key for an event payload.

    Falls back to the provider event id when the payload carries no object id,
    so such events are deduplicated per delivery only.
    """
    canonical = canonical_event_type(event_type)
    obj = (payload.get("data") or {}).get("object") or {}
    object_id = obj.get("id") if isinstance(obj, dict) else None

    if object_id:
        material = {
            "type": canonical,
            "object_id": object_id,
            "state": _discriminator(canonical, obj),
        }
    else:
        material = {"type": canonical, "event_id": payload.get("id")}

    encoded = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class IdempotencyLedger:
    """Reads and writes ledger rows inside the caller's transaction"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_processed(self, idempotency_key: str) -> bool:
        result = await self.db.execute(
            select(IdempotencyRecord.idempotency_key).where(
                IdempotencyRecord.idempotency_key == idempotency_key
            )
        )
        return result.scalar_one_or_none() is not None

    async def record(self, idempotency_key: str, event_type: str) -> IdempotencyRecord:
        """Add a ledger row. Not committed here, the caller owns the transaction."""
        record = IdempotencyRecord(
            idempotency_key=idempotency_key,
            event_type=event_type,
            processed_at=utcnow(),
        )
        self.db.add(record)
        return record

    async def cleanup(self, older_than_days: int) -> int:
        """Delete ledger rows older than the retention window"""
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(
            sa_delete(IdempotencyRecord).where(IdempotencyRecord.processed_at < cutoff)
        )
        await self.db.commit()

        deleted = result.rowcount or 0
        if deleted:
            logger.info(
                "Cleaned up idempotency records",
                extra_data={"deleted": deleted, "older_than_days": older_than_days}
            )
        return deleted
