"""
Webhook Type Handlers

A closed registry maps provider event types to handlers. Handlers read the
current state carried by the event and apply their effect to the local
mirror tables; they never assume events arrive in order.

The ledger check and write live in HandlerRegistry.dispatch so that no
handler can forget them. Nothing here commits: the processor commits the
effect, the ledger row and the event status together.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import from_timestamp
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.models.customer import Customer
from app.db.models.subscription import Subscription, SubscriptionStatus
from app.db.models.transaction import BillingTransaction, TransactionType, TransactionStatus
from app.db.models.webhook_event import WebhookEvent, WebhookOutcome
from app.domain.services.dunning_service import DunningService
from app.domain.services.idempotency import IdempotencyLedger, canonical_event_type

logger = get_logger(__name__)


@dataclass
class HandlerContext:
    db: AsyncSession
    event: WebhookEvent
    idempotency_key: str
    dunning: DunningService
    now: datetime

    @property
    def data_object(self) -> dict[str, Any]:
        return self.event.payload["data"]["object"]


Handler = Callable[[HandlerContext, dict[str, Any]], Awaitable[None]]


# ==================== helpers ====================

def _to_amount(minor_units: int | None) -> Decimal:
    """Provider amounts are integers in the currency's minor unit"""
    return (Decimal(minor_units or 0) / 100).quantize(Decimal("0.01"))


def _ref(value: Any) -> str | None:
    """A reference may be a bare id or an expanded object"""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _require(obj: dict[str, Any], field: str) -> Any:
    value = obj.get(field)
    if value in (None, ""):
        raise ValidationException(f"Event object is missing '{field}'", field=field)
    return value


async def _find_customer(db: AsyncSession, stripe_customer_id: str | None) -> Customer | None:
    if not stripe_customer_id:
        return None
    result = await db.execute(
        select(Customer).where(Customer.stripe_customer_id == stripe_customer_id)
    )
    return result.scalar_one_or_none()


async def _ensure_customer(
    db: AsyncSession,
    stripe_customer_id: str,
    *,
    email: str | None = None,
    name: str | None = None,
) -> Customer:
    """Find the customer mirror, creating a minimal one when the provider knows it and we do not"""
    customer = await _find_customer(db, stripe_customer_id)
    if customer is None:
        customer = Customer(stripe_customer_id=stripe_customer_id, email=email, name=name)
        db.add(customer)
        await db.flush()
    else:
        customer.email = customer.email or email
        customer.name = customer.name or name
    return customer


async def _find_subscription(db: AsyncSession, stripe_subscription_id: str | None) -> Subscription | None:
    if not stripe_subscription_id:
        return None
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Older API versions put the subscription on the invoice, newer ones under parent"""
    direct = _ref(invoice.get("subscription"))
    if direct:
        return direct
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


async def _add_transaction(
    ctx: HandlerContext,
    *,
    type: TransactionType,
    status: TransactionStatus,
    amount: Decimal,
    currency: str | None,
    stripe_customer_id: str | None,
    **fields: Any,
) -> BillingTransaction:
    customer = await _find_customer(ctx.db, stripe_customer_id)
    transaction = BillingTransaction(
        type=type,
        status=status,
        amount=amount,
        currency=(currency or "usd").lower(),
        customer_id=customer.id if customer else None,
        stripe_customer_id=stripe_customer_id,
        idempotency_key=ctx.idempotency_key,
        processed_at=ctx.now,
        **fields,
    )
    ctx.db.add(transaction)
    return transaction


# ==================== payment intents ====================

async def handle_payment_intent_succeeded(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    _require(obj, "id")
    await _add_transaction(
        ctx,
        type=TransactionType.CHARGE,
        status=TransactionStatus.SUCCEEDED,
        amount=_to_amount(obj.get("amount_received") or obj.get("amount")),
        currency=obj.get("currency"),
        stripe_customer_id=_ref(obj.get("customer")),
        stripe_payment_intent_id=obj["id"],
        stripe_charge_id=_ref(obj.get("latest_charge")),
        extra_metadata=obj.get("metadata") or None,
    )


async def handle_payment_intent_failed(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    _require(obj, "id")
    error = obj.get("last_payment_error") or {}
    await _add_transaction(
        ctx,
        type=TransactionType.CHARGE,
        status=TransactionStatus.FAILED,
        amount=_to_amount(obj.get("amount")),
        currency=obj.get("currency"),
        stripe_customer_id=_ref(obj.get("customer")),
        stripe_payment_intent_id=obj["id"],
        failure_code=error.get("decline_code") or error.get("code"),
        failure_message=error.get("message"),
        extra_metadata=obj.get("metadata") or None,
    )


# ==================== subscriptions ====================

async def handle_subscription_upsert(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    stripe_subscription_id = _require(obj, "id")
    subscription = await _find_subscription(ctx.db, stripe_subscription_id)

    if subscription is not None and subscription.has_ended:
        # עדכון מאוחר למנוי שכבר נמחק
        logger.info(
            "Ignoring update for ended subscription",
            extra_data={"subscription_id": subscription.id, "provider_status": obj.get("status")}
        )
        return

    if subscription is None:
        customer = await _ensure_customer(ctx.db, _require(obj, "customer"))
        subscription = Subscription(
            customer_id=customer.id,
            stripe_subscription_id=stripe_subscription_id,
        )
        ctx.db.add(subscription)

    subscription.status = obj.get("status") or SubscriptionStatus.ACTIVE.value
    subscription.current_period_start = from_timestamp(obj.get("current_period_start"))
    subscription.current_period_end = from_timestamp(obj.get("current_period_end"))
    subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    subscription.canceled_at = from_timestamp(obj.get("canceled_at"))
    subscription.ended_at = from_timestamp(obj.get("ended_at"))
    subscription.pause_collection = obj.get("pause_collection")
    subscription.updated_at = ctx.now


async def handle_subscription_deleted(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    stripe_subscription_id = _require(obj, "id")
    subscription = await _find_subscription(ctx.db, stripe_subscription_id)
    if subscription is None:
        customer = await _ensure_customer(ctx.db, _require(obj, "customer"))
        subscription = Subscription(
            customer_id=customer.id,
            stripe_subscription_id=stripe_subscription_id,
        )
        ctx.db.add(subscription)

    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.canceled_at = from_timestamp(obj.get("canceled_at")) or subscription.canceled_at or ctx.now
    subscription.ended_at = from_timestamp(obj.get("ended_at")) or ctx.now
    subscription.updated_at = ctx.now


# ==================== invoices ====================

async def handle_invoice_payment_succeeded(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    invoice_id = _require(obj, "id")
    subscription = await _find_subscription(ctx.db, _invoice_subscription_id(obj))
    await _add_transaction(
        ctx,
        type=TransactionType.SUBSCRIPTION_PAYMENT,
        status=TransactionStatus.SUCCEEDED,
        amount=_to_amount(obj.get("amount_paid")),
        currency=obj.get("currency"),
        stripe_customer_id=_ref(obj.get("customer")),
        subscription_id=subscription.id if subscription else None,
        stripe_invoice_id=invoice_id,
        stripe_payment_intent_id=_ref(obj.get("payment_intent")),
        stripe_charge_id=_ref(obj.get("charge")),
    )
    await ctx.dunning.resolve_for_invoice(invoice_id, now=ctx.now)


async def handle_invoice_payment_failed(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    invoice_id = _require(obj, "id")
    customer = await _ensure_customer(
        ctx.db,
        _ref(_require(obj, "customer")),
        email=obj.get("customer_email"),
        name=obj.get("customer_name"),
    )
    subscription = await _find_subscription(ctx.db, _invoice_subscription_id(obj))

    await ctx.dunning.create_dunning_event(
        customer=customer,
        invoice_id=invoice_id,
        amount=_to_amount(obj.get("amount_due")),
        currency=obj.get("currency") or "usd",
        subscription=subscription,
        attempt_count=int(obj.get("attempt_count") or 0),
        now=ctx.now,
    )


# ==================== customers ====================

async def handle_customer_upsert(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    stripe_customer_id = _require(obj, "id")
    customer = await _find_customer(ctx.db, stripe_customer_id)
    if customer is None:
        customer = Customer(stripe_customer_id=stripe_customer_id)
        ctx.db.add(customer)

    customer.email = obj.get("email")
    customer.name = obj.get("name")
    default_pm = _ref((obj.get("invoice_settings") or {}).get("default_payment_method"))
    if default_pm:
        customer.default_payment_method_id = default_pm
    customer.updated_at = ctx.now


# ==================== charges ====================

async def handle_charge_refunded(ctx: HandlerContext, obj: dict[str, Any]) -> None:
    charge_id = _require(obj, "id")
    await _add_transaction(
        ctx,
        type=TransactionType.REFUND,
        status=TransactionStatus.SUCCEEDED,
        amount=_to_amount(obj.get("amount_refunded")),
        currency=obj.get("currency"),
        stripe_customer_id=_ref(obj.get("customer")),
        stripe_charge_id=charge_id,
        stripe_payment_intent_id=_ref(obj.get("payment_intent")),
        stripe_invoice_id=_ref(obj.get("invoice")),
    )


HANDLERS: dict[str, Handler] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "customer.subscription.created": handle_subscription_upsert,
    "customer.subscription.updated": handle_subscription_upsert,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.paid": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.created": handle_customer_upsert,
    "customer.updated": handle_customer_upsert,
    "charge.refunded": handle_charge_refunded,
}


class HandlerRegistry:
    """Closed mapping from event type to handler"""

    def __init__(self, handlers: dict[str, Handler] | None = None):
        self._handlers = dict(HANDLERS if handlers is None else handlers)

    def get(self, event_type: str) -> Handler | None:
        return self._handlers.get(event_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, ctx: HandlerContext) -> WebhookOutcome:
        """
        Apply the event's effect at most once per idempotency key.

        Returns UNHANDLED for types without a handler, DUPLICATE when the key is
        already in the ledger, HANDLED after the effect and ledger row are added.
        """
        event_type = ctx.event.event_type
        handler = self.get(event_type)
        if handler is None:
            logger.warning("No handler for webhook event type", extra_data={"type": event_type})
            return WebhookOutcome.UNHANDLED

        ledger = IdempotencyLedger(ctx.db)
        if await ledger.is_processed(ctx.idempotency_key):
            logger.info(
                "Webhook effect already applied",
                extra_data={"type": event_type, "idempotency_key": ctx.idempotency_key}
            )
            return WebhookOutcome.DUPLICATE

        await handler(ctx, ctx.data_object)
        await ledger.record(ctx.idempotency_key, canonical_event_type(event_type))
        return WebhookOutcome.HANDLED
