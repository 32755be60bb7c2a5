"""
Dunning Service - payment recovery for failed recurring charges.

A DunningEvent is created when an invoice payment fails. The periodic sweep
retries the payment on the strategy's schedule and escalates on repeated
failure: restrict access, pause the subscription, then cancel it.

Every advance runs in one transaction. The claim (total_recovery_attempts += 1
guarded on status and next_retry_at) keeps overlapping sweeps from retrying
the same invoice twice.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    ErrorCode,
    InvalidDunningTransitionError,
    NotFoundException,
    PaymentGatewayError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger, bind_log_context, log_async_operation
from app.db.compat import seconds_between
from app.db.models.billing_audit_log import BillingAuditLog, BillingAuditAction
from app.db.models.customer import Customer, AccountStatus
from app.db.models.dunning_event import (
    DunningEvent,
    DunningStatus,
    CancellationReason,
    OPEN_DUNNING_STATUSES,
)
from app.db.models.subscription import Subscription, SubscriptionStatus
from app.domain.services.email import EmailService
from app.domain.services.payment_gateway import PaymentGateway
from app.domain.services.strategy_registry import (
    DunningStrategy,
    StrategyRegistry,
    get_strategy_registry,
)

logger = get_logger(__name__)

_SECONDS_PER_DAY = 86400


def _field(obj: Any, name: str) -> Any:
    """Read a field from a stripe object or a plain dict"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _object_id(value: Any) -> str | None:
    """Ids may arrive expanded ({"id": ...}) or as a bare string"""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


@dataclass
class PaymentAttempt:
    outcome: str            # paid / voided / declined / setup_error
    error: str | None = None


class DunningService:
    """Dunning lifecycle: creation, sweep, escalation and operator actions"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway | None = None,
        email_service: EmailService | None = None,
        strategies: StrategyRegistry | None = None,
    ):
        self.db = db
        self.gateway = gateway or PaymentGateway()
        self.email_service = email_service or EmailService()
        self.strategies = strategies or get_strategy_registry()

    # ==================== lookups ====================

    async def _get_event(self, dunning_event_id: int, *, fresh: bool = False) -> DunningEvent:
        query = select(DunningEvent).where(DunningEvent.id == dunning_event_id)
        if fresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        event = result.scalar_one_or_none()
        if event is None:
            raise NotFoundException("DunningEvent", dunning_event_id, ErrorCode.DUNNING_EVENT_NOT_FOUND)
        return event

    async def _get_customer(self, customer_id: int) -> Customer | None:
        result = await self.db.execute(select(Customer).where(Customer.id == customer_id))
        return result.scalar_one_or_none()

    async def _get_subscription(self, subscription_id: int | None) -> Subscription | None:
        if subscription_id is None:
            return None
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_open_event_for_invoice(self, invoice_id: str) -> DunningEvent | None:
        result = await self.db.execute(
            select(DunningEvent)
            .where(
                DunningEvent.invoice_id == invoice_id,
                DunningEvent.status.in_(OPEN_DUNNING_STATUSES),
            )
            .order_by(DunningEvent.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ==================== creation ====================

    async def create_dunning_event(
        self,
        customer: Customer,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        subscription: Subscription | None = None,
        attempt_count: int = 0,
        strategy_name: str | None = None,
        now: datetime | None = None,
    ) -> DunningEvent:
        """
        Open a dunning campaign for a failed invoice.

        Idempotent per invoice: an existing active or paused event is returned
        as is. Runs inside the caller's transaction and does not commit.
        """
        existing = await self.get_open_event_for_invoice(invoice_id)
        if existing is not None:
            logger.info(
                "Dunning event already open for invoice",
                extra_data={"dunning_event_id": existing.id, "invoice_id": invoice_id}
            )
            return existing

        strategy = (
            self.strategies.get(strategy_name) if strategy_name
            else self.strategies.for_customer(customer)
        )
        now = now or utcnow()

        event = DunningEvent(
            customer_id=customer.id,
            subscription_id=subscription.id if subscription else None,
            invoice_id=invoice_id,
            amount=amount,
            currency=(currency or "usd").lower(),
            attempt_count=attempt_count,
            total_recovery_attempts=0,
            status=DunningStatus.ACTIVE,
            strategy_name=strategy.name,
            strategy_config=strategy.snapshot(),
            next_retry_at=now + timedelta(days=strategy.interval_days(0)),
            emails_sent=[],
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
        except IntegrityError:
            # יצירה מקבילה לאותה חשבונית ניצחה ב-partial unique index
            existing = await self.get_open_event_for_invoice(invoice_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "Dunning event created",
            extra_data={
                "dunning_event_id": event.id,
                "customer_id": customer.id,
                "invoice_id": invoice_id,
                "strategy": strategy.name,
                "next_retry_at": event.next_retry_at.isoformat(),
            }
        )
        await self._send_email(event, customer, strategy, "initial", now)
        return event

    # ==================== sweep ====================

    @log_async_operation("dunning_sweep")
    async def process_due(self, now: datetime | None = None, batch_size: int | None = None) -> dict:
        """Advance every due active event. One failing row never stops the sweep."""
        now = now or utcnow()
        batch_size = batch_size or settings.DUNNING_BATCH_SIZE

        result = await self.db.execute(
            select(DunningEvent.id)
            .where(
                DunningEvent.status == DunningStatus.ACTIVE,
                DunningEvent.next_retry_at <= now,
            )
            .order_by(DunningEvent.next_retry_at.asc(), DunningEvent.id.asc())
            .limit(batch_size)
        )
        due_ids = list(result.scalars().all())

        counts = {"processed": 0, "recovered": 0, "failed": 0, "cancelled": 0, "skipped": 0, "errors": 0}
        for dunning_event_id in due_ids:
            try:
                outcome = await self.advance(dunning_event_id, now=now)
            except CircuitBreakerOpenError as e:
                await self.db.rollback()
                counts["errors"] += 1
                logger.warning(
                    "Payment gateway circuit open, dunning attempt not counted",
                    extra_data={
                        "dunning_event_id": dunning_event_id,
                        "retry_after_seconds": e.details.get("retry_after_seconds"),
                    }
                )
                continue
            except Exception as e:
                await self.db.rollback()
                counts["errors"] += 1
                logger.error(
                    f"Error advancing dunning event {dunning_event_id}: {e}",
                    extra_data={"dunning_event_id": dunning_event_id},
                    exc_info=True
                )
                continue

            if outcome == "skipped":
                counts["skipped"] += 1
                continue
            counts["processed"] += 1
            if outcome == "recovered":
                counts["recovered"] += 1
            elif outcome == "cancelled":
                counts["cancelled"] += 1
                counts["failed"] += 1
            else:
                counts["failed"] += 1
        return counts

    async def advance(self, dunning_event_id: int, now: datetime | None = None) -> str:
        """
        Run one recovery attempt for a due event and commit.

        Returns recovered, retry_scheduled, cancelled, failed or skipped.
        """
        now = now or utcnow()

        claimed = await self.db.execute(
            update(DunningEvent)
            .where(
                DunningEvent.id == dunning_event_id,
                DunningEvent.status == DunningStatus.ACTIVE,
                DunningEvent.next_retry_at <= now,
            )
            .values(
                total_recovery_attempts=DunningEvent.total_recovery_attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            return "skipped"

        event = await self._get_event(dunning_event_id, fresh=True)
        with bind_log_context(dunning_event_id=event.id, invoice_id=event.invoice_id):
            outcome = await self._advance_claimed(event, now)
            await self.db.commit()
        return outcome

    async def _advance_claimed(self, event: DunningEvent, now: datetime) -> str:
        strategy = DunningStrategy.from_snapshot(event.strategy_config)

        customer = await self._get_customer(event.customer_id)
        if customer is None:
            self._mark_failed(event, "customer_not_found", None, now)
            return "failed"
        subscription = await self._get_subscription(event.subscription_id)

        attempt = await self._attempt_payment(event, customer, subscription)

        if attempt.outcome == "paid":
            await self._mark_recovered(event, customer, subscription, strategy, now)
            return "recovered"

        if attempt.outcome == "voided":
            self._close(event, CancellationReason.INVOICE_VOIDED, now)
            logger.info("Invoice voided, dunning cancelled")
            return "cancelled"

        if attempt.outcome == "setup_error":
            self._mark_failed(event, "resource_missing", attempt.error, now)
            return "failed"

        event.last_error = attempt.error
        return await self._escalate(event, customer, subscription, strategy, now)

    async def _attempt_payment(
        self,
        event: DunningEvent,
        customer: Customer,
        subscription: Subscription | None,
    ) -> PaymentAttempt:
        """
        Retrieve the invoice and try to collect it.

        Gateway rejections and timeouts become a declined attempt. An open
        circuit propagates so the whole advance rolls back uncounted.
        """
        try:
            invoice = await self.gateway.retrieve_invoice(event.invoice_id)
            status = _field(invoice, "status")
            if status == "paid":
                return PaymentAttempt("paid")
            if status in ("void", "uncollectible"):
                return PaymentAttempt("voided")

            payment_method = customer.default_payment_method_id
            stripe_subscription_id = _object_id(_field(invoice, "subscription")) or (
                subscription.stripe_subscription_id if subscription else None
            )
            if payment_method and stripe_subscription_id:
                await self.gateway.update_subscription(
                    stripe_subscription_id, default_payment_method=payment_method
                )

            paid = await self.gateway.pay_invoice(event.invoice_id, payment_method=payment_method)
            paid_status = _field(paid, "status")
            if paid_status == "paid":
                return PaymentAttempt("paid")
            return PaymentAttempt("declined", f"invoice status after pay: {paid_status}")
        except CircuitBreakerOpenError:
            raise
        except PaymentGatewayError as e:
            if not e.retryable and e.provider_code == "resource_missing":
                return PaymentAttempt("setup_error", e.message)
            return PaymentAttempt("declined", e.message)
        except ServiceTimeoutError as e:
            return PaymentAttempt("declined", e.message)

    async def _escalate(
        self,
        event: DunningEvent,
        customer: Customer,
        subscription: Subscription | None,
        strategy: DunningStrategy,
        now: datetime,
    ) -> str:
        days = int((now - event.created_at).total_seconds() // _SECONDS_PER_DAY)

        if (
            strategy.restrict_access_after_days is not None
            and days >= strategy.restrict_access_after_days
        ):
            self._restrict_access(customer, event, now)

        if (
            strategy.pause_subscription_after_days is not None
            and days >= strategy.pause_subscription_after_days
            and subscription is not None
        ):
            await self._pause_subscription(subscription, event, now)

        if (
            strategy.cancel_subscription_after_days is not None
            and days >= strategy.cancel_subscription_after_days
        ):
            await self._terminate(event, customer, subscription, strategy, now)
            return "cancelled"

        if event.total_recovery_attempts < strategy.max_attempts:
            interval = strategy.interval_days(event.total_recovery_attempts)
            event.next_retry_at = now + timedelta(days=interval)
            event.updated_at = now
            logger.info(
                "Dunning retry failed, next attempt scheduled",
                extra_data={
                    "attempt": event.total_recovery_attempts,
                    "days_since_start": days,
                    "next_retry_at": event.next_retry_at.isoformat(),
                    "error": event.last_error,
                }
            )
            await self._send_email(event, customer, strategy, "reminder", now)
            return "retry_scheduled"

        await self._terminate(event, customer, subscription, strategy, now)
        return "cancelled"

    # ==================== state changes ====================

    def _close(self, event: DunningEvent, reason: CancellationReason, now: datetime) -> None:
        if reason == CancellationReason.CUSTOMER_PAID:
            event.status = DunningStatus.RECOVERED
            event.recovered_at = now
        else:
            event.status = DunningStatus.CANCELLED
            event.cancelled_at = now
        event.cancellation_reason = reason.value
        event.next_retry_at = None
        event.updated_at = now

    def _mark_failed(self, event: DunningEvent, reason: str, error: str | None, now: datetime) -> None:
        event.status = DunningStatus.FAILED
        event.failure_reason = reason
        event.last_error = error
        event.next_retry_at = None
        event.updated_at = now
        logger.warning(
            "Dunning event failed",
            extra_data={"dunning_event_id": event.id, "reason": reason, "error": error}
        )

    async def _mark_recovered(
        self,
        event: DunningEvent,
        customer: Customer,
        subscription: Subscription | None,
        strategy: DunningStrategy,
        now: datetime,
    ) -> None:
        event.status = DunningStatus.RECOVERED
        event.recovered_at = now
        event.next_retry_at = None
        event.last_error = None
        event.updated_at = now

        if subscription is not None and subscription.status in (
            SubscriptionStatus.PAST_DUE.value,
            SubscriptionStatus.PAUSED.value,
        ):
            await self._resume_subscription(subscription, event, now)

        logger.info(
            "Payment recovered",
            extra_data={
                "dunning_event_id": event.id,
                "attempt": event.total_recovery_attempts,
                "amount": str(event.amount),
            }
        )
        await self._send_email(event, customer, strategy, "success", now)

    async def _terminate(
        self,
        event: DunningEvent,
        customer: Customer | None,
        subscription: Subscription | None,
        strategy: DunningStrategy,
        now: datetime,
    ) -> None:
        """Give up: cancel the event and the subscription, send the final notice once"""
        self._close(event, CancellationReason.MAX_ATTEMPTS_REACHED, now)
        if subscription is not None and not subscription.has_ended:
            await self._cancel_subscription(subscription, event, now)

        logger.warning(
            "Dunning exhausted, event cancelled",
            extra_data={
                "dunning_event_id": event.id,
                "attempts": event.total_recovery_attempts,
                "subscription_id": subscription.id if subscription else None,
            }
        )
        if customer is not None:
            await self._send_email(event, customer, strategy, "final_notice", now)

    def _audit(self, entity_type: str, entity_id: int, action: BillingAuditAction, details: dict) -> None:
        self.db.add(BillingAuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_type="system",
            details=details,
        ))

    def _restrict_access(self, customer: Customer, event: DunningEvent, now: datetime) -> None:
        if customer.is_restricted:
            return
        customer.account_status = AccountStatus.RESTRICTED.value
        customer.account_status_reason = "payment_failure"
        customer.updated_at = now
        self._audit(
            "customer", customer.id, BillingAuditAction.ACCESS_RESTRICTED,
            {"reason": "dunning_policy", "dunning_event_id": event.id},
        )
        logger.info("Customer access restricted", extra_data={"customer_id": customer.id})

    async def _gateway_escalation(self, operation: str, coro) -> None:
        """
        Run an escalation call at the gateway.

        A rejection (already cancelled, missing resource) is logged and the local
        state change still happens. Transient errors propagate and roll back.
        """
        try:
            await coro
        except PaymentGatewayError as e:
            if e.retryable:
                raise
            logger.warning(
                f"Gateway rejected {operation}, applying local change only",
                extra_data={"operation": operation, "provider_code": e.provider_code, "error": e.message}
            )

    async def _pause_subscription(self, subscription: Subscription, event: DunningEvent, now: datetime) -> None:
        if subscription.status == SubscriptionStatus.PAUSED.value or subscription.has_ended:
            return
        await self._gateway_escalation(
            "pause_subscription",
            self.gateway.update_subscription(
                subscription.stripe_subscription_id,
                pause_collection={"behavior": "mark_uncollectible"},
            ),
        )
        subscription.status = SubscriptionStatus.PAUSED.value
        subscription.pause_collection = {"behavior": "mark_uncollectible", "reason": "dunning"}
        subscription.updated_at = now
        self._audit(
            "subscription", subscription.id, BillingAuditAction.SUBSCRIPTION_PAUSED,
            {"reason": "dunning_policy", "dunning_event_id": event.id},
        )
        logger.info("Subscription paused", extra_data={"subscription_id": subscription.id})

    async def _resume_subscription(self, subscription: Subscription, event: DunningEvent, now: datetime) -> None:
        await self._gateway_escalation(
            "resume_subscription",
            self.gateway.update_subscription(
                subscription.stripe_subscription_id,
                pause_collection="",
            ),
        )
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.pause_collection = None
        subscription.updated_at = now
        self._audit(
            "subscription", subscription.id, BillingAuditAction.SUBSCRIPTION_RESUMED,
            {"reason": "payment_recovered", "dunning_event_id": event.id},
        )

    async def _cancel_subscription(self, subscription: Subscription, event: DunningEvent, now: datetime) -> None:
        await self._gateway_escalation(
            "cancel_subscription",
            self.gateway.cancel_subscription(subscription.stripe_subscription_id),
        )
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = now
        subscription.ended_at = now
        subscription.cancellation_reason = "dunning_failure"
        subscription.updated_at = now
        self._audit(
            "subscription", subscription.id, BillingAuditAction.SUBSCRIPTION_CANCELLED,
            {"reason": "dunning_failure", "dunning_event_id": event.id},
        )

    # ==================== email ====================

    async def _send_email(
        self,
        event: DunningEvent,
        customer: Customer,
        strategy: DunningStrategy,
        email_type: str,
        now: datetime,
    ) -> bool:
        if email_type == "final_notice" and any(
            entry.get("type") == "final_notice" for entry in event.emails_sent or []
        ):
            return False

        template_id = strategy.email_templates.for_type(email_type)
        template_data = {
            "customer_name": customer.name,
            "amount": str(event.amount),
            "currency": event.currency,
            "invoice_id": event.invoice_id,
            "attempt_number": event.total_recovery_attempts,
            "next_retry_date": event.next_retry_at.isoformat() if event.next_retry_at else None,
            "update_payment_link": f"{settings.FRONTEND_URL}/billing/update-payment-method",
        }
        result = await self.email_service.send_templated_email(customer.email, template_id, template_data)
        if not result.success:
            return False

        # השמה מחדש - עמודת JSON רגילה לא עוקבת אחרי שינוי במקום
        event.emails_sent = [
            *(event.emails_sent or []),
            {"type": email_type, "sent_at": now.isoformat(), "template_id": template_id},
        ]
        return True

    # ==================== operator actions ====================

    async def cancel_dunning_event(
        self,
        dunning_event_id: int,
        reason: CancellationReason = CancellationReason.MANUALLY_CANCELLED,
        now: datetime | None = None,
    ) -> DunningEvent:
        """Close an open event. customer_paid closes it as recovered."""
        now = now or utcnow()
        event = await self._get_event(dunning_event_id)
        if event.status not in OPEN_DUNNING_STATUSES:
            target = DunningStatus.RECOVERED if reason == CancellationReason.CUSTOMER_PAID else DunningStatus.CANCELLED
            raise InvalidDunningTransitionError(event.id, event.status.value, target.value)

        if reason == CancellationReason.MAX_ATTEMPTS_REACHED:
            customer = await self._get_customer(event.customer_id)
            subscription = await self._get_subscription(event.subscription_id)
            strategy = DunningStrategy.from_snapshot(event.strategy_config)
            await self._terminate(event, customer, subscription, strategy, now)
        else:
            self._close(event, reason, now)
        await self.db.commit()

        logger.info(
            "Dunning event closed",
            extra_data={"dunning_event_id": event.id, "reason": reason.value, "status": event.status.value}
        )
        return event

    async def resolve_for_invoice(self, invoice_id: str, now: datetime | None = None) -> list[DunningEvent]:
        """
        Close open events for an invoice paid outside the sweep.

        Runs inside the caller's transaction and does not commit.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(DunningEvent).where(
                DunningEvent.invoice_id == invoice_id,
                DunningEvent.status.in_(OPEN_DUNNING_STATUSES),
            )
        )
        events = list(result.scalars().all())
        for event in events:
            self._close(event, CancellationReason.CUSTOMER_PAID, now)
            logger.info(
                "Dunning event resolved by payment",
                extra_data={"dunning_event_id": event.id, "invoice_id": invoice_id}
            )
        return events

    async def pause_dunning_event(self, dunning_event_id: int, now: datetime | None = None) -> DunningEvent:
        event = await self._get_event(dunning_event_id)
        if event.status != DunningStatus.ACTIVE:
            raise InvalidDunningTransitionError(event.id, event.status.value, DunningStatus.PAUSED.value)
        event.status = DunningStatus.PAUSED
        event.updated_at = now or utcnow()
        await self.db.commit()
        logger.info("Dunning event paused", extra_data={"dunning_event_id": event.id})
        return event

    async def resume_dunning_event(self, dunning_event_id: int, now: datetime | None = None) -> DunningEvent:
        now = now or utcnow()
        event = await self._get_event(dunning_event_id)
        if event.status != DunningStatus.PAUSED:
            raise InvalidDunningTransitionError(event.id, event.status.value, DunningStatus.ACTIVE.value)
        event.status = DunningStatus.ACTIVE
        if event.next_retry_at is None:
            event.next_retry_at = now
        event.updated_at = now
        await self.db.commit()
        logger.info("Dunning event resumed", extra_data={"dunning_event_id": event.id})
        return event

    async def update_payment_method(
        self,
        customer_id: int,
        payment_method_id: str,
        now: datetime | None = None,
    ) -> int:
        """
        Attach a new payment method and make the customer's active events due now.

        Returns the number of events rescheduled.
        """
        now = now or utcnow()
        customer = await self._get_customer(customer_id)
        if customer is None:
            raise NotFoundException("Customer", customer_id, ErrorCode.CUSTOMER_NOT_FOUND)

        await self.gateway.attach_payment_method(customer.stripe_customer_id, payment_method_id)
        customer.default_payment_method_id = payment_method_id
        customer.updated_at = now

        result = await self.db.execute(
            update(DunningEvent)
            .where(
                DunningEvent.customer_id == customer_id,
                DunningEvent.status == DunningStatus.ACTIVE,
            )
            .values(next_retry_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        rescheduled = result.rowcount or 0
        logger.info(
            "Payment method updated",
            extra_data={"customer_id": customer_id, "rescheduled_events": rescheduled}
        )
        return rescheduled

    # ==================== reporting ====================

    async def get_customer_history(self, customer_id: int) -> Sequence[DunningEvent]:
        result = await self.db.execute(
            select(DunningEvent)
            .where(DunningEvent.customer_id == customer_id)
            .order_by(DunningEvent.created_at.desc(), DunningEvent.id.desc())
        )
        return result.scalars().all()

    async def get_metrics(self, start: datetime, end: datetime) -> dict:
        """Recovery performance for events created in [start, end]"""
        in_window = (DunningEvent.created_at >= start, DunningEvent.created_at <= end)
        recovered = DunningEvent.status == DunningStatus.RECOVERED
        lost = DunningEvent.status.in_((DunningStatus.FAILED, DunningStatus.CANCELLED))

        overall = (await self.db.execute(
            select(
                func.count(DunningEvent.id),
                func.sum(case((DunningEvent.status == DunningStatus.ACTIVE, 1), else_=0)),
                func.sum(case((recovered, 1), else_=0)),
                func.sum(case((recovered, DunningEvent.amount), else_=0)),
                func.sum(case((lost, DunningEvent.amount), else_=0)),
                func.avg(case(
                    (recovered, seconds_between(DunningEvent.recovered_at, DunningEvent.created_at)),
                    else_=None,
                )),
            ).where(*in_window)
        )).one()
        total, active, recovered_count, revenue_recovered, revenue_lost, avg_seconds = overall
        total = total or 0
        recovered_count = recovered_count or 0

        by_attempt_rows = (await self.db.execute(
            select(
                DunningEvent.total_recovery_attempts,
                func.sum(case((recovered, 1), else_=0)),
                func.count(DunningEvent.id),
            )
            .where(*in_window)
            .group_by(DunningEvent.total_recovery_attempts)
            .order_by(DunningEvent.total_recovery_attempts)
        )).all()

        return {
            "total_events": total,
            "active_events": active or 0,
            "recovery_rate": round(recovered_count / total * 100, 2) if total else 0.0,
            "average_recovery_time_days": round(float(avg_seconds) / _SECONDS_PER_DAY, 2) if avg_seconds else 0.0,
            "revenue_recovered": float(revenue_recovered or 0),
            "revenue_lost": float(revenue_lost or 0),
            "by_attempt": [
                {
                    "attempt_number": attempt,
                    "recovery_count": int(rec or 0),
                    "recovery_rate": round(int(rec or 0) / count * 100, 2) if count else 0.0,
                }
                for attempt, rec, count in by_attempt_rows
            ],
        }
