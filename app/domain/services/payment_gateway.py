"""
Payment Gateway Client - thin async wrapper over the stripe SDK.

The SDK is synchronous, so each call runs in a worker thread under
asyncio.wait_for and behind the payment gateway circuit breaker.
"""
import asyncio
from functools import partial
from typing import Any, Callable

import stripe

from app.core.circuit_breaker import get_payment_gateway_circuit_breaker
from app.core.config import settings
from app.core.exceptions import PaymentGatewayError, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)


class PaymentGateway:
    """Invoice, payment method and subscription operations used by dunning"""

    def __init__(self, api_key: str | None = None, timeout_seconds: float | None = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_API_KEY
        self.timeout_seconds = timeout_seconds or settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self.circuit_breaker = get_payment_gateway_circuit_breaker()

    async def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        async def _invoke():
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(partial(func, *args, api_key=self.api_key, **kwargs)),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise ServiceTimeoutError("stripe", self.timeout_seconds)
            except stripe.StripeError as e:
                raise PaymentGatewayError.from_stripe_error(operation, e) from e

        try:
            return await self.circuit_breaker.execute(_invoke)
        except PaymentGatewayError as e:
            logger.warning(
                "Payment gateway call failed",
                extra_data={
                    "operation": operation,
                    "http_status": e.http_status,
                    "provider_code": e.provider_code,
                    "retryable": e.retryable,
                }
            )
            raise

    async def retrieve_invoice(self, invoice_id: str) -> Any:
        return await self._call("retrieve_invoice", stripe.Invoice.retrieve, invoice_id)

    async def pay_invoice(self, invoice_id: str, payment_method: str | None = None) -> Any:
        params = {"payment_method": payment_method} if payment_method else {}
        return await self._call("pay_invoice", stripe.Invoice.pay, invoice_id, **params)

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> Any:
        return await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )

    async def update_subscription(self, subscription_id: str, **fields: Any) -> Any:
        return await self._call(
            "update_subscription", stripe.Subscription.modify, subscription_id, **fields
        )

    async def cancel_subscription(self, subscription_id: str) -> Any:
        return await self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)
