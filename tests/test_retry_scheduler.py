"""
Tests for backoff, error classification and the bounded sweep
"""
import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
import stripe
from hypothesis import given, strategies as st

from app.core.exceptions import (
    CircuitBreakerOpenError,
    PaymentGatewayError,
    UnknownStrategyError,
    ValidationException,
)
from app.domain.services.retry_scheduler import RetryScheduler, is_retryable_error, next_retry_time

NOW = datetime(2026, 1, 1, 12, 0, 0)
DELAYS = [1, 5, 15, 60, 240]


class TestNextRetryTime:

    @pytest.mark.unit
    @pytest.mark.parametrize("attempts,minutes", [(0, 1), (1, 5), (2, 15), (3, 60), (4, 240)])
    def test_table_lookup(self, attempts, minutes):
        assert next_retry_time(attempts, delays=DELAYS, now=NOW) == NOW + timedelta(minutes=minutes)

    @pytest.mark.unit
    @given(attempts=st.integers(min_value=-100, max_value=10_000))
    def test_clamped_to_table_bounds(self, attempts):
        result = next_retry_time(attempts, delays=DELAYS, now=NOW)

        assert NOW + timedelta(minutes=1) <= result <= NOW + timedelta(minutes=240)
        if attempts >= len(DELAYS):
            assert result == NOW + timedelta(minutes=240)
        if attempts <= 0:
            assert result == NOW + timedelta(minutes=1)

    @pytest.mark.unit
    @given(a=st.integers(min_value=0, max_value=50), b=st.integers(min_value=0, max_value=50))
    def test_monotonic_in_attempts(self, a, b):
        low, high = sorted((a, b))
        assert next_retry_time(low, delays=DELAYS, now=NOW) <= next_retry_time(high, delays=DELAYS, now=NOW)


class TestIsRetryableError:

    @pytest.mark.unit
    def test_validation_is_permanent(self):
        assert not is_retryable_error(ValidationException("bad"))

    @pytest.mark.unit
    def test_unknown_strategy_is_permanent(self):
        assert not is_retryable_error(UnknownStrategyError("vip", ["standard"]))

    @pytest.mark.unit
    def test_open_circuit_is_transient(self):
        assert is_retryable_error(CircuitBreakerOpenError("stripe", 30.0))

    @pytest.mark.unit
    def test_gateway_error_uses_its_flag(self):
        assert not is_retryable_error(PaymentGatewayError("pay_invoice", "declined", retryable=False))
        assert is_retryable_error(PaymentGatewayError("pay_invoice", "api down", retryable=True))

    @pytest.mark.unit
    def test_stripe_client_errors_are_permanent(self):
        assert not is_retryable_error(stripe.InvalidRequestError("No such invoice", "id"))
        assert is_retryable_error(stripe.APIConnectionError("connection reset"))

    @pytest.mark.unit
    def test_http_status_errors(self):
        request = httpx.Request("POST", "https://email.test/send")
        client_error = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(422, request=request))
        server_error = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(503, request=request))

        assert not is_retryable_error(client_error)
        assert is_retryable_error(server_error)

    @pytest.mark.unit
    def test_unknown_exception_is_retried(self):
        assert is_retryable_error(RuntimeError("bug"))
        assert is_retryable_error(ConnectionResetError())


class TestRetryScheduler:

    async def test_sweep_stops_when_nothing_is_eligible(self):
        queue = [1, 2, 3]
        processed = []

        async def claim_next():
            return queue.pop(0) if queue else None

        async def process(event_id):
            processed.append(event_id)

        counts = await RetryScheduler(claim_next, process, concurrency=2).run_sweep(max_claims=10)

        assert counts == {"claimed": 3, "processed": 3, "errors": 0}
        assert sorted(processed) == [1, 2, 3]

    async def test_concurrency_ceiling_is_respected(self):
        queue = list(range(20))

        async def claim_next():
            return queue.pop(0) if queue else None

        async def process(event_id):
            await asyncio.sleep(0.01)

        scheduler = RetryScheduler(claim_next, process, concurrency=3)
        counts = await scheduler.run_sweep(max_claims=100)

        assert counts["processed"] == 20
        assert scheduler.max_in_flight <= 3
        assert scheduler.in_flight == 0

    async def test_max_claims_limits_the_sweep(self):
        async def claim_next():
            return 1

        async def process(event_id):
            return None

        counts = await RetryScheduler(claim_next, process, concurrency=2).run_sweep(max_claims=5)

        assert counts["claimed"] == 5

    async def test_one_failing_item_does_not_stop_the_sweep(self):
        queue = [1, 2, 3]

        async def claim_next():
            return queue.pop(0) if queue else None

        async def process(event_id):
            if event_id == 2:
                raise RuntimeError("handler crashed")

        counts = await RetryScheduler(claim_next, process, concurrency=1).run_sweep(max_claims=10)

        assert counts == {"claimed": 3, "processed": 2, "errors": 1}

    async def test_stop_prevents_new_claims(self):
        claims = []
        scheduler = None

        async def claim_next():
            claims.append(1)
            if len(claims) == 2:
                scheduler.stop()
            return len(claims)

        async def process(event_id):
            return None

        scheduler = RetryScheduler(claim_next, process, concurrency=1)
        counts = await scheduler.run_sweep(max_claims=100)

        assert counts["claimed"] == 2
