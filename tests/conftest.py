"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Fake payment gateway and email provider
- Signed Stripe webhook payloads
- Test data factories
"""
# ההגדרות נקראות בזמן import, לכן מגדירים אותן לפני ה-import של app
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy")
os.environ.setdefault("EMAIL_PROVIDER", "console")

import hashlib
import hmac
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

import app.db.models  # noqa: F401
from app.core.config import settings
from app.core.exceptions import PaymentGatewayError
from app.db.database import Base, get_db
from app.db.models.customer import Customer
from app.db.models.dunning_event import DunningEvent
from app.db.models.subscription import Subscription, SubscriptionStatus
from app.domain.services.dunning_service import DunningService
from app.domain.services.email import EmailService
from app.domain.services.email.base_provider import BaseEmailProvider
from app.domain.services.strategy_registry import StrategyRegistry
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    File-backed SQLite with a connection per session, for tests where several
    sessions race on the same rows. SQLite serializes the writers.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Factory for code under test that opens its own sessions"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Fake external services
# ============================================================================

class FakePaymentGateway:
    """
    In-memory stand-in for PaymentGateway.

    invoice_status is what retrieve_invoice reports, pay_results is consumed
    one entry per pay_invoice call: a status string or an exception to raise.
    """

    def __init__(self) -> None:
        self.invoice_status = "open"
        self.pay_results: list[Any] = []
        self.default_pay_result: Any = "open"
        self.calls: list[tuple] = []
        self.retrieve_error: Exception | None = None
        self.escalation_error: Exception | None = None

    async def retrieve_invoice(self, invoice_id: str):
        self.calls.append(("retrieve_invoice", invoice_id))
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return {"id": invoice_id, "status": self.invoice_status, "subscription": None}

    async def pay_invoice(self, invoice_id: str, payment_method: str | None = None):
        self.calls.append(("pay_invoice", invoice_id, payment_method))
        result = self.pay_results.pop(0) if self.pay_results else self.default_pay_result
        if isinstance(result, Exception):
            raise result
        return {"id": invoice_id, "status": result}

    async def attach_payment_method(self, customer_id: str, payment_method_id: str):
        self.calls.append(("attach_payment_method", customer_id, payment_method_id))
        return {"id": payment_method_id, "customer": customer_id}

    async def update_subscription(self, subscription_id: str, **fields: Any):
        self.calls.append(("update_subscription", subscription_id, fields))
        if self.escalation_error is not None:
            raise self.escalation_error
        return {"id": subscription_id, **fields}

    async def cancel_subscription(self, subscription_id: str):
        self.calls.append(("cancel_subscription", subscription_id))
        if self.escalation_error is not None:
            raise self.escalation_error
        return {"id": subscription_id, "status": "canceled"}

    def called(self, operation: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == operation]


class RecordingEmailProvider(BaseEmailProvider):
    """Email provider that keeps every send in memory"""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    @property
    def provider_name(self) -> str:
        return "recording"

    async def send_template(self, to: str, template_id: str, template_data: dict[str, Any]) -> str | None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "template_id": template_id, "template_data": template_data})
        return f"msg-{len(self.sent)}"

    def templates(self) -> list[str]:
        return [entry["template_id"] for entry in self.sent]


def card_declined() -> PaymentGatewayError:
    return PaymentGatewayError(
        "pay_invoice", "Your card was declined.", retryable=False, http_status=402, provider_code="card_declined"
    )


@pytest.fixture
def fake_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def email_provider() -> RecordingEmailProvider:
    return RecordingEmailProvider()


@pytest.fixture
def email_service(email_provider: RecordingEmailProvider) -> EmailService:
    return EmailService(provider=email_provider)


@pytest.fixture
def strategies() -> StrategyRegistry:
    return StrategyRegistry()


@pytest.fixture
def dunning_service(db_session, fake_gateway, email_service, strategies) -> DunningService:
    return DunningService(
        db_session,
        gateway=fake_gateway,
        email_service=email_service,
        strategies=strategies,
    )


# ============================================================================
# Stripe payloads
# ============================================================================

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe computes it"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_type: str,
    obj: dict[str, Any],
    event_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def failed_invoice(
    invoice_id: str = "in_001",
    customer: str = "cus_001",
    subscription: str | None = "sub_001",
    amount_due: int = 4900,
    attempt_count: int = 1,
) -> dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "customer_email": "billing@acme.test",
        "customer_name": "Acme Inc",
        "subscription": subscription,
        "amount_due": amount_due,
        "currency": "usd",
        "attempt_count": attempt_count,
        "status": "open",
    }


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def customer_factory(db_session: AsyncSession):
    """Factory for creating test customers"""
    async def _create_customer(
        stripe_customer_id: str = "cus_001",
        email: str | None = "billing@acme.test",
        name: str | None = "Acme Inc",
        dunning_strategy: str | None = None,
        default_payment_method_id: str | None = "pm_card_visa",
    ) -> Customer:
        customer = Customer(
            stripe_customer_id=stripe_customer_id,
            email=email,
            name=name,
            dunning_strategy=dunning_strategy,
            default_payment_method_id=default_payment_method_id,
        )
        db_session.add(customer)
        await db_session.commit()
        await db_session.refresh(customer)
        return customer

    return _create_customer


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating test subscriptions"""
    async def _create_subscription(
        customer_id: int,
        stripe_subscription_id: str = "sub_001",
        status: str = SubscriptionStatus.PAST_DUE.value,
    ) -> Subscription:
        subscription = Subscription(
            customer_id=customer_id,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription


@pytest.fixture
def dunning_event_factory(db_session: AsyncSession, dunning_service: DunningService):
    """Factory for opening dunning events through the service"""
    async def _create_event(
        customer: Customer,
        invoice_id: str = "in_001",
        amount: Decimal = Decimal("49.00"),
        subscription: Subscription | None = None,
        strategy_name: str | None = None,
        now: datetime | None = None,
    ) -> DunningEvent:
        event = await dunning_service.create_dunning_event(
            customer=customer,
            invoice_id=invoice_id,
            amount=amount,
            currency="usd",
            subscription=subscription,
            strategy_name=strategy_name,
            now=now,
        )
        await db_session.commit()
        return event

    return _create_event


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Process-wide strategy registry and email provider start fresh per test"""
    from app.domain.services.email.provider_factory import reset_email_provider
    from app.domain.services.strategy_registry import reset_strategy_registry
    reset_strategy_registry()
    reset_email_provider()
    yield
    reset_strategy_registry()
    reset_email_provider()


class FakeRedis:
    """Redis stand-in for tests: in-memory dict with a compatible interface and TTL tracking."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if missing) and EX (expiry in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def admin_headers():
    """Configured admin key plus the matching request header"""
    with patch.object(settings, "ADMIN_API_KEY", "test-admin-key"):
        yield {"X-Admin-API-Key": "test-admin-key"}
