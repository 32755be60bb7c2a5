"""
Admin Dunning Endpoints - operator control over payment recovery.

Metrics, per-customer history, manual lifecycle actions on dunning events,
strategy management and payment method updates.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.clock import utcnow, to_naive_utc
from app.db.database import get_db
from app.db.models.dunning_event import CancellationReason, DunningStatus
from app.domain.services.dunning_service import DunningService
from app.domain.services.strategy_registry import (
    DunningStrategy,
    EmailTemplates,
    StrategyRegistry,
    get_strategy_registry,
)

router = APIRouter()

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Invalid API key"},
}


def get_dunning_service(db: AsyncSession = Depends(get_db)) -> DunningService:
    return DunningService(db)


def get_strategies() -> StrategyRegistry:
    return get_strategy_registry()


# ─── Pydantic models ────────────────────────────────────────────────────────

class DunningEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    subscription_id: int | None
    invoice_id: str
    amount: Decimal
    currency: str
    status: DunningStatus
    strategy_name: str
    attempt_count: int
    total_recovery_attempts: int
    next_retry_at: datetime | None
    recovered_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    failure_reason: str | None
    last_error: str | None
    emails_sent: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class AttemptMetric(BaseModel):
    attempt_number: int
    recovery_count: int
    recovery_rate: float


class DunningMetricsResponse(BaseModel):
    start: datetime
    end: datetime
    total_events: int
    active_events: int
    recovery_rate: float
    average_recovery_time_days: float
    revenue_recovered: float
    revenue_lost: float
    by_attempt: list[AttemptMetric]


class CancelDunningRequest(BaseModel):
    reason: CancellationReason = CancellationReason.MANUALLY_CANCELLED


class EmailTemplatesModel(BaseModel):
    initial: str
    reminder: str
    final_notice: str
    success: str


class StrategyModel(BaseModel):
    name: str
    display_name: str
    max_attempts: int = Field(ge=1)
    retry_intervals_days: list[int] = Field(min_length=1)
    email_templates: EmailTemplatesModel
    restrict_access_after_days: int | None = Field(default=None, ge=0)
    pause_subscription_after_days: int | None = Field(default=None, ge=0)
    cancel_subscription_after_days: int | None = Field(default=None, ge=0)
    version: int = 1
    is_active: bool = True

    @classmethod
    def from_strategy(cls, strategy: DunningStrategy) -> "StrategyModel":
        return cls(**strategy.snapshot())


class StrategyUpdateRequest(BaseModel):
    display_name: str | None = None
    max_attempts: int = Field(ge=1)
    retry_intervals_days: list[int] = Field(min_length=1)
    email_templates: EmailTemplatesModel
    restrict_access_after_days: int | None = Field(default=None, ge=0)
    pause_subscription_after_days: int | None = Field(default=None, ge=0)
    cancel_subscription_after_days: int | None = Field(default=None, ge=0)
    is_active: bool = True

    @model_validator(mode="after")
    def validate_intervals(self) -> "StrategyUpdateRequest":
        if any(days <= 0 for days in self.retry_intervals_days):
            raise ValueError("retry_intervals_days must be positive")
        return self

    def to_strategy(self, name: str) -> DunningStrategy:
        return DunningStrategy(
            name=name,
            display_name=self.display_name or name,
            max_attempts=self.max_attempts,
            retry_intervals_days=tuple(self.retry_intervals_days),
            email_templates=EmailTemplates(**self.email_templates.model_dump()),
            restrict_access_after_days=self.restrict_access_after_days,
            pause_subscription_after_days=self.pause_subscription_after_days,
            cancel_subscription_after_days=self.cancel_subscription_after_days,
            is_active=self.is_active,
        )


class StrategyReloadResponse(BaseModel):
    strategies: list[str]


class AssignStrategyRequest(BaseModel):
    strategy: str


class AssignStrategyResponse(BaseModel):
    customer_id: int
    strategy: str


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)


class PaymentMethodResponse(BaseModel):
    customer_id: int
    payment_method_id: str
    rescheduled_events: int


# ─── Metrics and history ────────────────────────────────────────────────────

@router.get(
    "/dunning/metrics",
    response_model=DunningMetricsResponse,
    summary="Recovery metrics",
    description="Events created in [start, end]. Defaults to the last 30 days.",
    responses=_AUTH_RESPONSES,
)
async def dunning_metrics(
    _: None = Depends(require_admin_api_key),
    service: DunningService = Depends(get_dunning_service),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
) -> DunningMetricsResponse:
    end = to_naive_utc(end) if end else utcnow()
    start = to_naive_utc(start) if start else end - timedelta(days=30)
    metrics = await service.get_metrics(start, end)
    return DunningMetricsResponse(start=start, end=end, **metrics)


@router.get(
    "/dunning/customers/{customer_id}/history",
    response_model=list[DunningEventResponse],
    summary="Dunning history of a customer",
    responses=_AUTH_RESPONSES,
)
async def customer_dunning_history(
    customer_id: int,
    _: None = Depends(require_admin_api_key),
    service: DunningService = Depends(get_dunning_service),
) -> list[DunningEventResponse]:
    events = await service.get_customer_history(customer_id)
    return [DunningEventResponse.model_validate(event) for event in events]


# ─── Lifecycle actions ──────────────────────────────────────────────────────

@router.post(
    "/dunning/events/{dunning_event_id}/cancel",
    response_model=DunningEventResponse,
    summary="Close a dunning event",
    description="customer_paid closes the event as recovered, other reasons as cancelled or failed.",
    responses={**_AUTH_RESPONSES, 400: {"description": "Event already closed"}, 404: {"description": "Not found"}},
)
async def cancel_dunning_event(
    dunning_event_id: int,
    body: CancelDunningRequest | None = None,
    _: None = Depends(require_admin_api_key),
    service: DunningService = Depends(get_dunning_service),
) -> DunningEventResponse:
    reason = body.reason if body else CancellationReason.MANUALLY_CANCELLED
    event = await service.cancel_dunning_event(dunning_event_id, reason)
    return DunningEventResponse.model_validate(event)


@router.post(
    "/dunning/events/{dunning_event_id}/pause",
    response_model=DunningEventResponse,
    summary="Pause a dunning event",
    responses={**_AUTH_RESPONSES, 400: {"description": "Event is not active"}, 404: {"description": "Not found"}},
)
async def pause_dunning_event(
    dunning_event_id: int,
    _: None = Depends(require_admin_api_key),
    service: DunningService = Depends(get_dunning_service),
) -> DunningEventResponse:
    event = await service.pause_dunning_event(dunning_event_id)
    return DunningEventResponse.model_validate(event)


@router.post(
    "/dunning/events/{dunning_event_id}/resume",
    response_model=DunningEventResponse,
    summary="Resume a paused dunning event",
    responses={**_AUTH_RESPONSES, 400: {"description": "Event is not paused"}, 404: {"description": "Not found"}},
)
async def resume_dunning_event(
    dunning_event_id: int,
    _: None = Depends(require_admin_api_key),
    service: DunningService = Depends(get_dunning_service),
) -> DunningEventResponse:
    event = await service.resume_dunning_event(dunning_event_id)
    return DunningEventResponse.model_validate(event)


# ─── Strategies ─────────────────────────────────────────────────────────────

@router.get(
    "/dunning/strategies",
    response_model=list[StrategyModel],
    summary="Loaded dunning strategies",
    responses=_AUTH_RESPONSES,
)
async def list_strategies(
    _: None = Depends(require_admin_api_key),
    strategies: StrategyRegistry = Depends(get_strategies),
) -> list[StrategyModel]:
    return [StrategyModel.from_strategy(s) for s in strategies.all()]


@router.put(
    "/dunning/strategies/{name}",
    response_model=StrategyModel,
    summary="Create or update a strategy",
    description="Running dunning events keep the strategy snapshot they started with.",
    responses=_AUTH_RESPONSES,
)
async def upsert_strategy(
    name: str,
    body: StrategyUpdateRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    strategies: StrategyRegistry = Depends(get_strategies),
) -> StrategyModel:
    saved = await strategies.upsert(db, body.to_strategy(name))
    return StrategyModel.from_strategy(saved)


@router.post(
    "/dunning/strategies/reload",
    response_model=StrategyReloadResponse,
    summary="Reload strategies from the database",
    responses=_AUTH_RESPONSES,
)
async def reload_strategies(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    strategies: StrategyRegistry = Depends(get_strategies),
) -> StrategyReloadResponse:
    names = await strategies.reload(db)
    return StrategyReloadResponse(strategies=names)


# ─── Customers ──────────────────────────────────────────────────────────────

@router.put(
    "/customers/{customer_id}/dunning-strategy",
    response_model=AssignStrategyResponse,
    summary="Assign a dunning strategy to a customer",
    responses={**_AUTH_RESPONSES, 400: {"description": "Unknown strategy"}, 404: {"description": "Not found"}},
)
async def assign_customer_strategy(
    customer_id: int,
    body: AssignStrategyRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    strategies: StrategyRegistry = Depends(get_strategies),
) -> AssignStrategyResponse:
    customer = await strategies.assign_to_customer(db, customer_id, body.strategy)
    return AssignStrategyResponse(customer_id=customer.id, strategy=customer.dunning_strategy)


@router.post(
    "/customers/{customer_id}/payment-method",
    response_model=PaymentMethodResponse,
    summary="Update a customer's payment method",
    description="Attaches the method at the gateway and makes active dunning events due now.",
    responses={**_AUTH_RESPONSES, 404: {"description": "Customer not found"}},
)
async def update_payment_method(
    customer_id: int,
    body: PaymentMethodRequest,
    _: None = Depends(require_admin_api_key),
    service: DunningService = Depends(get_dunning_service),
) -> PaymentMethodResponse:
    rescheduled = await service.update_payment_method(customer_id, body.payment_method_id)
    return PaymentMethodResponse(
        customer_id=customer_id,
        payment_method_id=body.payment_method_id,
        rescheduled_events=rescheduled,
    )
