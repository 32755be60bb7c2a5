"""
Dunning Strategy Registry

Strategies are persisted in dunning_strategies and cached in memory. The cache
only changes through load/reload/refresh/upsert, never implicitly. Running dunning
events carry their own snapshot, so nothing here alters them.
"""
import threading
from dataclasses import dataclass, asdict, field
from typing import Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    UnknownStrategyError,
    InvalidStrategyError,
    NotFoundException,
    ErrorCode,
)
from app.core.logging import get_logger
from app.db.models.customer import Customer
from app.db.models.dunning_strategy import DunningStrategyRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailTemplates:
    initial: str
    reminder: str
    final_notice: str
    success: str

    def for_type(self, email_type: str) -> str:
        return getattr(self, email_type)


@dataclass(frozen=True)
class DunningStrategy:
    name: str
    display_name: str
    max_attempts: int
    retry_intervals_days: tuple[int, ...]
    email_templates: EmailTemplates
    restrict_access_after_days: int | None = None
    pause_subscription_after_days: int | None = None
    cancel_subscription_after_days: int | None = None
    version: int = 1
    is_active: bool = True

    def interval_days(self, index: int) -> int:
        """Retry interval for the given position, the last value repeats"""
        intervals = self.retry_intervals_days
        return intervals[min(max(index, 0), len(intervals) - 1)]

    def validate(self) -> None:
        if not self.name:
            raise InvalidStrategyError(self.name, "name is required")
        if self.max_attempts < 1:
            raise InvalidStrategyError(self.name, "max_attempts must be at least 1")
        if not self.retry_intervals_days:
            raise InvalidStrategyError(self.name, "retry_intervals_days must not be empty")
        if any(days <= 0 for days in self.retry_intervals_days):
            raise InvalidStrategyError(self.name, "retry intervals must be positive")
        for attr in (
            "restrict_access_after_days",
            "pause_subscription_after_days",
            "cancel_subscription_after_days",
        ):
            value = getattr(self, attr)
            if value is not None and value < 0:
                raise InvalidStrategyError(self.name, f"{attr} must not be negative")

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable copy stored on each dunning event"""
        data = asdict(self)
        data["retry_intervals_days"] = list(self.retry_intervals_days)
        return data

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "DunningStrategy":
        return cls(
            name=data["name"],
            display_name=data.get("display_name") or data["name"],
            max_attempts=int(data["max_attempts"]),
            retry_intervals_days=tuple(int(d) for d in data["retry_intervals_days"]),
            email_templates=EmailTemplates(**data["email_templates"]),
            restrict_access_after_days=data.get("restrict_access_after_days"),
            pause_subscription_after_days=data.get("pause_subscription_after_days"),
            cancel_subscription_after_days=data.get("cancel_subscription_after_days"),
            version=int(data.get("version", 1)),
            is_active=bool(data.get("is_active", True)),
        )

    @classmethod
    def from_record(cls, record: DunningStrategyRecord) -> "DunningStrategy":
        return cls(
            name=record.name,
            display_name=record.display_name,
            max_attempts=record.max_attempts,
            retry_intervals_days=tuple(record.retry_intervals_days),
            email_templates=EmailTemplates(**record.email_templates),
            restrict_access_after_days=record.restrict_access_after_days,
            pause_subscription_after_days=record.pause_subscription_after_days,
            cancel_subscription_after_days=record.cancel_subscription_after_days,
            version=record.version,
            is_active=record.is_active,
        )


DEFAULT_STRATEGIES: dict[str, DunningStrategy] = {
    "standard": DunningStrategy(
        name="standard",
        display_name="Standard",
        max_attempts=4,
        retry_intervals_days=(3, 5, 7, 7),
        pause_subscription_after_days=15,
        cancel_subscription_after_days=30,
        email_templates=EmailTemplates(
            initial="payment_failed_initial",
            reminder="payment_failed_reminder",
            final_notice="payment_failed_final",
            success="payment_recovered",
        ),
    ),
    "aggressive": DunningStrategy(
        name="aggressive",
        display_name="Aggressive",
        max_attempts=6,
        retry_intervals_days=(1, 2, 3, 5, 7, 10),
        restrict_access_after_days=3,
        pause_subscription_after_days=10,
        cancel_subscription_after_days=25,
        email_templates=EmailTemplates(
            initial="payment_failed_urgent",
            reminder="payment_failed_reminder_urgent",
            final_notice="payment_failed_final_urgent",
            success="payment_recovered",
        ),
    ),
    "gentle": DunningStrategy(
        name="gentle",
        display_name="Gentle",
        max_attempts=3,
        retry_intervals_days=(7, 14, 14),
        pause_subscription_after_days=30,
        cancel_subscription_after_days=60,
        email_templates=EmailTemplates(
            initial="payment_failed_gentle",
            reminder="payment_failed_reminder_gentle",
            final_notice="payment_failed_final_gentle",
            success="payment_recovered",
        ),
    ),
}


@dataclass
class StrategyRegistry:
    """In-memory view of the active strategies"""

    _strategies: dict[str, DunningStrategy] = field(
        default_factory=lambda: dict(DEFAULT_STRATEGIES)
    )
    # מצב הטבלה כפי שנראה ב-refresh() האחרון
    _fingerprint: tuple | None = field(default=None, repr=False)

    def get(self, name: str) -> DunningStrategy:
        strategy = self._strategies.get(name)
        if strategy is None:
            raise UnknownStrategyError(name, list(self._strategies))
        return strategy

    def names(self) -> list[str]:
        return sorted(self._strategies)

    def all(self) -> list[DunningStrategy]:
        return [self._strategies[name] for name in self.names()]

    def for_customer(self, customer: Customer | None) -> DunningStrategy:
        """
        Customer's assigned strategy, or the configured default.

        An assignment naming a strategy that was deactivated or removed falls
        back to the default, so a failed payment still opens dunning.
        """
        assigned = customer.dunning_strategy if customer else None
        if assigned:
            strategy = self._strategies.get(assigned)
            if strategy is not None:
                return strategy
            logger.warning(
                "אסטרטגיית ה-dunning של הלקוח לא פעילה - משתמשים בברירת המחדל",
                extra_data={
                    "customer_id": customer.id,
                    "strategy": assigned,
                    "default_strategy": settings.DUNNING_DEFAULT_STRATEGY,
                }
            )
        return self.get(settings.DUNNING_DEFAULT_STRATEGY)

    async def load(self, db: AsyncSession) -> list[str]:
        """Seed missing built-ins, then cache every active strategy from the database"""
        result = await db.execute(select(DunningStrategyRecord.name))
        existing = set(result.scalars().all())

        seeded = []
        for name, strategy in DEFAULT_STRATEGIES.items():
            if name in existing:
                continue
            db.add(_record_from_strategy(strategy))
            seeded.append(name)
        if seeded:
            await db.commit()
            logger.info("Seeded built-in dunning strategies", extra_data={"strategies": seeded})

        return await self.reload(db)

    async def reload(self, db: AsyncSession) -> list[str]:
        """Replace the cache with the active records"""
        result = await db.execute(
            select(DunningStrategyRecord).where(DunningStrategyRecord.is_active.is_(True))
        )
        loaded = {
            record.name: DunningStrategy.from_record(record)
            for record in result.scalars().all()
        }
        self._strategies = loaded
        logger.info(
            "Dunning strategies loaded",
            extra_data={"strategies": {n: s.version for n, s in loaded.items()}}
        )
        return self.names()

    async def _table_fingerprint(self, db: AsyncSession) -> tuple:
        result = await db.execute(
            select(
                func.count(DunningStrategyRecord.id),
                func.max(DunningStrategyRecord.updated_at),
                func.coalesce(func.sum(DunningStrategyRecord.version), 0),
            )
        )
        return tuple(result.one())

    async def refresh(self, db: AsyncSession) -> bool:
        """
        Reload when the table changed since the last refresh.

        Long-lived worker processes call this before each task, so upserts made
        through another process are picked up. Returns True when it reloaded.
        """
        fingerprint = await self._table_fingerprint(db)
        if fingerprint == self._fingerprint:
            return False
        await self.load(db)
        self._fingerprint = fingerprint
        return True

    async def upsert(self, db: AsyncSession, strategy: DunningStrategy) -> DunningStrategy:
        """Create or replace a strategy. The version is bumped on every update."""
        strategy.validate()
        if not strategy.is_active and strategy.name == settings.DUNNING_DEFAULT_STRATEGY:
            raise InvalidStrategyError(strategy.name, "the default strategy cannot be deactivated")

        result = await db.execute(
            select(DunningStrategyRecord).where(DunningStrategyRecord.name == strategy.name)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = _record_from_strategy(strategy)
            db.add(record)
        else:
            record.display_name = strategy.display_name
            record.max_attempts = strategy.max_attempts
            record.retry_intervals_days = list(strategy.retry_intervals_days)
            record.restrict_access_after_days = strategy.restrict_access_after_days
            record.pause_subscription_after_days = strategy.pause_subscription_after_days
            record.cancel_subscription_after_days = strategy.cancel_subscription_after_days
            record.email_templates = asdict(strategy.email_templates)
            record.is_active = strategy.is_active
            record.version = record.version + 1
            record.updated_at = utcnow()
        await db.commit()

        logger.info(
            "Dunning strategy saved",
            extra_data={"strategy": record.name, "version": record.version}
        )
        await self.reload(db)
        return DunningStrategy.from_record(record)

    async def assign_to_customer(self, db: AsyncSession, customer_id: int, name: str) -> Customer:
        self.get(name)

        result = await db.execute(select(Customer).where(Customer.id == customer_id))
        customer = result.scalar_one_or_none()
        if customer is None:
            raise NotFoundException("Customer", customer_id, ErrorCode.CUSTOMER_NOT_FOUND)

        customer.dunning_strategy = name
        await db.commit()
        logger.info(
            "Dunning strategy assigned",
            extra_data={"customer_id": customer_id, "strategy": name}
        )
        return customer


def _record_from_strategy(strategy: DunningStrategy) -> DunningStrategyRecord:
    return DunningStrategyRecord(
        name=strategy.name,
        display_name=strategy.display_name,
        max_attempts=strategy.max_attempts,
        retry_intervals_days=list(strategy.retry_intervals_days),
        restrict_access_after_days=strategy.restrict_access_after_days,
        pause_subscription_after_days=strategy.pause_subscription_after_days,
        cancel_subscription_after_days=strategy.cancel_subscription_after_days,
        email_templates=asdict(strategy.email_templates),
        version=strategy.version,
        is_active=strategy.is_active,
    )


_registry: StrategyRegistry | None = None
_registry_lock = threading.Lock()


def get_strategy_registry() -> StrategyRegistry:
    """Process-wide registry, starts with the built-ins until load() runs"""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = StrategyRegistry()
    return _registry


def reset_strategy_registry() -> None:
    """Drop the cached registry (for testing)"""
    global _registry
    with _registry_lock:
        _registry = None
