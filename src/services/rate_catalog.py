"""Rate catalog: the single entry point for resolving price schedules.

At most one schedule per category covers any instant. Activating a new
schedule closes the open one in the same transaction, so resolve() sees
either the old window or the new one, never both and never a gap.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.property import PropertyCategory
from src.models.rate_schedule import RateSchedule
from src.services.errors import (
    InvalidRateScheduleError,
    RateNotConfiguredError,
    RateScheduleConflictError,
)
from src.services.locks import KeyedLock, category_key, ledger_locks
from src.services.repository import LedgerRepository
from src.services.timeutils import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)


class RateCatalog:
    """Resolve and activate rate schedules."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize with database session.

        Args:
            session: AsyncSession for database operations
            clock: Source of "now" for schedules without an explicit start
            locks: Lock registry; defaults to the process-wide one
        """
        self.session = session
        self.repo = LedgerRepository(session)
        self.clock = clock
        self.locks = locks or ledger_locks

    async def resolve(
        self, category: PropertyCategory | str, at_time: datetime | None = None
    ) -> RateSchedule:
        """Return the schedule covering ``at_time`` for ``category``.

        Raises:
            RateNotConfiguredError: If no schedule covers the instant
        """
        category = PropertyCategory(category)
        at_time = as_utc(at_time) if at_time is not None else self.clock()

        rate = await self.repo.rate_at(category, at_time)
        if rate is None:
            logger.warning("No rate configured for %s at %s", category.value, at_time.isoformat())
            raise RateNotConfiguredError(category.value, at_time)
        return rate

    async def history(self, category: PropertyCategory | str) -> list[RateSchedule]:
        """All schedules of a category, oldest first."""
        return await self.repo.rates_for(PropertyCategory(category))

    async def upsert(
        self,
        category: PropertyCategory | str,
        unit_price: Decimal,
        fixed_charge: Decimal = Decimal("0"),
        minimum_charge: Decimal = Decimal("0"),
        effective_from: datetime | None = None,
        effective_until: datetime | None = None,
        description: str | None = None,
    ) -> RateSchedule:
        """Create a schedule, or update the pricing of the one starting at ``effective_from``.

        A new schedule closes the category's open schedule at its own
        ``effective_from``. Closing and opening commit together.

        Raises:
            InvalidRateScheduleError: Non-positive price, negative charges or empty window
            RateScheduleConflictError: The new window would overlap an existing schedule
        """
        category = PropertyCategory(category)
        unit_price = Decimal(str(unit_price))
        fixed_charge = Decimal(str(fixed_charge))
        minimum_charge = Decimal(str(minimum_charge))
        effective_from = as_utc(effective_from) if effective_from is not None else self.clock()
        if effective_until is not None:
            effective_until = as_utc(effective_until)

        self._validate(unit_price, fixed_charge, minimum_charge, effective_from, effective_until)

        async with self.locks.hold(category_key(category)):
            try:
                schedules = await self.repo.rates_for(category, for_update=True)

                for existing in schedules:
                    if as_utc(existing.effective_from) == effective_from:
                        rate = self._update_pricing(
                            existing, unit_price, fixed_charge, minimum_charge, description
                        )
                        await self.session.commit()
                        logger.info(
                            "Updated rate schedule %d for %s: unit_price=%s fixed=%s minimum=%s",
                            rate.id,
                            category.value,
                            unit_price,
                            fixed_charge,
                            minimum_charge,
                        )
                        return rate

                to_close = self._check_overlap(category, schedules, effective_from)

                rate = RateSchedule(
                    category=category,
                    unit_price=unit_price,
                    fixed_charge=fixed_charge,
                    minimum_charge=minimum_charge,
                    effective_from=effective_from,
                    effective_until=effective_until,
                    description=description,
                )
                if to_close is not None:
                    to_close.effective_until = effective_from
                await self.repo.add_rate(rate)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        if to_close is not None:
            logger.info(
                "Closed rate schedule %d for %s at %s",
                to_close.id,
                category.value,
                effective_from.isoformat(),
            )
        logger.info(
            "Activated rate schedule %d for %s from %s: unit_price=%s fixed=%s minimum=%s",
            rate.id,
            category.value,
            effective_from.isoformat(),
            unit_price,
            fixed_charge,
            minimum_charge,
        )
        return rate

    @staticmethod
    def _validate(
        unit_price: Decimal,
        fixed_charge: Decimal,
        minimum_charge: Decimal,
        effective_from: datetime,
        effective_until: datetime | None,
    ) -> None:
        if unit_price <= 0:
            raise InvalidRateScheduleError("unit_price must be positive", unit_price=unit_price)
        if fixed_charge < 0:
            raise InvalidRateScheduleError(
                "fixed_charge must not be negative", fixed_charge=fixed_charge
            )
        if minimum_charge < 0:
            raise InvalidRateScheduleError(
                "minimum_charge must not be negative", minimum_charge=minimum_charge
            )
        if effective_until is not None and effective_until <= effective_from:
            raise InvalidRateScheduleError(
                "effective_until must be after effective_from",
                effective_from=effective_from,
                effective_until=effective_until,
            )

    @staticmethod
    def _update_pricing(
        rate: RateSchedule,
        unit_price: Decimal,
        fixed_charge: Decimal,
        minimum_charge: Decimal,
        description: str | None,
    ) -> RateSchedule:
        rate.unit_price = unit_price
        rate.fixed_charge = fixed_charge
        rate.minimum_charge = minimum_charge
        if description is not None:
            rate.description = description
        return rate

    @staticmethod
    def _check_overlap(
        category: PropertyCategory,
        schedules: list[RateSchedule],
        effective_from: datetime,
    ) -> RateSchedule | None:
        """Find the open schedule to close, rejecting windows that would overlap.

        Returns:
            The open schedule that starts before ``effective_from``, if any
        """
        to_close = None
        for existing in schedules:
            starts = as_utc(existing.effective_from)
            if starts >= effective_from:
                # Schedules are append-only in time; nothing may start at or after the new one
                raise RateScheduleConflictError(category.value, effective_from, existing.id)
            if existing.effective_until is None:
                to_close = existing
            elif as_utc(existing.effective_until) > effective_from:
                raise RateScheduleConflictError(category.value, effective_from, existing.id)
        return to_close


__all__ = ["RateCatalog"]
