"""Persistence for the ledger: properties, tokens, meter readings and rate schedules.

Services never touch the session directly for balance fields. Credits and
debits read the row, compute the new values in Decimal at the column scale
and write them back with a compare-and-set on the values they read, so no
concurrent update can be lost and float storage (SQLite) never leaks rounding
error into the balance. A debit larger than the balance is refused before
anything is written. Token redemption is a compare-and-set on ``is_redeemed``.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.meter_reading import MeterReading
from src.models.property import Property, PropertyCategory
from src.models.rate_schedule import RateSchedule
from src.models.token import Token
from src.services.errors import PropertyNotFoundError

# Scale of the balance columns
BALANCE_PRECISION = Decimal("0.001")


def quantize_balance(value: Decimal) -> Decimal:
    return Decimal(value).quantize(BALANCE_PRECISION, rounding=ROUND_HALF_UP)


class LedgerRepository:
    """Storage operations used by the ledger services."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session.

        Args:
            session: AsyncSession for database operations
        """
        self.session = session

    # --- Properties ---

    async def get_property(self, property_id: int, for_update: bool = False) -> Property | None:
        """Load a property, refreshing any stale copy held by the session."""
        stmt = (
            select(Property)
            .where(Property.id == property_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_property(
        self,
        name: str,
        meter_number: str,
        category: PropertyCategory | str,
    ) -> Property:
        """Register a property with an empty balance (onboarding hook for the CRUD layer)."""
        property_obj = Property(
            name=name,
            meter_number=meter_number,
            category=PropertyCategory(category),
            current_balance=Decimal("0"),
            total_consumption=Decimal("0"),
            is_active=True,
        )
        self.session.add(property_obj)
        await self.session.flush()
        return property_obj

    async def get_balance(self, property_id: int) -> Decimal | None:
        result = await self.session.execute(
            select(Property.current_balance).where(Property.id == property_id)
        )
        return result.scalar_one_or_none()

    async def _balance_row(self, property_id: int) -> tuple[Decimal, Decimal] | None:
        stmt = (
            select(Property.current_balance, Property.total_consumption)
            .where(Property.id == property_id)
            .with_for_update()
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return quantize_balance(row.current_balance), quantize_balance(row.total_consumption)

    async def _swap_balance(
        self,
        property_id: int,
        seen: tuple[Decimal, Decimal],
        new: tuple[Decimal, Decimal],
        **extra,
    ) -> bool:
        """Write absolute balance values if the row still holds ``seen``."""
        stmt = (
            update(Property)
            .where(
                Property.id == property_id,
                Property.current_balance == seen[0],
                Property.total_consumption == seen[1],
            )
            .values(current_balance=new[0], total_consumption=new[1], **extra)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def credit_balance(
        self, property_id: int, units: Decimal, redeemed_at: datetime
    ) -> Decimal:
        """Add units to the balance and stamp the redemption time.

        Returns:
            The balance after the credit

        Raises:
            PropertyNotFoundError: If the property does not exist
        """
        while True:
            seen = await self._balance_row(property_id)
            if seen is None:
                raise PropertyNotFoundError(property_id)
            new_balance = quantize_balance(seen[0] + units)
            if await self._swap_balance(
                property_id, seen, (new_balance, seen[1]), last_token_redemption=redeemed_at
            ):
                return new_balance

    async def apply_consumption(self, property_id: int, units: Decimal) -> Decimal | None:
        """Move units from the balance into total consumption.

        ``units`` may be negative to give back previously billed consumption.

        Returns:
            The balance after the update, or None when the balance does not cover it

        Raises:
            PropertyNotFoundError: If the property does not exist
        """
        while True:
            seen = await self._balance_row(property_id)
            if seen is None:
                raise PropertyNotFoundError(property_id)
            balance, consumed = seen
            if balance < units:
                return None
            new_balance = quantize_balance(balance - units)
            if await self._swap_balance(
                property_id, seen, (new_balance, quantize_balance(consumed + units))
            ):
                return new_balance


    # --- Tokens ---

    async def get_token_by_code(self, code: str) -> Token | None:
        result = await self.session.execute(
            select(Token).where(Token.code == code).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_token_by_payment(self, payment_id: str) -> Token | None:
        result = await self.session.execute(
            select(Token)
            .where(Token.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_token_redeemed(self, token_id: int, redeemed_at: datetime) -> bool:
        """Flip is_redeemed from false to true.

        Returns:
            True if this call performed the transition, False if the token was
            already redeemed (or does not exist)
        """
        stmt = (
            update(Token)
            .where(Token.id == token_id, Token.is_redeemed.is_(False))
            .values(is_redeemed=True, redeemed_at=redeemed_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def last_redeemed_token(self, property_id: int) -> Token | None:
        result = await self.session.execute(
            select(Token)
            .where(Token.property_id == property_id, Token.is_redeemed.is_(True))
            .order_by(desc(Token.redeemed_at), desc(Token.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    # --- Meter readings ---

    async def get_reading(self, reading_id: int) -> MeterReading | None:
        result = await self.session.execute(
            select(MeterReading)
            .where(MeterReading.id == reading_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def latest_reading(self, property_id: int) -> MeterReading | None:
        """Most recent reading by reading_date (ties broken by insertion order)."""
        result = await self.session.execute(
            select(MeterReading)
            .where(MeterReading.property_id == property_id)
            .order_by(desc(MeterReading.reading_date), desc(MeterReading.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def reading_before(self, reading: MeterReading) -> MeterReading | None:
        """The reading immediately preceding ``reading`` for the same property."""
        result = await self.session.execute(
            select(MeterReading)
            .where(
                MeterReading.property_id == reading.property_id,
                MeterReading.id != reading.id,
                or_(
                    MeterReading.reading_date < reading.reading_date,
                    (MeterReading.reading_date == reading.reading_date)
                    & (MeterReading.id < reading.id),
                ),
            )
            .order_by(desc(MeterReading.reading_date), desc(MeterReading.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_reading(
        self,
        property_id: int,
        reading: Decimal,
        consumption: Decimal,
        reading_date: datetime,
        is_estimated: bool = False,
        notes: str | None = None,
    ) -> MeterReading:
        meter_reading = MeterReading(
            property_id=property_id,
            reading=reading,
            consumption=consumption,
            reading_date=reading_date,
            is_estimated=is_estimated,
            notes=notes,
        )
        self.session.add(meter_reading)
        await self.session.flush()
        return meter_reading

    async def list_readings(
        self,
        property_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[MeterReading]:
        """Readings for a property within [start, end], newest first."""
        stmt = select(MeterReading).where(MeterReading.property_id == property_id)
        if start is not None:
            stmt = stmt.where(MeterReading.reading_date >= start)
        if end is not None:
            stmt = stmt.where(MeterReading.reading_date <= end)
        stmt = stmt.order_by(desc(MeterReading.reading_date), desc(MeterReading.id))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def consumption_since(self, property_id: int, since: datetime) -> Decimal:
        """Sum of billed consumption for readings dated at or after ``since``."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(MeterReading.consumption), 0)).where(
                MeterReading.property_id == property_id,
                MeterReading.reading_date >= since,
            )
        )
        return quantize_balance(Decimal(str(result.scalar_one())))

    # --- Rate schedules ---

    async def rate_at(self, category: PropertyCategory, at_time: datetime) -> RateSchedule | None:
        """Schedule whose [effective_from, effective_until) window contains ``at_time``."""
        result = await self.session.execute(
            select(RateSchedule)
            .where(
                RateSchedule.category == category,
                RateSchedule.effective_from <= at_time,
                or_(
                    RateSchedule.effective_until.is_(None),
                    RateSchedule.effective_until > at_time,
                ),
            )
            .order_by(desc(RateSchedule.effective_from))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def rates_for(
        self, category: PropertyCategory, for_update: bool = False
    ) -> list[RateSchedule]:
        """All schedules of a category ordered by effective_from."""
        stmt = (
            select(RateSchedule)
            .where(RateSchedule.category == category)
            .order_by(RateSchedule.effective_from)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add_rate(self, rate: RateSchedule) -> RateSchedule:
        self.session.add(rate)
        await self.session.flush()
        return rate


__all__ = ["LedgerRepository"]
