"""Service for recording meter readings and billing their consumption."""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.meter_reading import MeterReading
from src.services.balance_ledger import BalanceLedger, DebitResult
from src.services.errors import (
    BaselineExistsError,
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerError,
    NonMonotonicReadingError,
    OutOfOrderReadingError,
    PropertyNotFoundError,
    ReadingCorrectionError,
    ReadingNotFoundError,
)
from src.services.locks import KeyedLock, ledger_locks, property_key
from src.services.repository import LedgerRepository
from src.services.timeutils import Clock, as_utc, utcnow
from src.services.unit_converter import to_decimal

logger = logging.getLogger(__name__)

ATTEMPT_FAILED_NOTE = "Attempted usage - insufficient balance"
BASELINE_NOTE = "Baseline reading"


class MeterReadingRecorder:
    """Validate meter readings, derive consumption and debit it from the balance.

    Lookup of the prior reading, the debit and the insert of the new reading
    run under the property lock and commit as one transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: BalanceLedger | None = None,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize with database session.

        Args:
            session: AsyncSession for database operations
            ledger: Ledger that applies consumption (default: one over the same session)
            clock: Source of "now" for readings without a date
            locks: Lock registry; defaults to the process-wide one
        """
        self.session = session
        self.repo = LedgerRepository(session)
        self.clock = clock
        self.locks = locks or ledger_locks
        self.ledger = ledger or BalanceLedger(session, clock=clock, locks=self.locks)

    async def record_reading(
        self,
        property_id: int,
        reading: Decimal | int | float | str,
        reading_date: datetime | None = None,
        is_estimated: bool = False,
        notes: str | None = None,
    ) -> MeterReading:
        """Record an absolute meter value and bill the difference to the previous one.

        Args:
            property_id: Property ID
            reading: Cumulative meter value
            reading_date: When the meter was read (default: now)
            is_estimated: Whether the value was estimated rather than read
            notes: Free text stored with the reading

        Returns:
            The persisted MeterReading

        Raises:
            InvalidAmountError: Negative reading
            OutOfOrderReadingError: reading_date is before the latest reading
            NonMonotonicReadingError: reading is lower than the previous one
            InsufficientBalanceError: Balance does not cover the consumption; the
                reading is stored with zero consumption before this is raised
        """
        reading = to_decimal(reading)
        if reading < 0:
            raise InvalidAmountError("reading", reading)
        reading_date = as_utc(reading_date) if reading_date is not None else self.clock()

        async with self.locks.hold(property_key(property_id)):
            meter_reading, debit = await self._record(
                property_id, reading_date, is_estimated, notes, reading=reading
            )

        await self.ledger.notify_if_low(debit)
        return meter_reading

    async def record_raw_consumption(
        self,
        property_id: int,
        units: Decimal | int | float | str,
        reading_date: datetime | None = None,
        notes: str | None = None,
    ) -> MeterReading:
        """Record a consumption delta reported by a device.

        The absolute value is synthesized as the previous reading plus ``units``
        and then handled exactly like record_reading().
        """
        units = to_decimal(units)
        if units < 0:
            raise InvalidAmountError("units", units)
        reading_date = as_utc(reading_date) if reading_date is not None else self.clock()

        async with self.locks.hold(property_key(property_id)):
            meter_reading, debit = await self._record(
                property_id, reading_date, False, notes, units=units
            )

        await self.ledger.notify_if_low(debit)
        return meter_reading

    async def _record(
        self,
        property_id: int,
        reading_date: datetime,
        is_estimated: bool,
        notes: str | None,
        reading: Decimal | None = None,
        units: Decimal | None = None,
    ) -> tuple[MeterReading, DebitResult]:
        try:
            prior = await self.repo.latest_reading(property_id)
            if units is not None:
                reading = (Decimal(prior.reading) if prior else Decimal("0")) + units

            consumption = self._consumption(property_id, reading, reading_date, prior)

            try:
                debit = await self.ledger.apply_consumption(property_id, consumption)
            except InsufficientBalanceError:
                await self.repo.add_reading(
                    property_id,
                    reading,
                    Decimal("0"),
                    reading_date,
                    is_estimated=is_estimated,
                    notes=f"{notes} ({ATTEMPT_FAILED_NOTE})" if notes else ATTEMPT_FAILED_NOTE,
                )
                await self.session.commit()
                logger.warning(
                    "Reading %s for property %d stored without billing %s units",
                    reading,
                    property_id,
                    consumption,
                )
                raise

            meter_reading = await self.repo.add_reading(
                property_id,
                reading,
                consumption,
                reading_date,
                is_estimated=is_estimated,
                notes=notes,
            )
            await self.session.commit()
        except InsufficientBalanceError:
            raise
        except LedgerError:
            await self.session.rollback()
            raise
        except Exception as e:
            await self.session.rollback()
            logger.error("Error recording reading for property %d: %s", property_id, e, exc_info=True)
            raise

        logger.info(
            "Recorded reading %s for property %d: consumption %s",
            reading,
            property_id,
            consumption,
        )
        return meter_reading, debit

    @staticmethod
    def _consumption(
        property_id: int,
        reading: Decimal,
        reading_date: datetime,
        prior: MeterReading | None,
    ) -> Decimal:
        if prior is None:
            return reading

        prior_date = as_utc(prior.reading_date)
        if reading_date < prior_date:
            raise OutOfOrderReadingError(property_id, reading_date, prior_date)
        if reading < prior.reading:
            raise NonMonotonicReadingError(property_id, reading, Decimal(prior.reading))
        return reading - prior.reading

    async def seed_baseline(
        self,
        property_id: int,
        reading: Decimal | int | float | str = 0,
        reading_date: datetime | None = None,
    ) -> MeterReading:
        """Write the zero-consumption starting reading of a new property.

        Raises:
            PropertyNotFoundError: Unknown property
            BaselineExistsError: The property already has readings
        """
        reading = to_decimal(reading)
        if reading < 0:
            raise InvalidAmountError("reading", reading)
        reading_date = as_utc(reading_date) if reading_date is not None else self.clock()

        async with self.locks.hold(property_key(property_id)):
            try:
                if await self.repo.get_property(property_id) is None:
                    raise PropertyNotFoundError(property_id)
                if await self.repo.latest_reading(property_id) is not None:
                    raise BaselineExistsError(property_id)

                baseline = await self.repo.add_reading(
                    property_id, reading, Decimal("0"), reading_date, notes=BASELINE_NOTE
                )
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        logger.info("Seeded baseline reading %s for property %d", reading, property_id)
        return baseline

    async def correct_reading(
        self,
        reading_id: int,
        reading: Decimal | int | float | str,
        notes: str | None = None,
    ) -> MeterReading:
        """Replace the value of a property's latest reading.

        Consumption of the reading is recomputed and the difference is charged
        or refunded on the property balance in the same transaction.

        Raises:
            ReadingNotFoundError: Unknown reading
            ReadingCorrectionError: Not the latest reading, or the baseline
            NonMonotonicReadingError: Lower than the preceding reading
            InsufficientBalanceError: Balance does not cover the extra consumption
        """
        reading = to_decimal(reading)
        if reading < 0:
            raise InvalidAmountError("reading", reading)

        target = await self.repo.get_reading(reading_id)
        if target is None:
            raise ReadingNotFoundError(reading_id)
        property_id = target.property_id

        async with self.locks.hold(property_key(property_id)):
            try:
                target = await self.repo.get_reading(reading_id)
                latest = await self.repo.latest_reading(property_id)
                if latest is None or latest.id != target.id:
                    raise ReadingCorrectionError(reading_id, "only the latest reading can be corrected")

                previous = await self.repo.reading_before(target)
                if previous is None:
                    raise ReadingCorrectionError(reading_id, "the baseline reading cannot be corrected")
                if reading < previous.reading:
                    raise NonMonotonicReadingError(property_id, reading, Decimal(previous.reading))

                old_consumption = Decimal(target.consumption)
                new_consumption = reading - previous.reading
                delta = new_consumption - old_consumption

                adjustment = None
                if delta != 0:
                    adjustment = await self.ledger.apply_consumption(
                        property_id, delta, allow_refund=True
                    )

                target.reading = reading
                target.consumption = new_consumption
                if notes is not None:
                    target.notes = notes
                await self.session.commit()
            except LedgerError:
                await self.session.rollback()
                raise
            except Exception as e:
                await self.session.rollback()
                logger.error("Error correcting reading %d: %s", reading_id, e, exc_info=True)
                raise

        logger.info(
            "Corrected reading %d for property %d: consumption %s -> %s",
            reading_id,
            property_id,
            old_consumption,
            new_consumption,
        )
        if adjustment is not None:
            await self.ledger.notify_if_low(adjustment)
        return target

    async def list_readings(
        self,
        property_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[MeterReading]:
        """Readings of a property within an optional date range, newest first."""
        return await self.repo.list_readings(
            property_id,
            as_utc(start) if start is not None else None,
            as_utc(end) if end is not None else None,
        )


__all__ = ["ATTEMPT_FAILED_NOTE", "MeterReadingRecorder"]
