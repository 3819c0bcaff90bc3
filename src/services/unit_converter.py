"""Convert monetary payments into prepaid volume units."""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from src.models.property import PropertyCategory
from src.services.errors import BelowMinimumChargeError, InvalidAmountError
from src.services.rate_catalog import RateCatalog

logger = logging.getLogger(__name__)

UNIT_PRECISION = Decimal("0.01")


class ConversionResult(NamedTuple):
    """Outcome of converting a payment amount into units."""

    units: Decimal
    billable: Decimal
    rate_id: int


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Coerce a numeric input to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_units(value: Decimal) -> Decimal:
    """Round to two decimal places, halves away from zero."""
    return value.quantize(UNIT_PRECISION, rounding=ROUND_HALF_UP)


class UnitConverter:
    """Turn an amount of money into volume units using the resolved rate."""

    def __init__(self, catalog: RateCatalog) -> None:
        self.catalog = catalog

    async def convert(
        self,
        amount: Decimal | int | float | str,
        category: PropertyCategory | str,
        at_time: datetime | None = None,
    ) -> ConversionResult:
        """Convert ``amount`` into units for ``category`` at ``at_time``.

        The fixed charge is taken off first; a payment fully absorbed by the
        fixed charge converts to zero units, which is a valid result.

        Raises:
            InvalidAmountError: If amount is negative
            RateNotConfiguredError: If no rate covers the instant
            BelowMinimumChargeError: If amount is below the rate's minimum charge
        """
        amount = to_decimal(amount)
        if amount < 0:
            raise InvalidAmountError("amount", amount)

        rate = await self.catalog.resolve(category, at_time)

        if amount < rate.minimum_charge:
            logger.warning(
                "Amount %s below minimum charge %s for %s",
                amount,
                rate.minimum_charge,
                rate.category,
            )
            raise BelowMinimumChargeError(
                amount, Decimal(rate.minimum_charge), PropertyCategory(category).value
            )

        billable = amount - rate.fixed_charge
        if billable <= 0:
            logger.info(
                "Amount %s fully absorbed by fixed charge %s (rate %d)",
                amount,
                rate.fixed_charge,
                rate.id,
            )
            return ConversionResult(units=Decimal("0.00"), billable=Decimal("0.00"), rate_id=rate.id)

        units = round_units(billable / rate.unit_price)
        logger.debug("Converted %s into %s units with rate %d", amount, units, rate.id)
        return ConversionResult(units=units, billable=billable, rate_id=rate.id)


__all__ = ["ConversionResult", "UnitConverter", "round_units", "to_decimal"]
