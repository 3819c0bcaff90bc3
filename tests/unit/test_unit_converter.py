"""Unit tests for UnitConverter."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.models.property import PropertyCategory
from src.models.rate_schedule import RateSchedule
from src.services.errors import BelowMinimumChargeError, InvalidAmountError, RateNotConfiguredError
from src.services.rate_catalog import RateCatalog
from src.services.unit_converter import UnitConverter, round_units, to_decimal

from conftest import START


def make_rate(unit_price="2.50", fixed_charge="20", minimum_charge="30", rate_id=7):
    return RateSchedule(
        id=rate_id,
        category=PropertyCategory.COMMERCIAL,
        unit_price=Decimal(unit_price),
        fixed_charge=Decimal(fixed_charge),
        minimum_charge=Decimal(minimum_charge),
        effective_from=START,
    )


@pytest.fixture
def mock_catalog():
    """Create a catalog whose resolve() returns the commercial rate."""
    catalog = MagicMock(spec=RateCatalog)
    catalog.resolve = AsyncMock(return_value=make_rate())
    return catalog


class TestConvert:
    """Tests for converting money into units."""

    @pytest.mark.asyncio
    async def test_fixed_charge_taken_off_before_conversion(self, mock_catalog):
        """(100 - 20) / 2.50 = 32.00 units."""
        converter = UnitConverter(mock_catalog)

        result = await converter.convert(Decimal("100"), PropertyCategory.COMMERCIAL, START)

        assert result.units == Decimal("32.00")
        assert result.billable == Decimal("80")
        assert result.rate_id == 7
        mock_catalog.resolve.assert_awaited_once_with(PropertyCategory.COMMERCIAL, START)

    @pytest.mark.asyncio
    async def test_amount_equal_to_minimum_charge_is_accepted(self, mock_catalog):
        converter = UnitConverter(mock_catalog)

        result = await converter.convert(Decimal("30"), PropertyCategory.COMMERCIAL)

        assert result.units == Decimal("4.00")

    @pytest.mark.asyncio
    async def test_amount_below_minimum_charge_is_rejected(self, mock_catalog):
        """A cent below the minimum charge issues no partial units."""
        converter = UnitConverter(mock_catalog)

        with pytest.raises(BelowMinimumChargeError) as exc_info:
            await converter.convert(Decimal("29.99"), PropertyCategory.COMMERCIAL)

        assert exc_info.value.minimum_charge == Decimal("30")
        assert exc_info.value.category == "commercial"

    @pytest.mark.asyncio
    async def test_payment_absorbed_by_fixed_charge_gives_zero_units(self):
        catalog = MagicMock(spec=RateCatalog)
        catalog.resolve = AsyncMock(return_value=make_rate(fixed_charge="20", minimum_charge="0"))
        converter = UnitConverter(catalog)

        result = await converter.convert(Decimal("20"), PropertyCategory.COMMERCIAL)

        assert result.units == Decimal("0.00")
        assert result.billable == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_zero_amount_with_no_charges_gives_zero_units(self):
        catalog = MagicMock(spec=RateCatalog)
        catalog.resolve = AsyncMock(return_value=make_rate(fixed_charge="0", minimum_charge="0"))

        result = await UnitConverter(catalog).convert(0, PropertyCategory.COMMERCIAL)

        assert result.units == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_rounds_half_away_from_zero(self):
        """10.05 / 2 = 5.025 rounds up to 5.03, not to the even 5.02."""
        catalog = MagicMock(spec=RateCatalog)
        catalog.resolve = AsyncMock(
            return_value=make_rate(unit_price="2", fixed_charge="0", minimum_charge="0")
        )

        result = await UnitConverter(catalog).convert(Decimal("10.05"), PropertyCategory.COMMERCIAL)

        assert result.units == Decimal("5.03")

    @pytest.mark.asyncio
    async def test_negative_amount_rejected_before_rate_lookup(self, mock_catalog):
        with pytest.raises(InvalidAmountError):
            await UnitConverter(mock_catalog).convert(Decimal("-1"), PropertyCategory.COMMERCIAL)

        mock_catalog.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_rate_propagates(self):
        catalog = MagicMock(spec=RateCatalog)
        catalog.resolve = AsyncMock(side_effect=RateNotConfiguredError("industrial", START))

        with pytest.raises(RateNotConfiguredError):
            await UnitConverter(catalog).convert(Decimal("50"), PropertyCategory.INDUSTRIAL)

    @pytest.mark.asyncio
    async def test_against_stored_rates(self, catalog, rates):
        """Conversion through a real catalog picks the category's schedule."""
        result = await UnitConverter(catalog).convert(
            "100", PropertyCategory.RESIDENTIAL_LOW_DENSITY, START
        )

        assert result.units == Decimal("80.00")
        assert result.rate_id == rates["residential"]


class TestHelpers:
    """Tests for decimal helpers."""

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(3) == Decimal("3")

    def test_round_units(self):
        assert round_units(Decimal("1.005")) == Decimal("1.01")
        assert round_units(Decimal("-1.005")) == Decimal("-1.01")
        assert round_units(Decimal("2.004")) == Decimal("2.00")
