"""Property ORM model holding the prepaid water balance of a metered property."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, DateTime, Index, Numeric, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class PropertyCategory(str, Enum):
    """Property class used to pick the applicable rate schedule."""

    RESIDENTIAL_LOW_DENSITY = "residential_low_density"
    RESIDENTIAL_HIGH_DENSITY = "residential_high_density"
    COMMERCIAL = "commercial"
    INDUSTRIAL = "industrial"
    AGRICULTURAL = "agricultural"


class Property(Base, BaseModel):
    """Model representing a metered property and its prepaid balance.

    current_balance holds the remaining prepaid volume units and must never be
    negative. total_consumption accumulates every unit debited from the balance.
    Both fields are written only through the balance ledger, which computes
    new values in Decimal and writes them with a compare-and-set UPDATE.
    """

    __tablename__ = "properties"

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    meter_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Physical meter identifier, checked when a token is redeemed",
    )
    category: Mapped[PropertyCategory] = mapped_column(
        SAEnum(
            PropertyCategory,
            name="property_category",
            native_enum=False,
            length=50,
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        index=True,
    )

    # Volume units
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 3),
        nullable=False,
        default=Decimal("0"),
    )
    total_consumption: Mapped[Decimal] = mapped_column(
        Numeric(14, 3),
        nullable=False,
        default=Decimal("0"),
    )

    last_token_redemption: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Soft-delete flag; properties referenced by tokens or readings are never removed
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        index=True,
    )

    __table_args__ = (Index("idx_property_category_active", "category", "is_active"),)

    def __repr__(self) -> str:
        return (
            f"<Property(id={self.id}, name={self.name!r}, meter_number={self.meter_number!r}, "
            f"category={self.category}, current_balance={self.current_balance}, "
            f"total_consumption={self.total_consumption})>"
        )


__all__ = ["Property", "PropertyCategory"]
