"""Meter reading model - absolute water meter values and the consumption billed for them."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class MeterReading(Base, BaseModel):
    """Cumulative meter value for a property at a point in time.

    Attributes:
        property_id: Owning property
        reading: Absolute cumulative meter value (non-decreasing per property)
        consumption: Units debited for this reading; 0 when the debit was refused
        reading_date: When the meter showed this value
        is_estimated: Whether the value was estimated rather than read
        notes: Free-form notes, also used to flag refused debits
    """

    __tablename__ = "meter_readings"

    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"),
        nullable=False,
    )
    reading: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    consumption: Mapped[Decimal] = mapped_column(
        Numeric(14, 3), nullable=False, default=Decimal("0")
    )
    reading_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_estimated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)

    __table_args__ = (Index("idx_reading_property_date", "property_id", "reading_date"),)

    def __repr__(self) -> str:
        return (
            f"<MeterReading(id={self.id}, property_id={self.property_id}, reading={self.reading}, "
            f"consumption={self.consumption}, reading_date={self.reading_date})>"
        )


__all__ = ["MeterReading"]
