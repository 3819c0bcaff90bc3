"""Rate schedule model - time-bounded price policy per property category."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Numeric, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel
from src.models.property import PropertyCategory


class RateSchedule(Base, BaseModel):
    """Price policy for a property category over [effective_from, effective_until).

    Attributes:
        category: Property category the schedule applies to
        unit_price: Currency per volume unit (> 0)
        fixed_charge: Currency subtracted from a payment before conversion (>= 0)
        minimum_charge: Smallest accepted payment (>= 0)
        effective_from: Inclusive start of the window
        effective_until: Exclusive end of the window, None while open
        description: Optional admin notes
    """

    __tablename__ = "rate_schedules"

    category: Mapped[PropertyCategory] = mapped_column(
        SAEnum(
            PropertyCategory,
            name="property_category",
            native_enum=False,
            length=50,
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    fixed_charge: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    minimum_charge: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)

    __table_args__ = (
        Index("idx_rate_category_from", "category", "effective_from", unique=True),
        Index("idx_rate_category_until", "category", "effective_until"),
    )

    @property
    def is_open(self) -> bool:
        return self.effective_until is None

    def __repr__(self) -> str:
        return (
            f"<RateSchedule(id={self.id}, category={self.category}, unit_price={self.unit_price}, "
            f"fixed_charge={self.fixed_charge}, minimum_charge={self.minimum_charge}, "
            f"effective_from={self.effective_from}, effective_until={self.effective_until})>"
        )


__all__ = ["RateSchedule"]
