"""Token model - single-use prepaid credit voucher issued against a payment."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class Token(Base, BaseModel):
    """Redeemable voucher for a fixed quantity of volume units.

    A token moves from issued to redeemed exactly once. Expiry is never stored
    as a transition; it is checked against expires_at at redemption time.
    Tokens are kept forever for audit.
    """

    __tablename__ = "tokens"

    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"),
        nullable=False,
        index=True,
    )
    payment_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Source payment; unique so a payment can never yield two tokens",
    )
    code: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        comment="Redemption code entered by the customer or device",
    )

    units: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    issued_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    is_redeemed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_token_property_redeemed", "property_id", "is_redeemed"),)

    def __repr__(self) -> str:
        return (
            f"<Token(id={self.id}, property_id={self.property_id}, payment_id={self.payment_id!r}, "
            f"units={self.units}, is_redeemed={self.is_redeemed}, expires_at={self.expires_at})>"
        )


__all__ = ["Token"]
