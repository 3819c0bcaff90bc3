"""Token issuance for confirmed payments.

Payment events may be delivered more than once. Issuance is idempotent per
payment: the first delivery creates the token, every later delivery gets the
same token back. The unique constraint on ``tokens.payment_id`` backs this
across processes, and the unique constraint on ``tokens.code`` turns a code
collision into a retry with a fresh code.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, NamedTuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.property import Property, PropertyCategory
from src.models.token import Token
from src.services.config import LedgerSettings, get_settings
from src.services.errors import (
    CategoryMismatchError,
    MeterMismatchError,
    PaymentNotCompletedError,
    PropertyNotFoundError,
    TokenAlreadyRedeemedError,
    TokenCodeExhaustedError,
    TokenExpiredError,
    TokenNotFoundError,
)
from src.services.locks import KeyedLock, ledger_locks, payment_key
from src.services.rate_catalog import RateCatalog
from src.services.repository import LedgerRepository
from src.services.timeutils import Clock, as_utc, utcnow
from src.services.unit_converter import UnitConverter, to_decimal

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    """Lifecycle of a payment at the gateway."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class PaymentConfirmation:
    """Payment event delivered by the payment source."""

    payment_id: str
    property_id: int
    property_category: PropertyCategory
    amount: Decimal
    status: PaymentStatus
    confirmed_at: datetime | None = None


class TokenStatus(NamedTuple):
    """A token that would redeem right now."""

    token_id: int
    property_id: int
    units: Decimal
    expires_at: datetime
    meter_number: str


def generate_code(length: int) -> str:
    """Random numeric redemption code."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


def check_redeemable(
    token: Token,
    property_obj: Property,
    now: datetime,
    meter_number: str | None = None,
) -> None:
    """Raise if ``token`` cannot be redeemed at ``now``.

    Raises:
        TokenAlreadyRedeemedError: Token was redeemed before
        TokenExpiredError: now is past expires_at
        MeterMismatchError: meter_number given and not the token's meter
    """
    if token.is_redeemed:
        raise TokenAlreadyRedeemedError(token.id, token.redeemed_at)
    if now > as_utc(token.expires_at):
        raise TokenExpiredError(token.id, as_utc(token.expires_at))
    if meter_number and meter_number != property_obj.meter_number:
        raise MeterMismatchError(token.code, meter_number, property_obj.meter_number)


class TokenIssuer:
    """Create tokens for completed payments."""

    def __init__(
        self,
        session: AsyncSession,
        converter: UnitConverter | None = None,
        settings: LedgerSettings | None = None,
        clock: Clock = utcnow,
        code_generator: Callable[[int], str] = generate_code,
        locks: KeyedLock | None = None,
    ) -> None:
        self.session = session
        self.repo = LedgerRepository(session)
        self.converter = converter or UnitConverter(RateCatalog(session, clock=clock))
        self.settings = settings or get_settings()
        self.clock = clock
        self.code_generator = code_generator
        self.locks = locks or ledger_locks

    async def issue(self, payment: PaymentConfirmation) -> Token:
        """Issue the token for ``payment``, or return the one already issued.

        Does not touch the property balance; that happens at redemption.

        Raises:
            PaymentNotCompletedError: Payment status is not completed
            PropertyNotFoundError: Payment references an unknown property
            CategoryMismatchError: Payment category differs from the property category
            RateNotConfiguredError / BelowMinimumChargeError: From unit conversion
            TokenCodeExhaustedError: No unique code after the configured attempts
        """
        status = PaymentStatus(payment.status)
        if status is not PaymentStatus.COMPLETED:
            logger.warning("Refusing to issue token for %s payment %s", status.value, payment.payment_id)
            raise PaymentNotCompletedError(payment.payment_id, status.value)

        async with self.locks.hold(payment_key(payment.payment_id)):
            existing = await self.repo.get_token_by_payment(payment.payment_id)
            if existing is not None:
                logger.info(
                    "Token %d already issued for payment %s, returning it",
                    existing.id,
                    payment.payment_id,
                )
                return existing

            property_obj = await self.repo.get_property(payment.property_id)
            if property_obj is None:
                raise PropertyNotFoundError(payment.property_id)

            category = PropertyCategory(payment.property_category)
            if category is not property_obj.category:
                logger.warning(
                    "Payment %s priced as %s but property %d is %s",
                    payment.payment_id,
                    category.value,
                    property_obj.id,
                    property_obj.category.value,
                )
                raise CategoryMismatchError(property_obj.id, category.value, property_obj.category.value)

            issued_at = self.clock()
            priced_at = as_utc(payment.confirmed_at) if payment.confirmed_at else issued_at
            amount = to_decimal(payment.amount)
            conversion = await self.converter.convert(amount, category, priced_at)
            expires_at = issued_at + timedelta(days=self.settings.token_validity_days)

            return await self._insert_with_unique_code(
                payment, amount, conversion.units, issued_at, expires_at
            )

    async def _insert_with_unique_code(
        self,
        payment: PaymentConfirmation,
        amount: Decimal,
        units: Decimal,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Token:
        attempts = self.settings.token_code_max_attempts
        for attempt in range(1, attempts + 1):
            token = Token(
                property_id=payment.property_id,
                payment_id=payment.payment_id,
                code=self.code_generator(self.settings.token_code_length),
                units=units,
                issued_amount=amount,
                is_redeemed=False,
                issued_at=issued_at,
                expires_at=expires_at,
            )
            self.session.add(token)
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                # Another worker may have issued for the same payment in the meantime
                winner = await self.repo.get_token_by_payment(payment.payment_id)
                if winner is not None:
                    logger.info(
                        "Payment %s was issued concurrently as token %d",
                        payment.payment_id,
                        winner.id,
                    )
                    return winner
                logger.warning(
                    "Token code collision for payment %s (attempt %d/%d)",
                    payment.payment_id,
                    attempt,
                    attempts,
                )
                continue
            except Exception:
                await self.session.rollback()
                raise

            logger.info(
                "Issued token %d for payment %s: %s units for property %d, expires %s",
                token.id,
                payment.payment_id,
                units,
                payment.property_id,
                expires_at.isoformat(),
            )
            return token

        logger.error("Giving up on token code generation for payment %s", payment.payment_id)
        raise TokenCodeExhaustedError(payment.payment_id, attempts)

    async def verify(self, code: str, meter_number: str | None = None) -> TokenStatus:
        """Check that ``code`` would redeem now, without redeeming it.

        Raises:
            TokenNotFoundError, TokenAlreadyRedeemedError, TokenExpiredError,
            MeterMismatchError: Same rules as redemption
        """
        token = await self.repo.get_token_by_code(code)
        if token is None:
            raise TokenNotFoundError(code)
        property_obj = await self.repo.get_property(token.property_id)
        if property_obj is None:
            raise PropertyNotFoundError(token.property_id)

        check_redeemable(token, property_obj, self.clock(), meter_number)
        return TokenStatus(
            token_id=token.id,
            property_id=token.property_id,
            units=token.units,
            expires_at=as_utc(token.expires_at),
            meter_number=property_obj.meter_number,
        )


__all__ = [
    "PaymentConfirmation",
    "PaymentStatus",
    "TokenIssuer",
    "TokenStatus",
    "check_redeemable",
    "generate_code",
]
