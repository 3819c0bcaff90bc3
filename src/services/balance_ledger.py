"""Balance ledger: token redemption credits and consumption debits.

Unified balance rule: current_balance = redeemed units - applied consumption.

Every balance mutation runs under the per-property lock and is applied by the
repository as a compare-and-set write of Decimal values, so concurrent
redemptions and debits on one property are linearized and the balance can
never go negative. Redemption additionally holds the per-token lock and
flips ``is_redeemed`` with a compare-and-set, so exactly one caller credits a
token.
"""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from sqlalchemy.ext.asyncio import AsyncSession

from src.services.alerts import AlertTrigger, LoggingAlertTrigger, LowBalanceAlert
from src.services.config import LedgerSettings, get_settings
from src.services.errors import (
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerError,
    PropertyNotFoundError,
    TokenAlreadyRedeemedError,
    TokenNotFoundError,
)
from src.services.locks import KeyedLock, ledger_locks, property_key, token_key
from src.services.repository import LedgerRepository
from src.services.timeutils import Clock, as_utc, utcnow
from src.services.token_issuer import check_redeemable
from src.services.unit_converter import round_units, to_decimal

logger = logging.getLogger(__name__)


class RedemptionResult(NamedTuple):
    """Balance change caused by redeeming a token."""

    token_id: int
    property_id: int
    units: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    redeemed_at: datetime


class DebitResult(NamedTuple):
    """Balance change caused by applying consumption."""

    property_id: int
    consumption: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    low_balance: bool


class BalanceSummary(NamedTuple):
    """Snapshot of a property's prepaid position."""

    property_id: int
    current_balance: Decimal
    total_consumption: Decimal
    last_token_redemption: datetime | None
    last_top_up_units: Decimal | None
    last_reading: Decimal | None
    last_reading_date: datetime | None
    average_daily_consumption: Decimal
    estimated_days_remaining: int | None


class BalanceLedger:
    """Credit and debit property balances."""

    def __init__(
        self,
        session: AsyncSession,
        alert_trigger: AlertTrigger | None = None,
        settings: LedgerSettings | None = None,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize with database session.

        Args:
            session: AsyncSession for database operations
            alert_trigger: Receives low-balance alerts (default: log them)
            settings: Ledger settings (default: loaded from environment)
            clock: Source of "now"
            locks: Lock registry; defaults to the process-wide one
        """
        self.session = session
        self.repo = LedgerRepository(session)
        self.alert_trigger = alert_trigger or LoggingAlertTrigger()
        self.settings = settings or get_settings()
        self.clock = clock
        self.locks = locks or ledger_locks

    @property
    def low_balance_threshold(self) -> Decimal:
        return Decimal(self.settings.low_balance_threshold)

    # --- Credits ---

    async def redeem(self, code: str, meter_number: str | None = None) -> RedemptionResult:
        """Redeem a token and credit its units to the property balance.

        Args:
            code: Redemption code
            meter_number: Optional meter the caller is topping up; must match the token's

        Returns:
            RedemptionResult with previous and new balance

        Raises:
            TokenNotFoundError: Unknown code
            TokenAlreadyRedeemedError: Token was redeemed before (or concurrently)
            TokenExpiredError: Token is past expires_at
            MeterMismatchError: meter_number is not the token's meter
        """
        async with self.locks.hold(token_key(code)):
            try:
                token = await self.repo.get_token_by_code(code)
                if token is None:
                    raise TokenNotFoundError(code)

                async with self.locks.hold(property_key(token.property_id)):
                    property_obj = await self.repo.get_property(token.property_id, for_update=True)
                    if property_obj is None:
                        raise PropertyNotFoundError(token.property_id)

                    now = self.clock()
                    check_redeemable(token, property_obj, now, meter_number)

                    if not await self.repo.mark_token_redeemed(token.id, now):
                        current = await self.repo.get_token_by_code(code)
                        raise TokenAlreadyRedeemedError(
                            token.id, current.redeemed_at if current else None
                        )

                    units = Decimal(token.units)
                    new_balance = await self.repo.credit_balance(token.property_id, units, now)
                    await self.session.commit()
            except LedgerError as e:
                await self.session.rollback()
                logger.warning("Token redemption refused: %s", e.message)
                raise
            except Exception as e:
                await self.session.rollback()
                logger.error("Error redeeming token: %s", e, exc_info=True)
                raise

        result = RedemptionResult(
            token_id=token.id,
            property_id=token.property_id,
            units=units,
            previous_balance=new_balance - units,
            new_balance=new_balance,
            redeemed_at=now,
        )
        logger.info(
            "Balance updated for property %d: %s -> %s units (token %d)",
            result.property_id,
            result.previous_balance,
            result.new_balance,
            result.token_id,
        )
        return result

    # --- Debits ---

    async def debit(self, property_id: int, consumption: Decimal | int | float | str) -> DebitResult:
        """Deduct consumption from the balance and add it to total consumption.

        Raises:
            InvalidAmountError: Negative consumption
            PropertyNotFoundError: Unknown property
            InsufficientBalanceError: Balance is lower than consumption; nothing applied
        """
        consumption = to_decimal(consumption)
        if consumption < 0:
            raise InvalidAmountError("consumption", consumption)

        async with self.locks.hold(property_key(property_id)):
            try:
                result = await self.apply_consumption(property_id, consumption)
                await self.session.commit()
            except LedgerError:
                await self.session.rollback()
                raise
            except Exception as e:
                await self.session.rollback()
                logger.error("Error debiting property %d: %s", property_id, e, exc_info=True)
                raise

        await self.notify_if_low(result)
        return result

    async def adjust_consumption(
        self, property_id: int, delta: Decimal | int | float | str
    ) -> DebitResult:
        """Apply a signed correction to billed consumption.

        Positive ``delta`` charges more units, negative ``delta`` gives units back.
        """
        delta = to_decimal(delta)
        async with self.locks.hold(property_key(property_id)):
            try:
                result = await self.apply_consumption(property_id, delta, allow_refund=True)
                await self.session.commit()
            except LedgerError:
                await self.session.rollback()
                raise
            except Exception as e:
                await self.session.rollback()
                logger.error("Error adjusting property %d: %s", property_id, e, exc_info=True)
                raise

        await self.notify_if_low(result)
        return result

    async def apply_consumption(
        self,
        property_id: int,
        units: Decimal,
        allow_refund: bool = False,
    ) -> DebitResult:
        """Apply consumption inside the caller's transaction without committing.

        The caller must hold the property lock and commit or roll back. Used by
        the meter reading recorder so the debit and the reading row commit
        together.
        """
        if units < 0 and not allow_refund:
            raise InvalidAmountError("consumption", units)

        property_obj = await self.repo.get_property(property_id, for_update=True)
        if property_obj is None:
            raise PropertyNotFoundError(property_id)

        new_balance = await self.repo.apply_consumption(property_id, units)
        if new_balance is None:
            balance = await self.repo.get_balance(property_id)
            logger.warning(
                "Insufficient balance for property %d: %s available, %s required",
                property_id,
                balance,
                units,
            )
            raise InsufficientBalanceError(property_id, balance, units)

        previous_balance = new_balance + units
        logger.info(
            "Balance updated for property %d: %s -> %s units (consumption %s)",
            property_id,
            previous_balance,
            new_balance,
            units,
        )
        return DebitResult(
            property_id=property_id,
            consumption=units,
            previous_balance=previous_balance,
            new_balance=new_balance,
            low_balance=units >= 0 and new_balance <= self.low_balance_threshold,
        )

    async def notify_if_low(self, result: DebitResult) -> bool:
        """Fire the low-balance alert for a committed debit.

        Delivery failures are logged; the debit stays applied.

        Returns:
            True if an alert was due
        """
        if not result.low_balance:
            return False
        try:
            await self.alert_trigger(LowBalanceAlert(result.property_id, result.new_balance))
        except Exception as e:
            logger.error(
                "Low-balance alert for property %d failed: %s",
                result.property_id,
                e,
                exc_info=True,
            )
        return True

    # --- Reporting ---

    async def balance_summary(self, property_id: int, window_days: int = 30) -> BalanceSummary:
        """Current balance with usage estimates over the last ``window_days`` days.

        Raises:
            PropertyNotFoundError: Unknown property
        """
        property_obj = await self.repo.get_property(property_id)
        if property_obj is None:
            raise PropertyNotFoundError(property_id)

        last_token = await self.repo.last_redeemed_token(property_id)
        latest = await self.repo.latest_reading(property_id)

        since = self.clock() - timedelta(days=window_days)
        consumed = await self.repo.consumption_since(property_id, since)
        average = round_units(consumed / window_days) if window_days > 0 else Decimal("0.00")

        balance = Decimal(property_obj.current_balance)
        days_remaining = None
        if average > 0:
            days_remaining = int((balance / average).to_integral_value(rounding=ROUND_HALF_UP))

        return BalanceSummary(
            property_id=property_id,
            current_balance=balance,
            total_consumption=Decimal(property_obj.total_consumption),
            last_token_redemption=(
                as_utc(property_obj.last_token_redemption)
                if property_obj.last_token_redemption
                else None
            ),
            last_top_up_units=Decimal(last_token.units) if last_token else None,
            last_reading=Decimal(latest.reading) if latest else None,
            last_reading_date=as_utc(latest.reading_date) if latest else None,
            average_daily_consumption=average,
            estimated_days_remaining=days_remaining,
        )


__all__ = ["BalanceLedger", "BalanceSummary", "DebitResult", "RedemptionResult"]
