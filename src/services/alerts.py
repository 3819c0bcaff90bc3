"""Low-balance alert delivery.

The ledger hands a LowBalanceAlert to an AlertTrigger after a debit has been
committed. Triggers own no state; delivery is best effort and a failure is
reported back to the ledger, which logs it without undoing the debit.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from telegram import Bot

from src.services.config import LedgerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LowBalanceAlert:
    """Balance of a property dropped to or below the low-balance threshold."""

    property_id: int
    current_balance: Decimal


class AlertTrigger(Protocol):
    async def __call__(self, alert: LowBalanceAlert) -> None: ...


class LoggingAlertTrigger:
    """Write low-balance alerts to the log."""

    async def __call__(self, alert: LowBalanceAlert) -> None:
        logger.warning(
            "Low balance for property %d: %s units remaining",
            alert.property_id,
            alert.current_balance,
        )


class TelegramAlertTrigger:
    """Send low-balance alerts to a Telegram chat."""

    def __init__(self, bot: Bot, chat_id: str) -> None:
        self.bot = bot
        self.chat_id = chat_id

    @staticmethod
    def format_message(alert: LowBalanceAlert) -> str:
        return (
            f"<b>Low water balance</b>\n"
            f"Property #{alert.property_id} has {alert.current_balance} units left.\n"
            f"Buy a token to avoid interruption."
        )

    async def __call__(self, alert: LowBalanceAlert) -> None:
        await self.bot.send_message(
            chat_id=int(self.chat_id),
            text=self.format_message(alert),
            parse_mode="HTML",
        )
        logger.info("Low-balance alert for property %d sent to Telegram", alert.property_id)


def build_alert_trigger(settings: LedgerSettings) -> AlertTrigger:
    """Pick the alert delivery configured in settings."""
    if settings.telegram_alerts_enabled:
        return TelegramAlertTrigger(Bot(settings.telegram_bot_token), settings.alert_chat_id)
    return LoggingAlertTrigger()


__all__ = [
    "AlertTrigger",
    "LoggingAlertTrigger",
    "LowBalanceAlert",
    "TelegramAlertTrigger",
    "build_alert_trigger",
]
