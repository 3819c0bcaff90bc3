"""Prepaid water ledger services.

Each service wraps one AsyncSession and commits its own unit of work.
"""

from src.services.alerts import (
    AlertTrigger,
    LoggingAlertTrigger,
    LowBalanceAlert,
    TelegramAlertTrigger,
    build_alert_trigger,
)
from src.services.balance_ledger import BalanceLedger, BalanceSummary, DebitResult, RedemptionResult
from src.services.meter_reading_service import MeterReadingRecorder
from src.services.rate_catalog import RateCatalog
from src.services.token_issuer import PaymentConfirmation, PaymentStatus, TokenIssuer, TokenStatus
from src.services.unit_converter import ConversionResult, UnitConverter

__all__ = [
    "AlertTrigger",
    "BalanceLedger",
    "BalanceSummary",
    "ConversionResult",
    "DebitResult",
    "LoggingAlertTrigger",
    "LowBalanceAlert",
    "MeterReadingRecorder",
    "PaymentConfirmation",
    "PaymentStatus",
    "RateCatalog",
    "RedemptionResult",
    "TelegramAlertTrigger",
    "TokenIssuer",
    "TokenStatus",
    "UnitConverter",
    "build_alert_trigger",
]
