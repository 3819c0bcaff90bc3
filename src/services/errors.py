"""Ledger exception classes.

Every error carries a ``kind`` (configuration, validation, state_conflict,
resource, infrastructure) plus the ids and values involved, so the calling
layer can render a specific message from ``details()``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    """Base exception for ledger errors."""

    kind = "ledger"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def details(self) -> dict[str, Any]:
        """Structured representation for API responses and logs."""
        return {
            "error": type(self).__name__,
            "kind": self.kind,
            "message": self.message,
            **{key: _jsonable(value) for key, value in self.context.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ConfigurationError(LedgerError):
    """Requires admin action; retrying cannot help."""

    kind = "configuration"


class LedgerValidationError(LedgerError):
    """Input rejected synchronously; nothing was changed."""

    kind = "validation"


class StateConflictError(LedgerError):
    """Request conflicts with the stored state; terminal for the request."""

    kind = "state_conflict"


class ResourceError(LedgerError):
    """Not enough of a resource to complete the request."""

    kind = "resource"


class InfrastructureError(LedgerError):
    """Transient failure; the whole operation may be retried."""

    kind = "infrastructure"


# --- Configuration ---


class RateNotConfiguredError(ConfigurationError):
    def __init__(self, category: str, at_time: datetime) -> None:
        super().__init__(
            f"No rate schedule configured for category '{category}' at {at_time.isoformat()}",
            category=category,
            at_time=at_time,
        )
        self.category = category
        self.at_time = at_time


# --- Validation ---


class InvalidAmountError(LedgerValidationError):
    def __init__(self, field: str, value: Decimal) -> None:
        super().__init__(f"{field} must not be negative (got {value})", field=field, value=value)
        self.field = field
        self.value = value


class BelowMinimumChargeError(LedgerValidationError):
    def __init__(self, amount: Decimal, minimum_charge: Decimal, category: str) -> None:
        super().__init__(
            f"Amount {amount} is below the minimum charge of {minimum_charge}",
            amount=amount,
            minimum_charge=minimum_charge,
            category=category,
        )
        self.amount = amount
        self.minimum_charge = minimum_charge
        self.category = category


class NonMonotonicReadingError(LedgerValidationError):
    def __init__(self, property_id: int, reading: Decimal, previous_reading: Decimal) -> None:
        super().__init__(
            f"Reading {reading} is lower than the previous reading {previous_reading}",
            property_id=property_id,
            reading=reading,
            previous_reading=previous_reading,
        )
        self.property_id = property_id
        self.reading = reading
        self.previous_reading = previous_reading


class OutOfOrderReadingError(LedgerValidationError):
    def __init__(self, property_id: int, reading_date: datetime, latest_date: datetime) -> None:
        super().__init__(
            f"Reading dated {reading_date.isoformat()} is earlier than the latest reading "
            f"dated {latest_date.isoformat()}",
            property_id=property_id,
            reading_date=reading_date,
            latest_date=latest_date,
        )
        self.property_id = property_id
        self.reading_date = reading_date
        self.latest_date = latest_date


class ReadingCorrectionError(LedgerValidationError):
    def __init__(self, reading_id: int, reason: str) -> None:
        super().__init__(f"Reading {reading_id} cannot be corrected: {reason}", reading_id=reading_id)
        self.reading_id = reading_id


class InvalidRateScheduleError(LedgerValidationError):
    def __init__(self, reason: str, **context: Any) -> None:
        super().__init__(f"Invalid rate schedule: {reason}", **context)


class RateScheduleConflictError(LedgerValidationError):
    def __init__(self, category: str, effective_from: datetime, conflicting_id: int) -> None:
        super().__init__(
            f"Rate schedule for '{category}' starting {effective_from.isoformat()} overlaps "
            f"schedule {conflicting_id}",
            category=category,
            effective_from=effective_from,
            conflicting_id=conflicting_id,
        )
        self.category = category
        self.conflicting_id = conflicting_id


class PaymentNotCompletedError(LedgerValidationError):
    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(
            f"Payment {payment_id} is {status}, tokens are issued only for completed payments",
            payment_id=payment_id,
            status=status,
        )
        self.payment_id = payment_id
        self.status = status


class MeterMismatchError(LedgerValidationError):
    def __init__(self, code: str, meter_number: str, valid_for_meter: str) -> None:
        super().__init__(
            "Token is valid but cannot be used for this meter",
            meter_number=meter_number,
            valid_for_meter=valid_for_meter,
        )
        self.code = code
        self.meter_number = meter_number
        self.valid_for_meter = valid_for_meter


class CategoryMismatchError(LedgerValidationError):
    def __init__(self, property_id: int, payment_category: str, property_category: str) -> None:
        super().__init__(
            f"Payment is for category {payment_category} but property {property_id} is {property_category}",
            property_id=property_id,
            payment_category=payment_category,
            property_category=property_category,
        )
        self.property_id = property_id
        self.payment_category = payment_category
        self.property_category = property_category


# --- State conflicts ---


class PropertyNotFoundError(StateConflictError):
    def __init__(self, property_id: int) -> None:
        super().__init__(f"Property {property_id} not found", property_id=property_id)
        self.property_id = property_id


class ReadingNotFoundError(StateConflictError):
    def __init__(self, reading_id: int) -> None:
        super().__init__(f"Meter reading {reading_id} not found", reading_id=reading_id)
        self.reading_id = reading_id


class BaselineExistsError(StateConflictError):
    def __init__(self, property_id: int) -> None:
        super().__init__(
            f"Property {property_id} already has meter readings", property_id=property_id
        )
        self.property_id = property_id


class TokenNotFoundError(StateConflictError):
    def __init__(self, code: str) -> None:
        # Redemption codes are never echoed back to the caller
        super().__init__("Token not found")
        self.code = code


class TokenAlreadyRedeemedError(StateConflictError):
    def __init__(self, token_id: int, redeemed_at: datetime | None) -> None:
        super().__init__(
            "Token has already been used",
            token_id=token_id,
            redeemed_at=redeemed_at,
        )
        self.token_id = token_id
        self.redeemed_at = redeemed_at


class TokenExpiredError(StateConflictError):
    def __init__(self, token_id: int, expires_at: datetime) -> None:
        super().__init__("Token has expired", token_id=token_id, expires_at=expires_at)
        self.token_id = token_id
        self.expires_at = expires_at


# --- Resources ---


class InsufficientBalanceError(ResourceError):
    def __init__(self, property_id: int, current_balance: Decimal, required_units: Decimal) -> None:
        super().__init__(
            "Insufficient balance",
            property_id=property_id,
            current_balance=current_balance,
            required_units=required_units,
        )
        self.property_id = property_id
        self.current_balance = current_balance
        self.required_units = required_units


# --- Infrastructure ---


class TokenCodeExhaustedError(InfrastructureError):
    def __init__(self, payment_id: str, attempts: int) -> None:
        super().__init__(
            f"Could not generate a unique token code for payment {payment_id} "
            f"after {attempts} attempts",
            payment_id=payment_id,
            attempts=attempts,
        )
        self.payment_id = payment_id
        self.attempts = attempts


__all__ = [
    "BaselineExistsError",
    "BelowMinimumChargeError",
    "CategoryMismatchError",
    "ConfigurationError",
    "InfrastructureError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidRateScheduleError",
    "LedgerError",
    "LedgerValidationError",
    "MeterMismatchError",
    "NonMonotonicReadingError",
    "OutOfOrderReadingError",
    "PaymentNotCompletedError",
    "PropertyNotFoundError",
    "RateNotConfiguredError",
    "RateScheduleConflictError",
    "ReadingCorrectionError",
    "ReadingNotFoundError",
    "ResourceError",
    "StateConflictError",
    "TokenAlreadyRedeemedError",
    "TokenCodeExhaustedError",
    "TokenExpiredError",
    "TokenNotFoundError",
]
