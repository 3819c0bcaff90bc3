"""Operator CLI for the prepaid water ledger.

Usage:
    python -m src.cli.ledger init-db
    python -m src.cli.ledger add-property "Plot 12" MTR-0012 residential_low_density
    python -m src.cli.ledger set-rate commercial 2.50 --fixed-charge 20 --minimum-charge 30
    python -m src.cli.ledger issue-token PAY-001 1 100
    python -m src.cli.ledger redeem 1234567890123456 --meter MTR-0012
    python -m src.cli.ledger record-reading 1 42.5
    python -m src.cli.ledger balance 1

Exit Codes:
    0 - Success
    1 - Request rejected by the ledger (details on stderr)
    2 - Unexpected failure

Logging:
    LOG_LEVEL level logs to both stdout and LOG_FILE
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.property import PropertyCategory
from src.services.alerts import build_alert_trigger
from src.services.balance_ledger import BalanceLedger
from src.services.config import LedgerSettings, get_settings
from src.services.db import create_engine_for, create_session_factory, init_models
from src.services.errors import LedgerError, PropertyNotFoundError
from src.services.logging import setup_ledger_logging
from src.services.meter_reading_service import MeterReadingRecorder
from src.services.rate_catalog import RateCatalog
from src.services.repository import LedgerRepository
from src.services.token_issuer import PaymentConfirmation, PaymentStatus, TokenIssuer

logger = logging.getLogger(__name__)


def _timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger", description="Prepaid water ledger")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create ledger tables")

    add_property = commands.add_parser("add-property", help="Register a metered property")
    add_property.add_argument("name")
    add_property.add_argument("meter_number")
    add_property.add_argument("category", choices=[c.value for c in PropertyCategory])
    add_property.add_argument(
        "--baseline", type=Decimal, default=Decimal("0"), help="Starting meter value"
    )

    set_rate = commands.add_parser("set-rate", help="Activate or update a rate schedule")
    set_rate.add_argument("category", choices=[c.value for c in PropertyCategory])
    set_rate.add_argument("unit_price", type=Decimal)
    set_rate.add_argument("--fixed-charge", type=Decimal, default=Decimal("0"))
    set_rate.add_argument("--minimum-charge", type=Decimal, default=Decimal("0"))
    set_rate.add_argument("--effective-from", type=_timestamp, default=None)
    set_rate.add_argument("--effective-until", type=_timestamp, default=None)
    set_rate.add_argument("--description", default=None)

    issue = commands.add_parser("issue-token", help="Issue a token for a completed payment")
    issue.add_argument("payment_id")
    issue.add_argument("property_id", type=int)
    issue.add_argument("amount", type=Decimal)
    issue.add_argument("--confirmed-at", type=_timestamp, default=None)

    redeem = commands.add_parser("redeem", help="Redeem a token code")
    redeem.add_argument("code")
    redeem.add_argument("--meter", dest="meter_number", default=None)

    reading = commands.add_parser("record-reading", help="Record a meter reading")
    reading.add_argument("property_id", type=int)
    reading.add_argument("value", type=Decimal)
    reading.add_argument(
        "--raw", action="store_true", help="Treat value as consumed units, not a meter value"
    )
    reading.add_argument("--date", dest="reading_date", type=_timestamp, default=None)
    reading.add_argument("--estimated", action="store_true")
    reading.add_argument("--notes", default=None)

    balance = commands.add_parser("balance", help="Show a property's balance")
    balance.add_argument("property_id", type=int)
    balance.add_argument("--window-days", type=int, default=30)

    return parser


def _emit(payload: dict) -> None:
    print(json.dumps(payload, default=str, indent=2))


async def _add_property(args: argparse.Namespace, session: AsyncSession, settings: LedgerSettings) -> None:
    # The property is only flushed; seeding the baseline commits both rows or neither
    repo = LedgerRepository(session)
    try:
        property_obj = await repo.add_property(args.name, args.meter_number, args.category)
        baseline = await MeterReadingRecorder(session).seed_baseline(property_obj.id, args.baseline)
    except Exception:
        await session.rollback()
        raise
    _emit({"property_id": property_obj.id, "baseline_reading_id": baseline.id})


async def _set_rate(args: argparse.Namespace, session: AsyncSession, settings: LedgerSettings) -> None:
    rate = await RateCatalog(session).upsert(
        args.category,
        args.unit_price,
        fixed_charge=args.fixed_charge,
        minimum_charge=args.minimum_charge,
        effective_from=args.effective_from,
        effective_until=args.effective_until,
        description=args.description,
    )
    _emit({"rate_id": rate.id, "category": args.category, "effective_from": rate.effective_from})


async def _issue_token(args: argparse.Namespace, session: AsyncSession, settings: LedgerSettings) -> None:
    property_obj = await LedgerRepository(session).get_property(args.property_id)
    if property_obj is None:
        raise PropertyNotFoundError(args.property_id)
    payment = PaymentConfirmation(
        payment_id=args.payment_id,
        property_id=args.property_id,
        property_category=property_obj.category,
        amount=args.amount,
        status=PaymentStatus.COMPLETED,
        confirmed_at=args.confirmed_at,
    )
    token = await TokenIssuer(session, settings=settings).issue(payment)
    _emit({"token_id": token.id, "code": token.code, "units": token.units, "expires_at": token.expires_at})


async def _redeem(args: argparse.Namespace, session: AsyncSession, settings: LedgerSettings) -> None:
    ledger = BalanceLedger(session, alert_trigger=build_alert_trigger(settings), settings=settings)
    result = await ledger.redeem(args.code, args.meter_number)
    _emit(result._asdict())


async def _record_reading(args: argparse.Namespace, session: AsyncSession, settings: LedgerSettings) -> None:
    ledger = BalanceLedger(session, alert_trigger=build_alert_trigger(settings), settings=settings)
    recorder = MeterReadingRecorder(session, ledger=ledger)
    if args.raw:
        reading = await recorder.record_raw_consumption(
            args.property_id, args.value, args.reading_date, notes=args.notes
        )
    else:
        reading = await recorder.record_reading(
            args.property_id,
            args.value,
            args.reading_date,
            is_estimated=args.estimated,
            notes=args.notes,
        )
    _emit(
        {
            "reading_id": reading.id,
            "reading": reading.reading,
            "consumption": reading.consumption,
            "reading_date": reading.reading_date,
        }
    )


async def _balance(args: argparse.Namespace, session: AsyncSession, settings: LedgerSettings) -> None:
    summary = await BalanceLedger(session, settings=settings).balance_summary(
        args.property_id, window_days=args.window_days
    )
    _emit(summary._asdict())


COMMANDS = {
    "add-property": _add_property,
    "set-rate": _set_rate,
    "issue-token": _issue_token,
    "redeem": _redeem,
    "record-reading": _record_reading,
    "balance": _balance,
}


async def run(args: argparse.Namespace, settings: LedgerSettings | None = None) -> int:
    """Execute one CLI command against the configured database.

    Returns:
        Exit code
    """
    settings = settings or get_settings()
    engine = create_engine_for(settings.database_url)
    try:
        if args.command == "init-db":
            await init_models(engine)
            logger.info("Ledger tables created at %s", settings.database_url)
            return 0

        session_factory = create_session_factory(engine)
        async with session_factory() as session:
            await COMMANDS[args.command](args, session, settings)
        return 0
    except LedgerError as e:
        logger.warning("%s rejected: %s", args.command, e.message)
        print(json.dumps(e.details(), indent=2), file=sys.stderr)
        return 1
    except Exception as e:
        logger.error("%s failed: %s", args.command, e, exc_info=True)
        return 2
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the ledger CLI."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_ledger_logging(settings.log_file, settings.log_level)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
