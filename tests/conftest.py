"""Pytest configuration: temporary SQLite ledger database and service fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from src.models.property import PropertyCategory
from src.models.rate_schedule import RateSchedule
from src.services.balance_ledger import BalanceLedger
from src.services.config import LedgerSettings
from src.services.db import create_engine_for, create_session_factory, init_models
from src.services.locks import KeyedLock
from src.services.meter_reading_service import MeterReadingRecorder
from src.services.rate_catalog import RateCatalog
from src.services.repository import LedgerRepository
from src.services.token_issuer import PaymentConfirmation, PaymentStatus, TokenIssuer
from src.services.unit_converter import UnitConverter

START = datetime(2025, 1, 1, tzinfo=timezone.utc)
RATES_FROM = START - timedelta(days=90)


class FakeClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingAlertTrigger:
    """Alert trigger that keeps every alert it receives."""

    def __init__(self) -> None:
        self.alerts = []

    async def __call__(self, alert) -> None:
        self.alerts.append(alert)


class FailingAlertTrigger:
    """Alert trigger whose delivery always fails."""

    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, alert) -> None:
        self.calls += 1
        raise ConnectionError("alert channel unavailable")


def payment_for(
    property_id: int,
    amount,
    payment_id: str = "PAY-001",
    category: PropertyCategory = PropertyCategory.COMMERCIAL,
    status: PaymentStatus = PaymentStatus.COMPLETED,
    confirmed_at: datetime | None = None,
) -> PaymentConfirmation:
    return PaymentConfirmation(
        payment_id=payment_id,
        property_id=property_id,
        property_category=category,
        amount=Decimal(str(amount)),
        status=status,
        confirmed_at=confirmed_at,
    )


@pytest.fixture
def settings(tmp_path):
    """Ledger settings pointing at a per-test database file."""
    return LedgerSettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        low_balance_threshold=Decimal("5"),
        log_file=str(tmp_path / "ledger.log"),
        telegram_bot_token="",
        alert_chat_id="",
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine_for(settings.database_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def alerts():
    return RecordingAlertTrigger()


@pytest_asyncio.fixture
async def properties(session):
    """One commercial, one low-density and one high-density property."""
    repo = LedgerRepository(session)
    commercial = await repo.add_property("Corner Shop", "MTR-C-001", PropertyCategory.COMMERCIAL)
    residential = await repo.add_property(
        "Plot 12", "MTR-R-012", PropertyCategory.RESIDENTIAL_LOW_DENSITY
    )
    flats = await repo.add_property(
        "Block B", "MTR-H-007", PropertyCategory.RESIDENTIAL_HIGH_DENSITY
    )
    await session.commit()
    return {"commercial": commercial.id, "residential": residential.id, "flats": flats.id}


@pytest_asyncio.fixture
async def rates(session):
    """Open rate schedules for the seeded property categories."""
    schedules = {
        "commercial": RateSchedule(
            category=PropertyCategory.COMMERCIAL,
            unit_price=Decimal("2.50"),
            fixed_charge=Decimal("20"),
            minimum_charge=Decimal("30"),
            effective_from=RATES_FROM,
        ),
        "residential": RateSchedule(
            category=PropertyCategory.RESIDENTIAL_LOW_DENSITY,
            unit_price=Decimal("1.25"),
            fixed_charge=Decimal("0"),
            minimum_charge=Decimal("0"),
            effective_from=RATES_FROM,
        ),
        "flats": RateSchedule(
            category=PropertyCategory.RESIDENTIAL_HIGH_DENSITY,
            unit_price=Decimal("1.00"),
            fixed_charge=Decimal("20"),
            minimum_charge=Decimal("0"),
            effective_from=RATES_FROM,
        ),
    }
    session.add_all(schedules.values())
    await session.commit()
    return {name: rate.id for name, rate in schedules.items()}


@pytest.fixture
def fund(session, clock):
    """Put units straight onto a property balance."""

    async def _fund(property_id: int, units) -> None:
        await LedgerRepository(session).credit_balance(property_id, Decimal(str(units)), clock())
        await session.commit()

    return _fund


@pytest.fixture
def catalog(session, clock, locks):
    return RateCatalog(session, clock=clock, locks=locks)


@pytest.fixture
def issuer(session, catalog, settings, clock, locks):
    return TokenIssuer(
        session, converter=UnitConverter(catalog), settings=settings, clock=clock, locks=locks
    )


@pytest.fixture
def ledger(session, alerts, settings, clock, locks):
    return BalanceLedger(session, alert_trigger=alerts, settings=settings, clock=clock, locks=locks)


@pytest.fixture
def recorder(session, ledger, clock, locks):
    return MeterReadingRecorder(session, ledger=ledger, clock=clock, locks=locks)


@pytest.fixture
def make_payment():
    return payment_for


@pytest.fixture
def failing_alerts():
    return FailingAlertTrigger()
