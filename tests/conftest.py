"""Pytest configuration: in-memory database, settings and seeded billing data."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from meterbill.models import (
    Account,
    Base,
    Bill,
    BillStatus,
    Meter,
    MeterReading,
    Payment,
    PaymentStatus,
    ReconciliationStatus,
    Tariff,
)
from meterbill.services.config import BillingSettings
from meterbill.services.dates import month_key
from meterbill.services.db import build_engine, build_session_factory
from meterbill.services.tariff_resolver import tariff_cache


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def clear_tariff_cache():
    """Ids repeat across in-memory databases, so cached resolutions must not leak between tests."""
    tariff_cache.invalidate()
    yield
    tariff_cache.invalidate()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> BillingSettings:
        overrides.setdefault("database_url", "sqlite:///:memory:")
        return BillingSettings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_account(db):
    counter = {"n": 0}

    def _make(is_active: bool = True, name: str = "Test Account") -> Account:
        counter["n"] += 1
        account = Account(
            account_number=f"ACC-{counter['n']:04d}",
            name=name,
            is_active=is_active,
        )
        db.add(account)
        db.commit()
        return account

    return _make


@pytest.fixture
def account(make_account):
    return make_account()


@pytest.fixture
def make_meter(db):
    counter = {"n": 0}

    def _make(account: Account, meter_type: str = "water") -> Meter:
        counter["n"] += 1
        meter = Meter(
            account_id=account.id,
            meter_number=f"M-{counter['n']:04d}",
            meter_type=meter_type,
            installation_date=date(2023, 12, 1),
        )
        db.add(meter)
        db.commit()
        return meter

    return _make


@pytest.fixture
def meter(make_meter, account):
    return make_meter(account)


@pytest.fixture
def make_tariff(db):
    def _make(
        rate: str = "2.00",
        meter_type: str | None = "water",
        effective_from: date = date(2024, 1, 1),
        effective_to: date | None = None,
        is_default: bool = False,
        name: str | None = None,
    ) -> Tariff:
        tariff = Tariff(
            name=name or f"{meter_type or 'any'} @ {rate}",
            meter_type=meter_type,
            rate=Decimal(rate),
            effective_from=effective_from,
            effective_to=effective_to,
            is_default=is_default,
            is_active=True,
        )
        db.add(tariff)
        db.commit()
        return tariff

    return _make


@pytest.fixture
def tariff(make_tariff):
    return make_tariff()


@pytest.fixture
def add_reading(db):
    """Insert a reading directly, bypassing validation."""

    def _add(meter: Meter, value: str, on_date: date) -> MeterReading:
        reading = MeterReading(
            meter_id=meter.id,
            reading_value=Decimal(value),
            reading_date=on_date,
            reading_month=month_key(on_date),
        )
        db.add(reading)
        db.commit()
        return reading

    return _add


@pytest.fixture
def make_bill(db, account):
    """Insert a bill directly (no detail lines) for allocation tests."""

    def _make(
        total: str,
        period: str = "2024-01",
        issued_at: date = date(2024, 2, 1),
        due_date: date | None = None,
        status: BillStatus = BillStatus.PENDING,
        account_id: int | None = None,
        is_disputed: bool = False,
    ) -> Bill:
        bill = Bill(
            account_id=account_id or account.id,
            billing_period=period,
            total_amount=Decimal(total),
            paid_amount=Decimal("0"),
            balance=Decimal(total),
            status=status,
            is_disputed=is_disputed,
            issued_at=issued_at,
            due_date=due_date or issued_at + timedelta(days=14),
        )
        db.add(bill)
        db.commit()
        return bill

    return _make


@pytest.fixture
def make_payment(db, account):
    """Insert a completed, unreconciled payment directly."""

    def _make(
        amount: str,
        payment_date: date = date(2024, 3, 1),
        status: PaymentStatus = PaymentStatus.COMPLETED,
        account_id: int | None = None,
    ) -> Payment:
        payment = Payment(
            account_id=account_id or account.id,
            amount=Decimal(amount),
            method="bank",
            status=status,
            reconciliation_status=ReconciliationStatus.PENDING,
            payment_date=payment_date,
            refund_amount=Decimal("0"),
        )
        db.add(payment)
        db.commit()
        return payment

    return _make
