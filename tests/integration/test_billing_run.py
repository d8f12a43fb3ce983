"""Integration tests for bulk bill generation across accounts."""

from datetime import date
from decimal import Decimal

import pytest

from meterbill.models import Account, AuditLog, Base, Bill, Meter, MeterReading, Tariff
from meterbill.services.billing_run import BillingRunService
from meterbill.services.dates import month_key
from meterbill.services.db import build_engine, build_session_factory
from meterbill.services.errors import InvalidInputError


@pytest.fixture
def file_session_factory(tmp_path):
    """Worker threads need their own connections, so use a file database."""
    engine = build_engine(f"sqlite:///{tmp_path / 'billing_run.db'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


def _seed_account(db, number, values=None, is_active=True):
    account = Account(account_number=number, name=f"Account {number}", is_active=is_active)
    db.add(account)
    db.flush()
    meter = Meter(account_id=account.id, meter_number=f"M-{number}", meter_type="water")
    db.add(meter)
    db.flush()
    for on_date, value in values or []:
        db.add(
            MeterReading(
                meter_id=meter.id,
                reading_value=Decimal(value),
                reading_date=on_date,
                reading_month=month_key(on_date),
            )
        )
    return account


@pytest.fixture
def seeded(file_session_factory):
    db = file_session_factory()
    db.add(Tariff(name="Water", meter_type="water", rate=Decimal("2.00"), effective_from=date(2024, 1, 1)))
    accounts = {
        "billed": _seed_account(db, "A1", [(date(2024, 1, 31), "100"), (date(2024, 2, 28), "160")]),
        "also_billed": _seed_account(db, "A2", [(date(2024, 1, 31), "10"), (date(2024, 2, 28), "15")]),
        "no_readings": _seed_account(db, "A3"),
        "inactive": _seed_account(db, "A4", [(date(2024, 2, 28), "5")], is_active=False),
    }
    db.commit()
    ids = {key: account.id for key, account in accounts.items()}
    db.close()
    return ids


@pytest.mark.integration
class TestBillingRun:
    def test_generates_for_every_billable_account(self, file_session_factory, settings, seeded):
        service = BillingRunService(file_session_factory, settings, max_workers=1)

        report = service.generate_for_all_accounts("2024-02", issued_on=date(2024, 3, 1), actor_id=1)

        assert sorted(o.account_id for o in report.generated) == sorted(
            [seeded["billed"], seeded["also_billed"]]
        )
        [failed] = report.failed
        assert failed.account_id == seeded["no_readings"]
        assert failed.error_code == "no_readings"
        assert report.statistics()["total_accounts"] == 3
        assert len(report.events) == 2

        db = file_session_factory()
        try:
            totals = {b.account_id: b.total_amount for b in db.query(Bill)}
            assert totals[seeded["billed"]] == Decimal("120.00")
            assert totals[seeded["also_billed"]] == Decimal("10.00")
            audit = db.query(AuditLog).filter(AuditLog.action == "billing.bulk_generation_completed").one()
            assert audit.changes["generated"] == 2
        finally:
            db.close()

    def test_second_run_skips_billed_accounts(self, file_session_factory, settings, seeded):
        service = BillingRunService(file_session_factory, settings, max_workers=1)
        service.generate_for_all_accounts("2024-02", issued_on=date(2024, 3, 1))

        report = service.generate_for_all_accounts("2024-02", issued_on=date(2024, 3, 1))

        assert report.generated == []
        assert {o.account_id for o in report.skipped} == {seeded["billed"], seeded["also_billed"]}
        assert all(o.error_code == "duplicate_period" for o in report.skipped)

    def test_accounts_without_bills(self, file_session_factory, settings, seeded):
        service = BillingRunService(file_session_factory, settings, max_workers=1)
        service.generate_for_all_accounts("2024-02", issued_on=date(2024, 3, 1))

        db = file_session_factory()
        try:
            assert service.accounts_without_bills(db, "2024-02") == [seeded["no_readings"]]
            assert len(service.accounts_without_bills(db, "2024-03")) == 3
        finally:
            db.close()

    def test_invalid_period(self, file_session_factory, settings):
        with pytest.raises(InvalidInputError):
            BillingRunService(file_session_factory, settings).generate_for_all_accounts("2024-2")
