"""Query helpers over the reading and bill tables.

Services never walk ORM relationships implicitly to find neighbouring
readings or outstanding bills; they go through these repositories so every
query states its filtering and ordering explicitly.
"""

from datetime import date
from typing import NamedTuple, Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from meterbill.models import Account, Bill, BillDetail, BillStatus, MeterReading


class ReadingNeighbors(NamedTuple):
    """Nearest readings on either side of a date for one meter."""

    prior: Optional[MeterReading]
    following: Optional[MeterReading]


class ReadingRepository:
    """Reading lookups by meter and date."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, reading_id: int) -> Optional[MeterReading]:
        return self.db.get(MeterReading, reading_id)

    def find_prior(
        self,
        meter_id: int,
        reading_date: date,
        exclude_reading_id: int | None = None,
    ) -> Optional[MeterReading]:
        """Nearest reading strictly before reading_date."""
        query = self.db.query(MeterReading).filter(
            MeterReading.meter_id == meter_id,
            MeterReading.reading_date < reading_date,
        )
        if exclude_reading_id is not None:
            query = query.filter(MeterReading.id != exclude_reading_id)
        return query.order_by(MeterReading.reading_date.desc(), MeterReading.id.desc()).first()

    def find_following(
        self,
        meter_id: int,
        reading_date: date,
        exclude_reading_id: int | None = None,
    ) -> Optional[MeterReading]:
        """Nearest reading strictly after reading_date."""
        query = self.db.query(MeterReading).filter(
            MeterReading.meter_id == meter_id,
            MeterReading.reading_date > reading_date,
        )
        if exclude_reading_id is not None:
            query = query.filter(MeterReading.id != exclude_reading_id)
        return query.order_by(MeterReading.reading_date.asc(), MeterReading.id.asc()).first()

    def find_readings_around(
        self,
        meter_id: int,
        reading_date: date,
        exclude_reading_id: int | None = None,
    ) -> ReadingNeighbors:
        return ReadingNeighbors(
            prior=self.find_prior(meter_id, reading_date, exclude_reading_id),
            following=self.find_following(meter_id, reading_date, exclude_reading_id),
        )

    def find_in_month(
        self,
        meter_id: int,
        reading_month: str,
        exclude_reading_id: int | None = None,
    ) -> Optional[MeterReading]:
        query = self.db.query(MeterReading).filter(
            MeterReading.meter_id == meter_id,
            MeterReading.reading_month == reading_month,
        )
        if exclude_reading_id is not None:
            query = query.filter(MeterReading.id != exclude_reading_id)
        return query.first()

    def latest_on_or_before(self, meter_id: int, on_date: date) -> Optional[MeterReading]:
        return (
            self.db.query(MeterReading)
            .filter(MeterReading.meter_id == meter_id, MeterReading.reading_date <= on_date)
            .order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
            .first()
        )

    def latest_before(self, meter_id: int, before: date) -> Optional[MeterReading]:
        return self.find_prior(meter_id, before)

    def list_for_meter(
        self,
        meter_id: int,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[MeterReading]:
        """Readings of a meter in date order, optionally bounded (inclusive)."""
        query = self.db.query(MeterReading).filter(MeterReading.meter_id == meter_id)
        if from_date is not None:
            query = query.filter(MeterReading.reading_date >= from_date)
        if to_date is not None:
            query = query.filter(MeterReading.reading_date <= to_date)
        return query.order_by(MeterReading.reading_date.asc(), MeterReading.id.asc()).all()

    def is_billed(self, reading_id: int) -> bool:
        """True when a live (non-void) bill line references the reading."""
        stmt = select(
            exists().where(
                BillDetail.bill_id == Bill.id,
                Bill.status != BillStatus.VOID,
                (BillDetail.current_reading_id == reading_id)
                | (BillDetail.previous_reading_id == reading_id),
            )
        )
        return bool(self.db.execute(stmt).scalar())


class BillRepository:
    """Bill lookups by account, period and status."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, bill_id: int) -> Optional[Bill]:
        return self.db.get(Bill, bill_id)

    def find_outstanding_bills(self, account_id: int) -> list[Bill]:
        """Bills that can receive money: balance > 0, not void, not paid, not disputed.

        Ordered by id; allocation strategies impose their own order.
        """
        return (
            self.db.query(Bill)
            .filter(
                Bill.account_id == account_id,
                Bill.balance > 0,
                Bill.status.notin_([BillStatus.VOID, BillStatus.PAID]),
                Bill.is_disputed.is_(False),
            )
            .order_by(Bill.id.asc())
            .all()
        )

    def find_for_period(self, account_id: int, billing_period: str) -> Optional[Bill]:
        """Live (non-void) bill of an account for a period."""
        return (
            self.db.query(Bill)
            .filter(
                Bill.account_id == account_id,
                Bill.billing_period == billing_period,
                Bill.status != BillStatus.VOID,
            )
            .first()
        )

    def list_for_account(self, account_id: int, include_void: bool = False) -> list[Bill]:
        query = self.db.query(Bill).filter(Bill.account_id == account_id)
        if not include_void:
            query = query.filter(Bill.status != BillStatus.VOID)
        return query.order_by(Bill.issued_at.asc(), Bill.id.asc()).all()

    def lock_account(self, account_id: int) -> Optional[Account]:
        """Row-lock the account for the rest of the transaction (no-op on SQLite)."""
        return self.db.query(Account).filter(Account.id == account_id).with_for_update().first()


__all__ = ["BillRepository", "ReadingNeighbors", "ReadingRepository"]
