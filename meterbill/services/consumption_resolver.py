"""Consumption between readings, shared by billing and reporting."""

from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from meterbill.models import MeterReading
from meterbill.services.repositories import ReadingRepository

ZERO = Decimal("0")


class ConsumptionResolver:
    """Units used since the nearest earlier reading, never negative.

    Bill generation and reading exports both go through this class so the
    consumption shown to a customer always matches what was billed.
    """

    def __init__(self, db: Session):
        self.readings = ReadingRepository(db)

    def resolve(self, meter_id: int, reading: MeterReading) -> Decimal:
        """Consumption of `reading` against the nearest prior reading by date.

        The first reading of a meter yields zero.
        """
        prior = self.readings.find_prior(meter_id, reading.reading_date, exclude_reading_id=reading.id)
        return self.resolve_between(prior, reading)

    @staticmethod
    def resolve_between(baseline: Optional[MeterReading], current: MeterReading) -> Decimal:
        """Consumption from an explicit baseline reading to current, clamped at zero."""
        if baseline is None or baseline.id == current.id:
            return ZERO
        consumption = current.reading_value - baseline.reading_value
        return consumption if consumption > 0 else ZERO


__all__ = ["ConsumptionResolver"]
