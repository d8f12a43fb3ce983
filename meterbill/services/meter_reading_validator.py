"""Monotonic and duplicate checks for meter readings."""

from datetime import date
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from meterbill.models import Meter, MeterReading
from meterbill.services.dates import month_key
from meterbill.services.errors import (
    BillingError,
    DuplicateReadingError,
    InvalidInputError,
    MonotonicViolationError,
)
from meterbill.services.money import to_decimal
from meterbill.services.repositories import ReadingRepository


class ReadingValidationResult(NamedTuple):
    """Outcome of validating a candidate reading.

    `error` is None when the reading may be written; otherwise it is the typed
    error the caller should audit and raise.
    """

    error: Optional[BillingError]
    prior: Optional[MeterReading] = None
    following: Optional[MeterReading] = None
    duplicate: Optional[MeterReading] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class MeterReadingValidator:
    """Checks a candidate reading against the stored sequence of its meter.

    Read-only: it never writes, audits or logs. The reading must not be lower
    than the nearest earlier reading nor higher than the nearest later one, so
    historical readings can be back-filled without breaking consumption of the
    readings after them. At most one reading per meter per calendar month.
    """

    def __init__(self, db: Session):
        self.readings = ReadingRepository(db)

    def validate(
        self,
        meter: Meter,
        value: Decimal,
        reading_date: date,
        exclude_reading_id: int | None = None,
    ) -> ReadingValidationResult:
        """Validate a reading value and date for a meter.

        Args:
            meter: Meter the reading belongs to
            value: Register value in the meter's native unit
            reading_date: Date the value was observed
            exclude_reading_id: Reading being replaced by an update, ignored in all lookups

        Returns:
            ReadingValidationResult with the first failure found (if any)
        """
        value = to_decimal(value)
        if value < 0:
            return ReadingValidationResult(
                error=InvalidInputError(
                    f"Reading value cannot be negative: {value}", field="reading_value"
                )
            )

        prior, following = self.readings.find_readings_around(
            meter.id, reading_date, exclude_reading_id
        )

        if prior is not None and value < prior.reading_value:
            return ReadingValidationResult(
                error=MonotonicViolationError(
                    f"Reading {value} is lower than the previous reading "
                    f"{prior.reading_value} on {prior.reading_date}",
                    field="reading_value",
                ),
                prior=prior,
                following=following,
            )

        if following is not None and value > following.reading_value:
            return ReadingValidationResult(
                error=MonotonicViolationError(
                    f"Reading {value} is higher than the next reading "
                    f"{following.reading_value} on {following.reading_date}",
                    field="reading_value",
                ),
                prior=prior,
                following=following,
            )

        duplicate = self.readings.find_in_month(
            meter.id, month_key(reading_date), exclude_reading_id
        )
        if duplicate is not None:
            return ReadingValidationResult(
                error=DuplicateReadingError(
                    f"Meter {meter.meter_number} already has a reading for "
                    f"{month_key(reading_date)} (reading {duplicate.id} on {duplicate.reading_date})",
                    field="reading_date",
                ),
                prior=prior,
                following=following,
                duplicate=duplicate,
            )

        return ReadingValidationResult(error=None, prior=prior, following=following)


__all__ = ["MeterReadingValidator", "ReadingValidationResult"]
