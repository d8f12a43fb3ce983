"""Unit tests for reading sequence validation."""

from datetime import date
from decimal import Decimal

import pytest

from meterbill.services.errors import (
    DuplicateReadingError,
    InvalidInputError,
    MonotonicViolationError,
)
from meterbill.services.meter_reading_validator import MeterReadingValidator


@pytest.fixture
def validator(db):
    return MeterReadingValidator(db)


@pytest.mark.unit
class TestMeterReadingValidator:
    def test_first_reading_is_valid(self, validator, meter):
        result = validator.validate(meter, Decimal("0"), date(2024, 1, 15))
        assert result.ok
        assert result.prior is None

    def test_negative_value(self, validator, meter):
        result = validator.validate(meter, Decimal("-1"), date(2024, 1, 15))
        assert isinstance(result.error, InvalidInputError)
        assert result.error.field == "reading_value"

    def test_lower_than_prior(self, validator, meter, add_reading):
        add_reading(meter, "1000", date(2024, 1, 15))
        result = validator.validate(meter, Decimal("950"), date(2024, 2, 15))
        assert isinstance(result.error, MonotonicViolationError)
        with pytest.raises(MonotonicViolationError):
            result.raise_for_error()

    def test_equal_to_prior_is_allowed(self, validator, meter, add_reading):
        add_reading(meter, "1000", date(2024, 1, 15))
        assert validator.validate(meter, Decimal("1000"), date(2024, 2, 15)).ok

    def test_backfill_must_fit_between_neighbours(self, validator, meter, add_reading):
        jan = add_reading(meter, "500", date(2024, 1, 15))
        mar = add_reading(meter, "800", date(2024, 3, 15))

        too_high = validator.validate(meter, Decimal("900"), date(2024, 2, 15))
        assert isinstance(too_high.error, MonotonicViolationError)
        assert too_high.following.id == mar.id

        fits = validator.validate(meter, Decimal("650"), date(2024, 2, 15))
        assert fits.ok
        assert fits.prior.id == jan.id
        assert fits.following.id == mar.id

    def test_duplicate_month(self, validator, meter, add_reading):
        existing = add_reading(meter, "500", date(2024, 1, 5))
        result = validator.validate(meter, Decimal("520"), date(2024, 1, 25))
        assert isinstance(result.error, DuplicateReadingError)
        assert result.error.field == "reading_date"
        assert result.duplicate.id == existing.id

    def test_excluded_reading_is_ignored(self, validator, meter, add_reading):
        existing = add_reading(meter, "500", date(2024, 1, 5))
        result = validator.validate(
            meter, Decimal("450"), date(2024, 1, 20), exclude_reading_id=existing.id
        )
        assert result.ok

    def test_lower_value_in_same_month_reports_monotonic_first(self, validator, meter, add_reading):
        add_reading(meter, "1000", date(2025, 1, 1))
        result = validator.validate(meter, Decimal("950"), date(2025, 1, 31))
        assert isinstance(result.error, MonotonicViolationError)
