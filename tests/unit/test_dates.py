"""Unit tests for billing period and timestamp helpers."""

from datetime import date, datetime, timezone

import pytest

from meterbill.services.dates import add_months, as_utc, month_key, parse_billing_period
from meterbill.services.errors import InvalidInputError


@pytest.mark.unit
class TestParseBillingPeriod:
    def test_month_bounds(self):
        period = parse_billing_period("2024-02")
        assert period.label == "2024-02"
        assert period.start == date(2024, 2, 1)
        assert period.end == date(2024, 2, 29)

    def test_december(self):
        assert parse_billing_period("2023-12").end == date(2023, 12, 31)

    @pytest.mark.parametrize("value", ["2024-13", "2024-00", "2024-1", "24-01", "", "2024/01"])
    def test_invalid_periods(self, value):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_billing_period(value)
        assert exc_info.value.field == "billing_period"


@pytest.mark.unit
def test_month_key():
    assert month_key(date(2024, 3, 9)) == "2024-03"


@pytest.mark.unit
def test_add_months_clamps_day():
    start = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert add_months(start, 1) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert add_months(start, 12) == datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)


@pytest.mark.unit
def test_as_utc_treats_naive_as_utc():
    naive = datetime(2024, 1, 1, 8, 30)
    assert as_utc(naive).tzinfo is timezone.utc
    assert as_utc(None) is None
