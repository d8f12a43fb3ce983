"""Date helpers for billing periods and timezone-safe timestamps."""

import calendar
import re
from datetime import date, datetime, timezone
from typing import NamedTuple

from meterbill.services.errors import InvalidInputError

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


class BillingPeriod(NamedTuple):
    """Calendar month a bill covers."""

    label: str
    start: date
    end: date


def parse_billing_period(period: str) -> BillingPeriod:
    """Parse 'YYYY-MM' into first and last day of that month.

    Raises:
        InvalidInputError: If the period is not a valid YYYY-MM string
    """
    match = _PERIOD_RE.match(period or "")
    if not match:
        raise InvalidInputError(
            f"Billing period must be in YYYY-MM format, got {period!r}",
            field="billing_period",
        )
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidInputError(f"Invalid month in billing period {period!r}", field="billing_period")
    last_day = calendar.monthrange(year, month)[1]
    return BillingPeriod(label=period, start=date(year, month, 1), end=date(year, month, last_day))


def month_key(value: date) -> str:
    """Calendar month key ('YYYY-MM') of a date."""
    return f"{value.year:04d}-{value.month:02d}"


def add_months(value: datetime, months: int) -> datetime:
    """Shift a datetime by whole months, clamping the day to the target month length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = ["BillingPeriod", "add_months", "as_utc", "month_key", "parse_billing_period", "utcnow"]
