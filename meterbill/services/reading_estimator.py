"""Estimated readings for meters that were not read during a billing period."""

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from meterbill.models import Meter, MeterReading, ReadingType
from meterbill.services.audit_service import AuditService
from meterbill.services.config import BillingSettings, EstimationMethod
from meterbill.services.consumption_resolver import ConsumptionResolver
from meterbill.services.dates import BillingPeriod, add_months, month_key
from meterbill.services.meter_reading_validator import MeterReadingValidator
from meterbill.services.repositories import ReadingRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
UNIT_QUANTUM = Decimal("0.001")

# Consumption multiplier by calendar month for the seasonal method
SEASONAL_FACTORS = {
    6: Decimal("1.2"),
    7: Decimal("1.2"),
    8: Decimal("1.2"),
    12: Decimal("0.9"),
    1: Decimal("0.9"),
    2: Decimal("0.9"),
}


class ReadingEstimator:
    """Writes an estimated reading on the last day of a period.

    Used by bill generation when a meter has an earlier reading but none
    inside the period. The estimate goes through MeterReadingValidator like
    any other reading and never exceeds a later actual reading.
    """

    def __init__(self, db: Session, settings: BillingSettings):
        self.db = db
        self.settings = settings
        self.readings = ReadingRepository(db)
        self.validator = MeterReadingValidator(db)

    def average_monthly_consumption(self, meter_id: int, before) -> Decimal:
        """Mean positive step between consecutive readings in the months before `before`."""
        since = add_months(before, -self.settings.estimation_average_months)
        history = self.readings.list_for_meter(meter_id, since, before - timedelta(days=1))
        steps = [
            later.reading_value - earlier.reading_value
            for earlier, later in zip(history, history[1:])
            if later.reading_value > earlier.reading_value
        ]
        if not steps:
            return ZERO
        return (sum(steps, ZERO) / len(steps)).quantize(UNIT_QUANTUM, rounding=ROUND_HALF_UP)

    def estimated_units(self, meter_id: int, period: BillingPeriod) -> Decimal:
        method = self.settings.estimation_method
        if method == EstimationMethod.LAST_READING:
            return ZERO
        units = self.average_monthly_consumption(meter_id, period.start)
        if method == EstimationMethod.SEASONAL:
            factor = SEASONAL_FACTORS.get(period.end.month, Decimal("1"))
            units = (units * factor).quantize(UNIT_QUANTUM, rounding=ROUND_HALF_UP)
        return units

    def _limit_reached(self, meter_id: int, before) -> bool:
        limit = self.settings.max_consecutive_estimates
        if limit is None:
            return False
        recent = (
            self.db.query(MeterReading)
            .filter(MeterReading.meter_id == meter_id, MeterReading.reading_date < before)
            .order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
            .limit(limit)
            .all()
        )
        return len(recent) == limit and all(r.reading_type == ReadingType.ESTIMATED for r in recent)

    def estimate(
        self,
        meter: Meter,
        baseline: Optional[MeterReading],
        period: BillingPeriod,
        actor_id: int | None = None,
    ) -> Optional[MeterReading]:
        """Create an estimated reading at period end, in the caller's transaction.

        Returns None when estimation is disabled, there is nothing to estimate
        from, or the meter already has max_consecutive_estimates estimates in a
        row.

        Raises:
            MonotonicViolationError: The estimate does not fit the meter's sequence
        """
        if not self.settings.estimation_enabled or baseline is None:
            return None
        if self._limit_reached(meter.id, period.start):
            logger.warning(
                "Meter %s needs an actual reading: %d consecutive estimates already",
                meter.meter_number,
                self.settings.max_consecutive_estimates,
            )
            return None

        method = self.settings.estimation_method
        value = baseline.reading_value + self.estimated_units(meter.id, period)
        following = self.readings.find_following(meter.id, period.end)
        if following is not None and value > following.reading_value:
            value = following.reading_value

        self.validator.validate(meter, value, period.end).raise_for_error()

        reading = MeterReading(
            meter_id=meter.id,
            reading_value=value,
            reading_date=period.end,
            reading_month=month_key(period.end),
            reading_type=ReadingType.ESTIMATED,
            reader_id=actor_id,
            notes=f"Estimated using {method.value} method",
        )
        reading.consumption = ConsumptionResolver.resolve_between(baseline, reading)
        self.db.add(reading)
        self.db.flush()
        if following is not None:
            following.consumption = ConsumptionResolver.resolve_between(reading, following)

        AuditService.log(
            self.db,
            "meter_reading",
            reading.id,
            "reading.estimated",
            actor_id,
            {
                "meter_id": meter.id,
                "reading_value": str(value),
                "reading_date": period.end.isoformat(),
                "previous_reading_value": str(baseline.reading_value),
                "method": method.value,
            },
        )
        logger.info(
            "Estimated reading for meter %s on %s: %s (%s)",
            meter.meter_number,
            period.end,
            value,
            method.value,
        )
        return reading


__all__ = ["ReadingEstimator"]
