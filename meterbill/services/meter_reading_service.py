"""Meter reading lifecycle: create, update, delete, bulk import and export.

Every write is validated by MeterReadingValidator first. Rejections are
audited on their own commit so the audit trail survives the rejected write.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, NamedTuple

from sqlalchemy.orm import Session

from meterbill.models import AuditLog, Meter, MeterReading, ReadingType
from meterbill.services.audit_service import AuditService
from meterbill.services.consumption_resolver import ConsumptionResolver
from meterbill.services.dates import month_key
from meterbill.services.errors import (
    BillingError,
    DependentReadingError,
    DuplicateReadingError,
    InvalidInputError,
    MonotonicViolationError,
    NotFoundError,
    ReadingAlreadyBilledError,
)
from meterbill.services.meter_reading_validator import MeterReadingValidator
from meterbill.services.money import to_decimal
from meterbill.services.repositories import ReadingRepository

logger = logging.getLogger(__name__)

ENTITY = "meter_reading"


class BulkFailure(NamedTuple):
    """One rejected row of a bulk import."""

    index: int
    data: dict
    error: BillingError


class BulkReadingResult(NamedTuple):
    """Outcome of a bulk import: rows are written independently."""

    created: list[MeterReading]
    failed: list[BulkFailure]


def _rejection_action(error: BillingError) -> str:
    if isinstance(error, MonotonicViolationError):
        return "reading.monotonic_violation"
    if isinstance(error, DuplicateReadingError):
        return "reading.duplicate_prevented"
    return "reading.validation_failed"


def _parse_bulk_row(row: Any) -> dict:
    """Turn one import row into create_reading arguments.

    Raises:
        InvalidInputError: Row is missing a field or a field is malformed
    """
    if not isinstance(row, dict):
        raise InvalidInputError(f"Row must be a mapping, got {type(row).__name__}")

    for field in ("meter_id", "reading_value", "reading_date"):
        if row.get(field) is None:
            raise InvalidInputError(f"Missing {field}", field=field)

    try:
        meter_id = int(row["meter_id"])
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Invalid meter_id: {row['meter_id']!r}", field="meter_id") from e

    try:
        reading_value = to_decimal(row["reading_value"])
    except InvalidInputError as e:
        raise InvalidInputError(e.message, field="reading_value") from e

    reading_date = row["reading_date"]
    if not isinstance(reading_date, date):
        try:
            reading_date = date.fromisoformat(str(reading_date))
        except ValueError as e:
            raise InvalidInputError(
                f"Invalid reading_date: {reading_date!r}", field="reading_date"
            ) from e

    try:
        reading_type = ReadingType(row.get("reading_type") or ReadingType.ACTUAL)
    except ValueError as e:
        raise InvalidInputError(
            f"Invalid reading_type: {row.get('reading_type')!r}", field="reading_type"
        ) from e

    return {
        "meter_id": meter_id,
        "reading_value": reading_value,
        "reading_date": reading_date,
        "reading_type": reading_type,
        "notes": row.get("notes"),
    }


def _snapshot(reading: MeterReading) -> dict:
    return {
        "meter_id": reading.meter_id,
        "reading_value": str(reading.reading_value),
        "reading_date": reading.reading_date.isoformat(),
        "reading_type": reading.reading_type.value if reading.reading_type else None,
        "notes": reading.notes,
    }


class MeterReadingService:
    """Validated writes and reads of meter readings."""

    def __init__(self, db: Session):
        self.db = db
        self.readings = ReadingRepository(db)
        self.validator = MeterReadingValidator(db)
        self.consumption = ConsumptionResolver(db)

    def _get_meter(self, meter_id: int) -> Meter:
        meter = self.db.get(Meter, meter_id)
        if meter is None:
            raise NotFoundError(f"Meter {meter_id} not found", field="meter_id")
        return meter

    def _get_reading(self, reading_id: int) -> MeterReading:
        reading = self.readings.get(reading_id)
        if reading is None:
            raise NotFoundError(f"Meter reading {reading_id} not found", field="reading_id")
        return reading

    def _reject(
        self,
        error: BillingError,
        meter: Meter,
        value: Decimal,
        reading_date: date,
        actor_id: int | None,
        entity_id: int | None = None,
        extra: dict | None = None,
    ) -> None:
        """Audit a failed validation on its own commit, then raise it."""
        logger.info(
            "Rejected reading for meter %s (%s on %s): %s",
            meter.meter_number,
            value,
            reading_date,
            error.message,
        )
        context = {
            "meter_id": meter.id,
            "attempted_reading_value": str(value),
            "attempted_reading_date": reading_date.isoformat(),
            "error": error.to_dict(),
        }
        if extra:
            context.update(extra)
        AuditService.log_rejection(
            self.db, ENTITY, entity_id, _rejection_action(error), actor_id, context
        )
        raise error

    def _refresh_following(self, meter_id: int, on_date: date) -> None:
        """Recompute stored consumption of the reading after on_date."""
        following = self.readings.find_following(meter_id, on_date)
        if following is not None:
            following.consumption = self.consumption.resolve(meter_id, following)

    def create_reading(
        self,
        meter_id: int,
        reading_value: Decimal,
        reading_date: date,
        reading_type: ReadingType = ReadingType.ACTUAL,
        reader_id: int | None = None,
        notes: str | None = None,
    ) -> MeterReading:
        """Validate and store a new reading.

        Raises:
            NotFoundError: Meter does not exist
            InvalidInputError: Negative value
            MonotonicViolationError: Value breaks the meter's sequence
            DuplicateReadingError: Meter already has a reading that month
        """
        meter = self._get_meter(meter_id)
        value = to_decimal(reading_value)

        result = self.validator.validate(meter, value, reading_date)
        if not result.ok:
            self._reject(result.error, meter, value, reading_date, reader_id)

        try:
            reading = MeterReading(
                meter_id=meter.id,
                reading_value=value,
                reading_date=reading_date,
                reading_month=month_key(reading_date),
                reading_type=reading_type,
                reader_id=reader_id,
                notes=notes,
            )
            reading.consumption = ConsumptionResolver.resolve_between(result.prior, reading)
            self.db.add(reading)
            self.db.flush()
            self._refresh_following(meter.id, reading_date)

            AuditService.log(
                self.db,
                ENTITY,
                reading.id,
                "reading.created",
                reader_id,
                {
                    **_snapshot(reading),
                    "previous_reading_value": (
                        str(result.prior.reading_value) if result.prior else None
                    ),
                    "consumption": str(reading.consumption),
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Created reading %d for meter %s: %s on %s (consumption %s)",
            reading.id,
            meter.meter_number,
            value,
            reading_date,
            reading.consumption,
        )
        return reading

    def update_reading(
        self,
        reading_id: int,
        reading_value: Decimal | None = None,
        reading_date: date | None = None,
        reading_type: ReadingType | None = None,
        notes: str | None = None,
        actor_id: int | None = None,
    ) -> MeterReading:
        """Replace fields of an unbilled reading, re-validating against its neighbours.

        Raises:
            ReadingAlreadyBilledError: A live bill references the reading
            MonotonicViolationError / DuplicateReadingError: As for create
        """
        reading = self._get_reading(reading_id)
        meter = self._get_meter(reading.meter_id)
        old_values = _snapshot(reading)

        if self.readings.is_billed(reading.id):
            AuditService.log_rejection(
                self.db,
                ENTITY,
                reading.id,
                "reading.update_prevented",
                actor_id,
                {"reason": "reading_already_billed", "old_values": old_values},
            )
            raise ReadingAlreadyBilledError(
                f"Reading {reading.id} has already been billed and cannot be changed",
                field="reading_value",
            )

        new_value = to_decimal(reading_value) if reading_value is not None else reading.reading_value
        new_date = reading_date or reading.reading_date
        old_date = reading.reading_date

        result = self.validator.validate(meter, new_value, new_date, exclude_reading_id=reading.id)
        if not result.ok:
            self._reject(
                result.error, meter, new_value, new_date, actor_id, entity_id=reading.id,
                extra={"old_values": old_values},
            )

        try:
            reading.reading_value = new_value
            reading.reading_date = new_date
            reading.reading_month = month_key(new_date)
            if reading_type is not None:
                reading.reading_type = reading_type
            if notes is not None:
                reading.notes = notes
            reading.consumption = ConsumptionResolver.resolve_between(result.prior, reading)
            self.db.flush()
            self._refresh_following(meter.id, new_date)
            if old_date != new_date:
                self._refresh_following(meter.id, old_date)

            AuditService.log(
                self.db,
                ENTITY,
                reading.id,
                "reading.updated",
                actor_id,
                {"old_values": old_values, "new_values": _snapshot(reading)},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Updated reading %d for meter %s", reading.id, meter.meter_number)
        return reading

    def delete_reading(self, reading_id: int, actor_id: int | None = None) -> None:
        """Delete an unbilled reading that no later reading depends on.

        Raises:
            ReadingAlreadyBilledError: A live bill references the reading
            DependentReadingError: A later reading's consumption is computed from it
        """
        reading = self._get_reading(reading_id)
        snapshot = _snapshot(reading)

        if self.readings.is_billed(reading.id):
            AuditService.log_rejection(
                self.db, ENTITY, reading.id, "reading.delete_prevented", actor_id,
                {"reason": "reading_already_billed", **snapshot},
            )
            raise ReadingAlreadyBilledError(
                f"Reading {reading.id} has already been billed and cannot be deleted",
                field="reading_id",
            )

        if self.readings.find_following(reading.meter_id, reading.reading_date) is not None:
            AuditService.log_rejection(
                self.db, ENTITY, reading.id, "reading.delete_prevented", actor_id,
                {"reason": "has_dependent_readings", **snapshot},
            )
            raise DependentReadingError(
                f"Reading {reading.id} cannot be deleted: later readings depend on it "
                "for consumption",
                field="reading_id",
            )

        try:
            self.db.delete(reading)
            AuditService.log(self.db, ENTITY, reading_id, "reading.deleted", actor_id, snapshot)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Deleted reading %d", reading_id)

    def create_bulk_readings(
        self,
        rows: list[dict[str, Any]],
        actor_id: int | None = None,
        context: dict | None = None,
    ) -> BulkReadingResult:
        """Create many readings; each row succeeds or fails on its own.

        Rows are dicts with meter_id, reading_value, reading_date and optional
        reading_type/notes. Failures are audited as reading.validation_failed
        with the bulk context.
        """
        created: list[MeterReading] = []
        failed: list[BulkFailure] = []

        for index, row in enumerate(rows):
            try:
                fields = _parse_bulk_row(row)
                reading = self.create_reading(**fields, reader_id=row.get("reader_id", actor_id))
                created.append(reading)
            except BillingError as e:
                failed.append(BulkFailure(index=index, data=row, error=e))
                AuditService.log_rejection(
                    self.db,
                    ENTITY,
                    None,
                    "reading.validation_failed",
                    actor_id,
                    {
                        "row": index,
                        "meter_id": row.get("meter_id") if isinstance(row, dict) else None,
                        "error": e.to_dict(),
                        "bulk_operation": True,
                        "bulk_context": context or {},
                    },
                )

        if created:
            AuditService.log(
                self.db,
                ENTITY,
                None,
                "reading.bulk_created",
                actor_id,
                {
                    **(context or {}),
                    "reading_ids": [r.id for r in created],
                    "total_attempted": len(rows),
                    "total_created": len(created),
                    "total_failed": len(failed),
                },
            )
            self.db.commit()

        logger.info("Bulk readings: %d created, %d failed", len(created), len(failed))
        return BulkReadingResult(created=created, failed=failed)

    def get_readings_for_meter(
        self,
        meter_id: int,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[MeterReading]:
        return self.readings.list_for_meter(meter_id, from_date, to_date)

    def get_readings_for_export(
        self,
        meter_id: int | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[dict]:
        """Readings as flat rows with consumption computed the same way bills compute it."""
        query = self.db.query(MeterReading)
        if meter_id is not None:
            query = query.filter(MeterReading.meter_id == meter_id)
        if from_date is not None:
            query = query.filter(MeterReading.reading_date >= from_date)
        if to_date is not None:
            query = query.filter(MeterReading.reading_date <= to_date)

        rows = []
        for reading in query.order_by(
            MeterReading.meter_id, MeterReading.reading_date, MeterReading.id
        ):
            rows.append(
                {
                    "reading_id": reading.id,
                    "meter_id": reading.meter_id,
                    "reading_date": reading.reading_date,
                    "reading_value": reading.reading_value,
                    "reading_type": reading.reading_type.value,
                    "consumption": self.consumption.resolve(reading.meter_id, reading),
                    "notes": reading.notes,
                }
            )
        return rows

    def get_reading_audit_trail(self, reading_id: int) -> list[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.entity_type == ENTITY, AuditLog.entity_id == reading_id)
            .order_by(AuditLog.id.asc())
            .all()
        )


__all__ = ["BulkFailure", "BulkReadingResult", "MeterReadingService"]
