"""Meter reading ORM model."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterbill.models import Base, BaseModel, enum_column


class ReadingType(str, Enum):
    """How a reading was obtained."""

    ACTUAL = "actual"
    ESTIMATED = "estimated"
    CORRECTED = "corrected"
    INITIAL = "initial"


class MeterReading(Base, BaseModel):
    """A single observation of a meter register.

    Readings for one meter are monotonic by date and at most one exists per
    calendar month; `reading_month` carries the month key so the database can
    enforce the latter.
    """

    __tablename__ = "meter_readings"

    meter_id: Mapped[int] = mapped_column(
        ForeignKey("meters.id"),
        nullable=False,
        index=True,
    )

    reading_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 3),
        nullable=False,
        comment="Register value in the meter's native unit",
    )

    reading_date: Mapped[date] = mapped_column(Date, nullable=False)

    reading_month: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        comment="YYYY-MM of reading_date",
    )

    reading_type: Mapped[ReadingType] = mapped_column(
        enum_column(ReadingType),
        nullable=False,
        default=ReadingType.ACTUAL,
    )

    consumption: Mapped[Decimal] = mapped_column(
        Numeric(12, 3),
        nullable=False,
        default=Decimal("0"),
        comment="Units since the previous reading (never negative)",
    )

    reader_id: Mapped[int | None] = mapped_column(
        nullable=True,
        comment="Identity of the person who captured the reading",
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    meter: Mapped["Meter"] = relationship("Meter")  # noqa: F821

    __table_args__ = (
        UniqueConstraint("meter_id", "reading_month", name="uq_reading_meter_month"),
        Index("idx_reading_meter_date", "meter_id", "reading_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<MeterReading(id={self.id}, meter_id={self.meter_id}, "
            f"value={self.reading_value}, date={self.reading_date})>"
        )


__all__ = ["MeterReading", "ReadingType"]
