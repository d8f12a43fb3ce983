"""Tariff ORM model: the rate rule converting consumption into money."""

from datetime import date
from decimal import Decimal

from sqlalchemy import Boolean, Date, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from meterbill.models import Base, BaseModel


class Tariff(Base, BaseModel):
    """Rate rule, optionally scoped to a meter type and an effective window."""

    __tablename__ = "tariffs"

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    meter_type: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Meter type this tariff applies to; NULL applies to all types",
    )

    rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 4),
        nullable=False,
        comment="Price per consumed unit",
    )

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)

    effective_to: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Inclusive end of the window; NULL means open-ended",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_tariff_active_type", "is_active", "meter_type"),
        Index("idx_tariff_effective", "effective_from", "effective_to"),
    )

    def covers(self, on_date: date) -> bool:
        """True when on_date falls inside the effective window."""
        if self.effective_from > on_date:
            return False
        return self.effective_to is None or self.effective_to >= on_date

    def __repr__(self) -> str:
        return (
            f"<Tariff(id={self.id}, name={self.name!r}, meter_type={self.meter_type!r}, "
            f"rate={self.rate}, from={self.effective_from}, to={self.effective_to})>"
        )


__all__ = ["Tariff"]
