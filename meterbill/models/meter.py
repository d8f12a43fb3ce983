"""Meter ORM model for metering points."""

from datetime import date
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterbill.models import Base, BaseModel, enum_column


class MeterStatus(str, Enum):
    """Lifecycle status of a meter."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    REPLACED = "replaced"
    FAULTY = "faulty"


class Meter(Base, BaseModel):
    """Model representing a metering point owned by one account.

    Meters with billing history are deactivated or replaced, never deleted.
    """

    __tablename__ = "meters"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
        comment="Owning account",
    )

    meter_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Serial number printed on the meter",
    )

    meter_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Meter type used for tariff scoping (e.g. 'water', 'electricity')",
    )

    status: Mapped[MeterStatus] = mapped_column(
        enum_column(MeterStatus),
        nullable=False,
        default=MeterStatus.ACTIVE,
    )

    installation_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Relationships
    account: Mapped["Account"] = relationship(  # noqa: F821
        "Account",
        back_populates="meters",
    )

    __table_args__ = (Index("idx_meter_account_status", "account_id", "status"),)

    def __repr__(self) -> str:
        return (
            f"<Meter(id={self.id}, number={self.meter_number!r}, type={self.meter_type!r}, "
            f"status={self.status})>"
        )


__all__ = ["Meter", "MeterStatus"]
