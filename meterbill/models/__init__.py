"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


def enum_column(enum_cls: type[Enum]) -> SQLEnum:
    """Store a str Enum by its value (e.g. 'partially_paid') rather than its name."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        validate_strings=True,
        length=30,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from meterbill.models.account import Account  # noqa: E402
from meterbill.models.audit_log import AuditLog  # noqa: E402
from meterbill.models.bill import Bill, BillDetail, BillStatus  # noqa: E402
from meterbill.models.carry_forward import (  # noqa: E402
    CarryForwardApplication,
    CarryForwardBalance,
    CarryForwardStatus,
    CarryForwardType,
)
from meterbill.models.meter import Meter, MeterStatus  # noqa: E402
from meterbill.models.meter_reading import MeterReading, ReadingType  # noqa: E402
from meterbill.models.payment import (  # noqa: E402
    Payment,
    PaymentAllocation,
    PaymentStatus,
    ReconciliationStatus,
)
from meterbill.models.tariff import Tariff  # noqa: E402

__all__ = [
    "Base",
    "BaseModel",
    "enum_column",
    "Account",
    "AuditLog",
    "Bill",
    "BillDetail",
    "BillStatus",
    "CarryForwardApplication",
    "CarryForwardBalance",
    "CarryForwardStatus",
    "CarryForwardType",
    "Meter",
    "MeterStatus",
    "MeterReading",
    "ReadingType",
    "Payment",
    "PaymentAllocation",
    "PaymentStatus",
    "ReconciliationStatus",
    "Tariff",
]
