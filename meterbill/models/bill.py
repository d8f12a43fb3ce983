"""Bill ORM models: one bill per account per billing period, one detail line per meter."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterbill.models import Base, BaseModel, enum_column


class BillStatus(str, Enum):
    """Bill lifecycle status."""

    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"
    UNPAID = "unpaid"


class Bill(Base, BaseModel):
    """Periodic bill aggregating all meters of an account.

    Invariants: balance == total_amount - paid_amount and never negative;
    total_amount == sum(detail.amount) + late_fee. Status changes only through
    reconciliation, void/rebill and the overdue/late-fee jobs.
    """

    __tablename__ = "bills"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )

    billing_period: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        comment="Billing period in YYYY-MM format",
    )

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    status: Mapped[BillStatus] = mapped_column(
        enum_column(BillStatus),
        nullable=False,
        default=BillStatus.PENDING,
    )

    is_disputed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Disputed bills are skipped by automatic allocation",
    )

    issued_at: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    late_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    late_fee_applied_at: Mapped[date | None] = mapped_column(Date, nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    replaced_bill_id: Mapped[int | None] = mapped_column(
        ForeignKey("bills.id"),
        nullable=True,
        comment="Voided bill this one replaces (rebill)",
    )

    details: Mapped[list["BillDetail"]] = relationship(
        "BillDetail",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillDetail.id",
    )

    __table_args__ = (
        # Only one live bill per account and period; voided bills may be replaced
        Index(
            "uq_bill_account_period_live",
            "account_id",
            "billing_period",
            unique=True,
            sqlite_where=text("status != 'void'"),
            postgresql_where=text("status != 'void'"),
        ),
        Index("idx_bill_account_status", "account_id", "status"),
        Index("idx_bill_due_date", "due_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Bill(id={self.id}, account_id={self.account_id}, period={self.billing_period}, "
            f"total={self.total_amount}, paid={self.paid_amount}, status={self.status})>"
        )


class BillDetail(Base, BaseModel):
    """One line per meter within a bill."""

    __tablename__ = "bill_details"

    bill_id: Mapped[int] = mapped_column(
        ForeignKey("bills.id"),
        nullable=False,
        index=True,
    )
    meter_id: Mapped[int] = mapped_column(
        ForeignKey("meters.id"),
        nullable=False,
        index=True,
    )
    tariff_id: Mapped[int] = mapped_column(ForeignKey("tariffs.id"), nullable=False)

    previous_reading_id: Mapped[int | None] = mapped_column(
        ForeignKey("meter_readings.id"),
        nullable=True,
    )
    current_reading_id: Mapped[int] = mapped_column(
        ForeignKey("meter_readings.id"),
        nullable=False,
    )
    previous_reading_value: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    current_reading_value: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)

    units_consumed: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    bill: Mapped["Bill"] = relationship("Bill", back_populates="details")

    def __repr__(self) -> str:
        return (
            f"<BillDetail(id={self.id}, bill_id={self.bill_id}, meter_id={self.meter_id}, "
            f"units={self.units_consumed}, rate={self.rate}, amount={self.amount})>"
        )


__all__ = ["Bill", "BillDetail", "BillStatus"]
