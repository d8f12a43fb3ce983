"""Payment ORM models: receipts of funds and their allocations to bills."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterbill.models import Base, BaseModel, enum_column
from meterbill.models.bill import BillStatus


class PaymentStatus(str, Enum):
    """Status of the funds themselves."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class ReconciliationStatus(str, Enum):
    """Whether the payment has been allocated against bills."""

    PENDING = "pending"
    PARTIALLY_RECONCILED = "partially_reconciled"
    RECONCILED = "reconciled"


class Payment(Base, BaseModel):
    """Model representing a receipt of funds on an account."""

    __tablename__ = "payments"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Payment amount (always positive)",
    )

    method: Mapped[str] = mapped_column(String(50), nullable=False, default="cash")

    external_transaction_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Transaction id from the payment provider",
    )

    status: Mapped[PaymentStatus] = mapped_column(
        enum_column(PaymentStatus),
        nullable=False,
        default=PaymentStatus.COMPLETED,
    )

    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        enum_column(ReconciliationStatus),
        nullable=False,
        default=ReconciliationStatus.PENDING,
    )

    payment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    refund_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Overpayment earmarked for refund",
    )

    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciled_by: Mapped[int | None] = mapped_column(nullable=True)

    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        "PaymentAllocation",
        back_populates="payment",
        order_by="PaymentAllocation.id",
    )

    __table_args__ = (
        Index("idx_payment_account_date", "account_id", "payment_date"),
        Index("idx_payment_reconciliation", "account_id", "reconciliation_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, account_id={self.account_id}, amount={self.amount}, "
            f"status={self.status}, reconciliation_status={self.reconciliation_status})>"
        )


class PaymentAllocation(Base, BaseModel):
    """Amount of a payment applied to one bill.

    Created only by reconciliation; removed only by reversal, which uses
    `previous_bill_status` to put the bill back where it was.
    """

    __tablename__ = "payment_allocations"

    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
    )
    bill_id: Mapped[int] = mapped_column(
        ForeignKey("bills.id"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    allocated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    previous_bill_status: Mapped[BillStatus] = mapped_column(
        enum_column(BillStatus),
        nullable=False,
    )

    payment: Mapped["Payment"] = relationship("Payment", back_populates="allocations")
    bill: Mapped["Bill"] = relationship("Bill")  # noqa: F821

    __table_args__ = (Index("idx_allocation_payment_bill", "payment_id", "bill_id"),)

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation(id={self.id}, payment_id={self.payment_id}, "
            f"bill_id={self.bill_id}, amount={self.amount})>"
        )


__all__ = ["Payment", "PaymentAllocation", "PaymentStatus", "ReconciliationStatus"]
