"""Carry-forward balance models: credits/debits held on an account across periods."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from meterbill.models import Base, BaseModel, enum_column


class CarryForwardType(str, Enum):
    """Direction of a carried balance."""

    CREDIT = "credit"
    DEBIT = "debit"


class CarryForwardStatus(str, Enum):
    """Lifecycle of a carried balance."""

    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class CarryForwardBalance(Base, BaseModel):
    """Credit or debit carried forward on an account.

    `amount` is the original value; `balance` is what is left to consume.
    """

    __tablename__ = "carry_forward_balances"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id"),
        nullable=True,
        index=True,
        comment="Payment whose remainder created this credit",
    )
    balance_type: Mapped[CarryForwardType] = mapped_column(
        enum_column(CarryForwardType),
        nullable=False,
        default=CarryForwardType.CREDIT,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    billing_period: Mapped[str | None] = mapped_column(
        String(7),
        nullable=True,
        comment="Billing period context (YYYY-MM)",
    )
    status: Mapped[CarryForwardStatus] = mapped_column(
        enum_column(CarryForwardStatus),
        nullable=False,
        default=CarryForwardStatus.ACTIVE,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_carry_forward_account_status", "account_id", "status", "balance_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<CarryForwardBalance(id={self.id}, account_id={self.account_id}, "
            f"type={self.balance_type}, amount={self.amount}, balance={self.balance}, "
            f"status={self.status})>"
        )


class CarryForwardApplication(Base, BaseModel):
    """A consumption of carry-forward credit, kept so it can be undone.

    Exactly one of payment_id (credit pooled into a reconciliation) or bill_id
    (credit applied directly to a freshly generated bill) is set.
    """

    __tablename__ = "carry_forward_applications"

    carry_forward_id: Mapped[int] = mapped_column(
        ForeignKey("carry_forward_balances.id"),
        nullable=False,
        index=True,
    )
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id"),
        nullable=True,
        index=True,
    )
    bill_id: Mapped[int | None] = mapped_column(
        ForeignKey("bills.id"),
        nullable=True,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CarryForwardApplication(id={self.id}, carry_forward_id={self.carry_forward_id}, "
            f"payment_id={self.payment_id}, bill_id={self.bill_id}, amount={self.amount})>"
        )


__all__ = [
    "CarryForwardApplication",
    "CarryForwardBalance",
    "CarryForwardStatus",
    "CarryForwardType",
]
