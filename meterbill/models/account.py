"""Account ORM model for the billable entity owning meters, bills and payments."""

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterbill.models import Base, BaseModel


class Account(Base, BaseModel):
    """Model representing a billable account (formerly resident/customer).

    All bills, payments and carry-forward balances hang off an account, and every
    mutation of those rows is serialized per account.
    """

    __tablename__ = "accounts"

    account_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="External account number shown on statements",
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Account holder name",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive accounts are not billed",
    )

    # Relationships
    meters: Mapped[list["Meter"]] = relationship(  # noqa: F821
        "Meter",
        back_populates="account",
        order_by="Meter.id",
    )

    __table_args__ = (Index("idx_account_active", "is_active"),)

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, number={self.account_number!r}, name={self.name!r})>"


__all__ = ["Account"]
