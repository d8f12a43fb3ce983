"""Carry-forward ledger: credits and debits held on an account across periods.

Ledger methods join the caller's transaction and never commit, except the
expire_balances job which runs on its own.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from meterbill.models import (
    Bill,
    CarryForwardApplication,
    CarryForwardBalance,
    CarryForwardStatus,
    CarryForwardType,
)
from meterbill.services.audit_service import AuditService
from meterbill.services.bill_state import apply_amount
from meterbill.services.config import BillingSettings
from meterbill.services.dates import add_months, as_utc, utcnow
from meterbill.services.errors import InvalidInputError
from meterbill.services.money import quantize_amount

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class CreditConsumption(NamedTuple):
    """Credit drawn from the ledger in one operation."""

    amount: Decimal
    applications: list[CarryForwardApplication]


class CarryForwardLedger:
    """Create, consume, restore and expire carry-forward balances."""

    def __init__(self, db: Session, settings: BillingSettings):
        self.db = db
        self.settings = settings

    def _quantize(self, amount: Decimal) -> Decimal:
        return quantize_amount(amount, self.settings.amount_precision)

    def create_credit(
        self,
        account_id: int,
        amount: Decimal,
        payment_id: int | None = None,
        billing_period: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> CarryForwardBalance:
        """Record a credit (e.g. a payment remainder) with the configured expiry."""
        amount = self._quantize(amount)
        if amount <= 0:
            raise InvalidInputError(f"Carry-forward credit must be positive: {amount}", field="amount")

        now = now or utcnow()
        expires_at = None
        if self.settings.carry_forward_expiry_months:
            expires_at = add_months(now, self.settings.carry_forward_expiry_months)

        credit = CarryForwardBalance(
            account_id=account_id,
            payment_id=payment_id,
            balance_type=CarryForwardType.CREDIT,
            amount=amount,
            balance=amount,
            billing_period=billing_period,
            status=CarryForwardStatus.ACTIVE,
            expires_at=expires_at,
            notes=notes,
        )
        self.db.add(credit)
        self.db.flush()
        logger.info(
            "Carry-forward credit %d of %s on account %d (payment %s)",
            credit.id,
            amount,
            account_id,
            payment_id,
        )
        return credit

    def record_debit(
        self,
        account_id: int,
        amount: Decimal,
        billing_period: str | None = None,
        notes: str | None = None,
    ) -> CarryForwardBalance:
        """Track unpaid debt carried into later periods."""
        amount = self._quantize(amount)
        if amount <= 0:
            raise InvalidInputError(f"Carry-forward debit must be positive: {amount}", field="amount")

        debit = CarryForwardBalance(
            account_id=account_id,
            balance_type=CarryForwardType.DEBIT,
            amount=amount,
            balance=amount,
            billing_period=billing_period,
            status=CarryForwardStatus.ACTIVE,
            notes=notes,
        )
        self.db.add(debit)
        self.db.flush()
        return debit

    def _active(self, account_id: int, balance_type: CarryForwardType, as_of: datetime):
        return self.db.query(CarryForwardBalance).filter(
            CarryForwardBalance.account_id == account_id,
            CarryForwardBalance.balance_type == balance_type,
            CarryForwardBalance.status == CarryForwardStatus.ACTIVE,
            CarryForwardBalance.balance > 0,
            or_(
                CarryForwardBalance.expires_at.is_(None),
                CarryForwardBalance.expires_at > as_of,
            ),
        )

    def active_credits(self, account_id: int, as_of: datetime | None = None) -> list[CarryForwardBalance]:
        """Unexpired credits with money left, oldest first."""
        return (
            self._active(account_id, CarryForwardType.CREDIT, as_of or utcnow())
            .order_by(CarryForwardBalance.created_at.asc(), CarryForwardBalance.id.asc())
            .all()
        )

    def total_credit(self, account_id: int, as_of: datetime | None = None) -> Decimal:
        return sum((c.balance for c in self.active_credits(account_id, as_of)), ZERO)

    def total_debit(self, account_id: int, as_of: datetime | None = None) -> Decimal:
        total = (
            self._active(account_id, CarryForwardType.DEBIT, as_of or utcnow())
            .with_entities(func.coalesce(func.sum(CarryForwardBalance.balance), 0))
            .scalar()
        )
        return Decimal(str(total))

    def consume(
        self,
        account_id: int,
        amount: Decimal,
        payment_id: int | None = None,
        bill_id: int | None = None,
        as_of: datetime | None = None,
    ) -> CreditConsumption:
        """Draw up to `amount` from active credits, oldest first.

        Each draw is recorded as a CarryForwardApplication against the payment
        or bill that received it so it can be undone later.
        """
        if (payment_id is None) == (bill_id is None):
            raise InvalidInputError("Credit is consumed for exactly one of a payment or a bill")

        remaining = self._quantize(amount)
        consumed = ZERO
        applications: list[CarryForwardApplication] = []

        for credit in self.active_credits(account_id, as_of):
            if remaining <= 0:
                break
            take = min(remaining, credit.balance)
            credit.balance = credit.balance - take
            if credit.balance <= 0:
                credit.status = CarryForwardStatus.CONSUMED
            application = CarryForwardApplication(
                carry_forward_id=credit.id,
                payment_id=payment_id,
                bill_id=bill_id,
                amount=take,
            )
            self.db.add(application)
            applications.append(application)
            consumed += take
            remaining -= take

        if applications:
            self.db.flush()
            logger.info(
                "Consumed %s carry-forward credit on account %d (payment %s, bill %s)",
                consumed,
                account_id,
                payment_id,
                bill_id,
            )
        return CreditConsumption(amount=consumed, applications=applications)

    def restore_application(self, application: CarryForwardApplication) -> Decimal:
        """Give a consumed amount back to its credit and drop the application."""
        credit = self.db.get(CarryForwardBalance, application.carry_forward_id)
        credit.balance = credit.balance + application.amount
        if credit.status == CarryForwardStatus.CONSUMED:
            credit.status = CarryForwardStatus.ACTIVE
        amount = application.amount
        self.db.delete(application)
        return amount

    def applications_for(
        self, payment_id: int | None = None, bill_id: int | None = None
    ) -> list[CarryForwardApplication]:
        query = self.db.query(CarryForwardApplication)
        if payment_id is not None:
            query = query.filter(CarryForwardApplication.payment_id == payment_id)
        if bill_id is not None:
            query = query.filter(CarryForwardApplication.bill_id == bill_id)
        return query.order_by(CarryForwardApplication.id.desc()).all()

    def apply_credits_to_bill(self, bill: Bill, now: datetime | None = None) -> Decimal:
        """Settle as much of a bill as active credit allows."""
        if bill.balance <= 0:
            return ZERO
        now = now or utcnow()
        consumption = self.consume(bill.account_id, bill.balance, bill_id=bill.id, as_of=now)
        if consumption.amount > 0:
            apply_amount(bill, consumption.amount, now)
        return consumption.amount

    def expire_balances(self, as_of: datetime | None = None, actor_id: int | None = None) -> int:
        """Mark active balances past their expiry as expired and commit.

        Returns:
            Number of balances expired
        """
        as_of = as_of or utcnow()
        candidates = (
            self.db.query(CarryForwardBalance)
            .filter(
                CarryForwardBalance.status == CarryForwardStatus.ACTIVE,
                CarryForwardBalance.expires_at.is_not(None),
            )
            .all()
        )
        expired = [c for c in candidates if as_utc(c.expires_at) <= as_of]

        try:
            for balance in expired:
                balance.status = CarryForwardStatus.EXPIRED
                AuditService.log(
                    self.db,
                    "carry_forward",
                    balance.id,
                    "carry_forward.expired",
                    actor_id,
                    {"account_id": balance.account_id, "balance": str(balance.balance)},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if expired:
            logger.info("Expired %d carry-forward balances as of %s", len(expired), as_of)
        return len(expired)


__all__ = ["CarryForwardLedger", "CreditConsumption"]
