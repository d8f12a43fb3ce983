"""Account balance snapshots, payment projections and aging.

All methods are read-only. Unified formula:
net_balance = outstanding bill balances + carry-forward debits - carry-forward credits
(positive means the account owes money).
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from meterbill.models import Account, Bill, BillStatus
from meterbill.services.allocation_strategies import get_strategy
from meterbill.services.carry_forward_service import CarryForwardLedger
from meterbill.services.config import BillingSettings
from meterbill.services.dates import utcnow
from meterbill.services.errors import InvalidInputError, NotFoundError
from meterbill.services.money import quantize_amount, to_decimal
from meterbill.services.repositories import BillRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

OUTSTANDING_STATUSES = (
    BillStatus.PENDING,
    BillStatus.PARTIALLY_PAID,
    BillStatus.OVERDUE,
    BillStatus.UNPAID,
)

# (label, upper bound of days overdue inclusive); None is unbounded
AGING_BUCKETS = (("current", 30), ("30_days", 60), ("60_days", 90), ("90_plus", None))


class BalanceSnapshot(NamedTuple):
    """Account balance at a point in time."""

    account_id: int
    total_billed: Decimal
    total_paid: Decimal
    outstanding_balance: Decimal
    carry_forward_credits: Decimal
    carry_forward_debits: Decimal
    net_balance: Decimal
    overdue_amount: Decimal
    overdue_bill_count: int
    outstanding_bill_count: int
    oldest_due_date: Optional[date]
    calculated_at: datetime

    @property
    def has_outstanding_balance(self) -> bool:
        return self.net_balance > 0

    def to_dict(self) -> dict:
        data = self._asdict()
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
            elif isinstance(value, (date, datetime)):
                data[key] = value.isoformat()
        return data


def days_overdue(bill: Bill, as_of: date) -> int:
    return max((as_of - bill.due_date).days, 0)


class BalanceService:
    """Read-only balance views over bills and the carry-forward ledger."""

    def __init__(self, db: Session, settings: BillingSettings):
        self.db = db
        self.settings = settings
        self.bills = BillRepository(db)
        self.ledger = CarryForwardLedger(db, settings)

    def _round(self, amount: Decimal) -> Decimal:
        return quantize_amount(amount, self.settings.amount_precision)

    def _outstanding(self, account_id: int) -> list[Bill]:
        return (
            self.db.query(Bill)
            .filter(Bill.account_id == account_id, Bill.status.in_(OUTSTANDING_STATUSES))
            .order_by(Bill.due_date.asc(), Bill.id.asc())
            .all()
        )

    def get_account_balance(self, account_id: int, as_of: datetime | None = None) -> BalanceSnapshot:
        """Compute the current balance of an account.

        Raises:
            NotFoundError: Account does not exist
        """
        if self.db.get(Account, account_id) is None:
            raise NotFoundError(f"Account {account_id} not found", field="account_id")

        now = as_of or utcnow()
        bills = self._outstanding(account_id)
        total_billed = sum((b.total_amount for b in bills), ZERO)
        total_paid = sum((b.paid_amount for b in bills), ZERO)
        outstanding = sum((b.balance for b in bills), ZERO)
        credits = self.ledger.total_credit(account_id, now)
        debits = self.ledger.total_debit(account_id, now)

        today = now.date()
        overdue = [b for b in bills if b.status == BillStatus.OVERDUE or b.due_date < today]

        return BalanceSnapshot(
            account_id=account_id,
            total_billed=self._round(total_billed),
            total_paid=self._round(total_paid),
            outstanding_balance=self._round(outstanding),
            carry_forward_credits=self._round(credits),
            carry_forward_debits=self._round(debits),
            net_balance=self._round(outstanding + debits - credits),
            overdue_amount=self._round(sum((b.balance for b in overdue), ZERO)),
            overdue_bill_count=len(overdue),
            outstanding_bill_count=len(bills),
            oldest_due_date=bills[0].due_date if bills else None,
            calculated_at=now,
        )

    def get_period_balance(self, account_id: int, billing_period: str) -> dict:
        """Totals of the live bill for one period (zeros when there is none)."""
        bill = self.bills.find_for_period(account_id, billing_period)
        if bill is None:
            return {
                "billing_period": billing_period,
                "bill_id": None,
                "total_amount": ZERO,
                "paid_amount": ZERO,
                "balance": ZERO,
                "status": None,
            }
        return {
            "billing_period": billing_period,
            "bill_id": bill.id,
            "total_amount": bill.total_amount,
            "paid_amount": bill.paid_amount,
            "balance": bill.balance,
            "status": bill.status.value,
        }

    def project_payment_impact(self, account_id: int, amount: Decimal) -> dict:
        """Simulate allocating a payment with the configured strategy; nothing is written."""
        amount = to_decimal(amount)
        if amount <= 0:
            raise InvalidInputError(f"Payment amount must be positive: {amount}", field="amount")

        snapshot = self.get_account_balance(account_id)
        strategy = get_strategy(self.settings.allocation_strategy)
        remaining = amount
        allocations = []

        for bill in strategy.select_order(self.bills.find_outstanding_bills(account_id)):
            if remaining < self.settings.minimum_allocation:
                break
            if (
                self.settings.max_bills_per_reconciliation
                and len(allocations) >= self.settings.max_bills_per_reconciliation
            ):
                break
            take = min(remaining, bill.balance)
            new_balance = bill.balance - take
            allocations.append(
                {
                    "bill_id": bill.id,
                    "billing_period": bill.billing_period,
                    "current_balance": bill.balance,
                    "allocated_amount": take,
                    "new_balance": new_balance,
                    "will_be_paid": new_balance <= self.settings.amount_tolerance,
                }
            )
            remaining -= take

        allocated = amount - remaining
        return {
            "payment_amount": amount,
            "strategy": strategy.name,
            "current_net_balance": snapshot.net_balance,
            "allocated_amount": allocated,
            "remaining_amount": remaining,
            "new_net_balance": snapshot.net_balance - amount,
            "bills_to_be_paid": sum(1 for a in allocations if a["will_be_paid"]),
            "allocations": allocations,
            "will_have_credit": remaining > 0,
        }

    def get_carry_forward_details(self, account_id: int) -> dict:
        credits = self.ledger.active_credits(account_id)
        total_credits = sum((c.balance for c in credits), ZERO)
        total_debits = self.ledger.total_debit(account_id)
        return {
            "credits": [
                {
                    "id": c.id,
                    "amount": c.amount,
                    "balance": c.balance,
                    "payment_id": c.payment_id,
                    "expires_at": c.expires_at,
                }
                for c in credits
            ],
            "total_credits": total_credits,
            "total_debits": total_debits,
            "net_carry_forward": total_credits - total_debits,
        }

    def get_aging_report(self, account_id: int, as_of: date | None = None) -> dict:
        """Outstanding balances bucketed by days past due."""
        as_of = as_of or date.today()
        report = {label: {"count": 0, "amount": ZERO} for label, _ in AGING_BUCKETS}

        for bill in self._outstanding(account_id):
            days = days_overdue(bill, as_of)
            for label, upper in AGING_BUCKETS:
                if upper is None or days <= upper:
                    report[label]["count"] += 1
                    report[label]["amount"] += bill.balance
                    break
        return report


__all__ = ["AGING_BUCKETS", "BalanceService", "BalanceSnapshot", "OUTSTANDING_STATUSES", "days_overdue"]
