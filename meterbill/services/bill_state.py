"""Paid amount, balance and status bookkeeping shared by every bill mutation."""

from datetime import datetime
from decimal import Decimal

from meterbill.models import Bill, BillStatus

# Statuses that become partially_paid once money arrives
_UNPAID_STATUSES = (BillStatus.PENDING, BillStatus.UNPAID)


def apply_amount(bill: Bill, amount: Decimal, now: datetime) -> None:
    """Record money received against a bill and move its status forward."""
    bill.paid_amount = (bill.paid_amount or Decimal("0")) + amount
    bill.balance = bill.total_amount - bill.paid_amount
    if bill.balance <= 0:
        bill.balance = Decimal("0")
        bill.status = BillStatus.PAID
        bill.paid_at = now
    elif bill.paid_amount > 0 and bill.status in _UNPAID_STATUSES:
        bill.status = BillStatus.PARTIALLY_PAID


def remove_amount(bill: Bill, amount: Decimal, previous_status: BillStatus | None = None) -> None:
    """Take money back off a bill, restoring the status it had before.

    previous_status is the status recorded when the money was applied; it is
    adjusted so the restored status agrees with what is still paid.
    """
    bill.paid_amount = bill.paid_amount - amount
    bill.balance = bill.total_amount - bill.paid_amount
    bill.paid_at = None

    status = previous_status or bill.status
    if status == BillStatus.PAID:
        status = BillStatus.PARTIALLY_PAID if bill.paid_amount > 0 else BillStatus.PENDING
    if status in _UNPAID_STATUSES and bill.paid_amount > 0:
        status = BillStatus.PARTIALLY_PAID
    elif status == BillStatus.PARTIALLY_PAID and bill.paid_amount <= 0:
        status = BillStatus.PENDING
    bill.status = status


__all__ = ["apply_amount", "remove_amount"]
