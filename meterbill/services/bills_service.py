"""Bill lifecycle after generation: void, rebill, overdue marking and late fees."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from meterbill.models import Account, Bill, BillStatus, PaymentAllocation
from meterbill.services.audit_service import AuditService
from meterbill.services.billing_service import BillingGenerator, BillingResult
from meterbill.services.carry_forward_service import CarryForwardLedger
from meterbill.services.config import BillingSettings
from meterbill.services.dates import parse_billing_period, utcnow
from meterbill.services.errors import BillNotVoidableError, InvalidInputError, NotFoundError
from meterbill.services.events import DomainEvent
from meterbill.services.locks import AccountLockManager, account_locks
from meterbill.services.money import quantize_amount
from meterbill.services.repositories import BillRepository

logger = logging.getLogger(__name__)

# Bills still waiting for money
OPEN_STATUSES = (BillStatus.PENDING, BillStatus.PARTIALLY_PAID, BillStatus.UNPAID)


@dataclass
class LateFeeResult:
    bill: Bill
    fee: Decimal


@dataclass
class BillJobResult:
    """Outcome of a batch job over bills."""

    bills: list[Bill] = field(default_factory=list)
    late_fees: list[LateFeeResult] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)


class BillsService:
    """Service for bill operations beyond generation.

    Every mutation runs under the owning account's lock.
    """

    def __init__(
        self,
        db: Session,
        settings: BillingSettings,
        generator: BillingGenerator | None = None,
        locks: AccountLockManager | None = None,
    ):
        self.db = db
        self.settings = settings
        self.locks = locks or account_locks
        self.generator = generator or BillingGenerator(db, settings, locks=self.locks)
        self.bills = BillRepository(db)
        self.ledger = CarryForwardLedger(db, settings)

    def get_bill(self, bill_id: int) -> Bill:
        bill = self.bills.get(bill_id)
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found", field="bill_id")
        return bill

    def list_bills(self, account_id: int, include_void: bool = False) -> list[Bill]:
        return self.bills.list_for_account(account_id, include_void)

    def _void_locked(self, bill: Bill, reason: str, actor_id: int | None) -> Decimal:
        """Void a bill inside the caller's transaction; returns credit given back."""
        if bill.status == BillStatus.VOID:
            raise BillNotVoidableError(f"Bill {bill.id} is already void", field="bill_id")
        allocated = (
            self.db.query(PaymentAllocation).filter(PaymentAllocation.bill_id == bill.id).count()
        )
        if allocated:
            raise BillNotVoidableError(
                f"Bill {bill.id} has {allocated} payment allocation(s); reverse those payments first",
                field="bill_id",
            )

        restored = Decimal("0")
        for application in self.ledger.applications_for(bill_id=bill.id):
            restored += self.ledger.restore_application(application)

        bill.paid_amount = bill.paid_amount - restored
        bill.balance = Decimal("0")
        bill.status = BillStatus.VOID
        bill.voided_at = utcnow()
        bill.void_reason = reason
        AuditService.log(
            self.db,
            "bill",
            bill.id,
            "billing.voided",
            actor_id,
            {"reason": reason, "billing_period": bill.billing_period, "credit_restored": str(restored)},
        )
        self.db.flush()
        return restored

    def void_bill(
        self,
        bill_id: int,
        reason: str,
        actor_id: int | None = None,
        timeout: float | None = None,
    ) -> Bill:
        """Void a bill that has no payment allocations.

        Carry-forward credit applied to the bill is returned to the ledger.

        Raises:
            BillNotVoidableError: Bill is void already or has allocations
        """
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required to void a bill", field="reason")
        bill = self.get_bill(bill_id)
        wait = self.settings.lock_timeout_seconds if timeout is None else timeout

        with self.locks.hold(bill.account_id, wait):
            try:
                self.bills.lock_account(bill.account_id)
                self.db.refresh(bill)
                self._void_locked(bill, reason, actor_id)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info("Voided bill %d (%s): %s", bill.id, bill.billing_period, reason)
        return bill

    def rebill(
        self,
        bill_id: int,
        reason: str,
        issued_on: date | None = None,
        actor_id: int | None = None,
        timeout: float | None = None,
    ) -> BillingResult:
        """Void a bill and generate its replacement for the same period atomically."""
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required to rebill", field="reason")
        original = self.get_bill(bill_id)
        account = self.db.get(Account, original.account_id)
        period = parse_billing_period(original.billing_period)
        wait = self.settings.lock_timeout_seconds if timeout is None else timeout

        with self.locks.hold(account.id, wait):
            try:
                self.bills.lock_account(account.id)
                self.db.refresh(original)
                self._void_locked(original, reason, actor_id)
                result = self.generator.build_bill(
                    account, period, issued_on or date.today(), replaced_bill_id=original.id
                )
                if self.settings.auto_apply_credit_to_new_bills:
                    result.credit_applied = self.ledger.apply_credits_to_bill(result.bill)
                AuditService.log(
                    self.db,
                    "bill",
                    result.bill.id,
                    "billing.generated",
                    actor_id,
                    {
                        "account_id": account.id,
                        "billing_period": period.label,
                        "replaces_bill_id": original.id,
                        "total_amount": str(result.bill.total_amount),
                    },
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        result.events.extend(
            [
                DomainEvent(
                    name="billing.voided",
                    entity_id=original.id,
                    account_id=account.id,
                    payload={"reason": reason, "replaced_by": result.bill.id},
                ),
                DomainEvent(
                    name="billing.generated",
                    entity_id=result.bill.id,
                    account_id=account.id,
                    payload={
                        "billing_period": period.label,
                        "total_amount": str(result.bill.total_amount),
                        "replaces_bill_id": original.id,
                    },
                ),
            ]
        )
        logger.info("Rebilled %d as %d for period %s", original.id, result.bill.id, period.label)
        return result

    def set_disputed(self, bill_id: int, disputed: bool, actor_id: int | None = None) -> Bill:
        """Flag or unflag a bill as disputed; disputed bills are skipped by allocation."""
        bill = self.get_bill(bill_id)
        with self.locks.hold(bill.account_id, self.settings.lock_timeout_seconds):
            try:
                bill.is_disputed = disputed
                AuditService.log(
                    self.db, "bill", bill.id, "billing.disputed" if disputed else "billing.undisputed",
                    actor_id,
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        return bill

    def _by_account(self, bills: list[Bill]) -> dict[int, list[Bill]]:
        grouped: dict[int, list[Bill]] = defaultdict(list)
        for bill in bills:
            grouped[bill.account_id].append(bill)
        return grouped

    def mark_overdue_bills(self, as_of: date | None = None, actor_id: int | None = None) -> BillJobResult:
        """Set overdue on open bills past their due date, one account at a time."""
        as_of = as_of or date.today()
        candidates = (
            self.db.query(Bill)
            .filter(
                Bill.status.in_(OPEN_STATUSES),
                Bill.due_date < as_of,
                Bill.balance > 0,
                Bill.is_disputed.is_(False),
            )
            .order_by(Bill.account_id, Bill.id)
            .all()
        )

        result = BillJobResult()
        for account_id, bills in self._by_account(candidates).items():
            with self.locks.hold(account_id, self.settings.lock_timeout_seconds):
                try:
                    for bill in bills:
                        self.db.refresh(bill)
                        if bill.status not in OPEN_STATUSES or bill.balance <= 0:
                            continue
                        bill.status = BillStatus.OVERDUE
                        AuditService.log(
                            self.db, "bill", bill.id, "billing.overdue", actor_id,
                            {"due_date": bill.due_date.isoformat(), "balance": str(bill.balance)},
                        )
                        result.bills.append(bill)
                        result.events.append(
                            DomainEvent(
                                name="billing.overdue",
                                entity_id=bill.id,
                                account_id=account_id,
                                payload={"balance": str(bill.balance)},
                            )
                        )
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise

        logger.info("Marked %d bills overdue as of %s", len(result.bills), as_of)
        return result

    def calculate_late_fee(self, bill: Bill) -> Decimal:
        """Percentage of the bill total, clamped to the configured minimum and maximum."""
        fee = bill.total_amount * self.settings.late_fee_percentage / Decimal("100")
        fee = max(self.settings.late_fee_minimum, min(fee, self.settings.late_fee_maximum))
        return quantize_amount(fee, self.settings.amount_precision)

    def apply_late_fees(self, as_of: date | None = None, actor_id: int | None = None) -> BillJobResult:
        """Apply a one-time late fee to bills overdue beyond the grace period."""
        result = BillJobResult()
        if not self.settings.late_fees_enabled:
            logger.info("Late fees are disabled in configuration")
            return result

        as_of = as_of or date.today()
        candidates = (
            self.db.query(Bill)
            .filter(
                Bill.status.in_((*OPEN_STATUSES, BillStatus.OVERDUE)),
                Bill.due_date < as_of,
                Bill.balance > 0,
                Bill.is_disputed.is_(False),
                Bill.late_fee_applied_at.is_(None),
            )
            .order_by(Bill.account_id, Bill.id)
            .all()
        )
        eligible = [
            b for b in candidates if (as_of - b.due_date).days > self.settings.grace_period_days
        ]

        for account_id, bills in self._by_account(eligible).items():
            with self.locks.hold(account_id, self.settings.lock_timeout_seconds):
                try:
                    for bill in bills:
                        self.db.refresh(bill)
                        if bill.late_fee_applied_at is not None or bill.balance <= 0:
                            continue
                        fee = self.calculate_late_fee(bill)
                        if fee <= 0:
                            continue
                        bill.late_fee = fee
                        bill.late_fee_applied_at = as_of
                        bill.total_amount = bill.total_amount + fee
                        bill.balance = bill.balance + fee
                        bill.status = BillStatus.OVERDUE
                        self.generator.check_totals(bill)
                        AuditService.log(
                            self.db, "bill", bill.id, "billing.late_fee_applied", actor_id,
                            {"fee": str(fee), "days_overdue": (as_of - bill.due_date).days},
                        )
                        result.late_fees.append(LateFeeResult(bill=bill, fee=fee))
                        result.bills.append(bill)
                        result.events.append(
                            DomainEvent(
                                name="billing.late_fee_applied",
                                entity_id=bill.id,
                                account_id=account_id,
                                payload={"fee": str(fee)},
                            )
                        )
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise

        logger.info(
            "Applied late fees to %d bills (total %s)",
            len(result.late_fees),
            sum((r.fee for r in result.late_fees), Decimal("0")),
        )
        return result


__all__ = ["BillJobResult", "BillsService", "LateFeeResult"]
