"""Payment reconciliation: allocate a payment across outstanding bills.

State per payment: pending -> partially_reconciled -> reconciled, with
reverse() taking reconciled or partially_reconciled back to pending.

A payment is reconciled when its whole amount is absorbed by allocations plus
carry-forward credit or refund. It stays partially_reconciled when the engine
stops early (max_bills_per_reconciliation) or when overpayment_handling is
manual and a remainder is left unallocated; such a payment can be reconciled
again and only its unallocated part is used.

Ledger identity checked before every commit:
    allocated + carried_forward + refunded + unallocated == amount + credit_applied
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from meterbill.models import (
    Bill,
    BillStatus,
    CarryForwardApplication,
    CarryForwardBalance,
    Payment,
    PaymentAllocation,
    PaymentStatus,
    ReconciliationStatus,
)
from meterbill.services.allocation_strategies import AllocationStrategy, get_strategy, is_allocatable
from meterbill.services.audit_service import AuditService
from meterbill.services.balance_service import BalanceService, BalanceSnapshot
from meterbill.services.bill_state import apply_amount, remove_amount
from meterbill.services.carry_forward_service import CarryForwardLedger
from meterbill.services.config import BillingSettings, OverpaymentHandling, ReversalPermission
from meterbill.services.dates import as_utc, utcnow
from meterbill.services.errors import (
    BillingError,
    CarryForwardConsumedError,
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
    NotReconciledError,
    PaymentAlreadyReconciledError,
    PaymentNotCompletedError,
    TimeLimitExceededError,
    UnauthorizedReversalError,
)
from meterbill.services.events import DomainEvent
from meterbill.services.locks import AccountLockManager, account_locks
from meterbill.services.money import Money, to_decimal
from meterbill.services.repositories import BillRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

REVERSIBLE_STATUSES = (ReconciliationStatus.RECONCILED, ReconciliationStatus.PARTIALLY_RECONCILED)


@dataclass(frozen=True)
class ManualAllocation:
    """Explicit amount a caller wants applied to one bill."""

    bill_id: int
    amount: Decimal

    @classmethod
    def coerce(cls, value: Any) -> "ManualAllocation":
        if isinstance(value, ManualAllocation):
            return value
        if isinstance(value, dict):
            return cls(int(value["bill_id"]), to_decimal(value["amount"]))
        bill_id, amount = value
        return cls(int(bill_id), to_decimal(amount))


@dataclass
class ReconciliationResult:
    """Outcome of one reconcile() call.

    remaining_amount is what this call did not allocate to bills: it went to
    carry_forward, to refund_amount, or was left unallocated.
    """

    payment: Payment
    allocations: list[PaymentAllocation]
    total_allocated: Decimal
    remaining_amount: Decimal
    carry_forward: Optional[CarryForwardBalance]
    updated_bills: list[Bill]
    balance_snapshot: BalanceSnapshot
    credit_applied: Decimal = ZERO
    refund_amount: Decimal = ZERO
    unallocated_amount: Decimal = ZERO
    stopped_by_cap: bool = False
    events: list[DomainEvent] = field(default_factory=list)

    def is_fully_allocated(self, tolerance: Decimal = Decimal("0.01")) -> bool:
        return self.remaining_amount <= tolerance

    def has_overpayment(self) -> bool:
        return self.remaining_amount > 0

    def fully_paid_bills(self) -> list[Bill]:
        return [bill for bill in self.updated_bills if bill.status == BillStatus.PAID]

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment.id,
            "reconciliation_status": self.payment.reconciliation_status.value,
            "total_allocated": str(self.total_allocated),
            "remaining_amount": str(self.remaining_amount),
            "credit_applied": str(self.credit_applied),
            "refund_amount": str(self.refund_amount),
            "unallocated_amount": str(self.unallocated_amount),
            "stopped_by_cap": self.stopped_by_cap,
            "allocations": [
                {"bill_id": a.bill_id, "amount": str(a.amount)} for a in self.allocations
            ],
            "carry_forward": (
                {"id": self.carry_forward.id, "amount": str(self.carry_forward.amount)}
                if self.carry_forward
                else None
            ),
            "updated_bills": [
                {"id": b.id, "status": b.status.value, "balance": str(b.balance)}
                for b in self.updated_bills
            ],
            "balance_snapshot": self.balance_snapshot.to_dict(),
        }

    def summary(self) -> str:
        parts = [
            f"Payment #{self.payment.id}: allocated {self.total_allocated} "
            f"to {len({a.bill_id for a in self.allocations})} bill(s)"
        ]
        if self.credit_applied > 0:
            parts.append(f"used {self.credit_applied} credit")
        if self.carry_forward is not None:
            parts.append(f"carried forward {self.carry_forward.amount}")
        if self.refund_amount > 0:
            parts.append(f"refund due {self.refund_amount}")
        if self.unallocated_amount > 0:
            parts.append(f"{self.unallocated_amount} left unallocated")
        return ", ".join(parts)


@dataclass
class ReversalResult:
    payment: Payment
    reversed_allocations: int
    restored_bills: list[Bill]
    removed_carry_forward: Decimal
    restored_credit: Decimal
    events: list[DomainEvent] = field(default_factory=list)


class ReconciliationEngine:
    """Allocates payments to bills and reverses those allocations.

    All mutations of one account run under the account lock and inside a
    single transaction; on any error the session is rolled back and the error
    re-raised.
    """

    def __init__(
        self,
        db: Session,
        settings: BillingSettings,
        strategy: AllocationStrategy | None = None,
        locks: AccountLockManager | None = None,
    ):
        self.db = db
        self.settings = settings
        self.strategy = strategy or get_strategy(settings.allocation_strategy)
        self.locks = locks or account_locks
        self.bills = BillRepository(db)
        self.ledger = CarryForwardLedger(db, settings)
        self.balances = BalanceService(db, settings)

    def _money(self, amount: Decimal) -> Money:
        return Money(amount, self.settings.currency)

    def _get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", field="payment_id")
        return payment

    def _lock_wait(self, timeout: float | None) -> float:
        return self.settings.lock_timeout_seconds if timeout is None else timeout

    def _check_reconcilable(self, payment: Payment) -> None:
        if payment.status != PaymentStatus.COMPLETED:
            raise PaymentNotCompletedError(
                f"Payment {payment.id} is {payment.status.value}; only completed payments "
                "can be reconciled",
                field="payment_id",
            )
        if payment.reconciliation_status == ReconciliationStatus.RECONCILED:
            raise PaymentAlreadyReconciledError(
                f"Payment {payment.id} is already reconciled", field="payment_id"
            )

    # Ledger sums for one payment

    def _allocated_total(self, payment_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(PaymentAllocation.amount), 0))
            .filter(PaymentAllocation.payment_id == payment_id)
            .scalar()
        )
        return to_decimal(total)

    def _carried_total(self, payment_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(CarryForwardBalance.amount), 0))
            .filter(CarryForwardBalance.payment_id == payment_id)
            .scalar()
        )
        return to_decimal(total)

    def _credit_total(self, payment_id: int) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(CarryForwardApplication.amount), 0))
            .filter(CarryForwardApplication.payment_id == payment_id)
            .scalar()
        )
        return to_decimal(total)

    def unallocated_amount(self, payment: Payment) -> Decimal:
        """Part of the payment not yet allocated, carried forward or refunded."""
        return (
            payment.amount
            + self._credit_total(payment.id)
            - self._allocated_total(payment.id)
            - self._carried_total(payment.id)
            - (payment.refund_amount or ZERO)
        )

    def reconcile(
        self,
        payment_id: int,
        actor_id: int | None = None,
        manual_allocations: Iterable[Any] | None = None,
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> ReconciliationResult:
        """Allocate a completed payment to the account's outstanding bills.

        Args:
            payment_id: Payment to reconcile
            actor_id: User running the reconciliation (optional)
            manual_allocations: Explicit (bill_id, amount) pairs; when given the
                allocation strategy is not used
            timeout: Seconds to wait for the account lock (defaults to settings)
            now: Timestamp to record (defaults to current UTC time)

        Returns:
            ReconciliationResult with committed allocations and domain events

        Raises:
            PaymentNotCompletedError / PaymentAlreadyReconciledError: Wrong payment state
            InvalidInputError: Manual allocation does not fit the bill or the payment
            AccountLockedError: The account lock was not acquired in time
            InvariantViolationError: Ledger identity failed its pre-commit check
        """
        payment = self._get_payment(payment_id)
        self._check_reconcilable(payment)
        manual = [ManualAllocation.coerce(m) for m in manual_allocations or []]
        now = now or utcnow()

        with self.locks.hold(payment.account_id, self._lock_wait(timeout)):
            try:
                self.bills.lock_account(payment.account_id)
                self.db.refresh(payment)
                self._check_reconcilable(payment)
                result = self._reconcile_locked(payment, manual, actor_id, now)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                if isinstance(e, BillingError):
                    logger.warning("Reconciliation of payment %d failed: %s", payment_id, e.message)
                else:
                    logger.exception("Reconciliation of payment %d failed", payment_id)
                raise

        logger.info(result.summary())
        return result

    def _reconcile_locked(
        self,
        payment: Payment,
        manual: list[ManualAllocation],
        actor_id: int | None,
        now: datetime,
    ) -> ReconciliationResult:
        available = self._money(self.unallocated_amount(payment))
        minimum = self._money(self.settings.minimum_allocation)
        allocations: list[PaymentAllocation] = []
        touched: dict[int, Bill] = {}
        stopped_by_cap = False
        credit_applied = ZERO

        def allocate(bill: Bill, amount: Money) -> None:
            allocation = PaymentAllocation(
                payment_id=payment.id,
                bill_id=bill.id,
                amount=amount.amount,
                allocated_at=now,
                previous_bill_status=bill.status,
            )
            self.db.add(allocation)
            apply_amount(bill, amount.amount, now)
            allocations.append(allocation)
            touched[bill.id] = bill
            logger.debug(
                "Allocated %s of payment %d to bill %d (balance now %s)",
                amount.amount,
                payment.id,
                bill.id,
                bill.balance,
            )

        if manual:
            remaining = available
            for item in manual:
                bill = self._validate_manual(payment, item, remaining)
                amount = self._money(item.amount)
                allocate(bill, amount)
                remaining = remaining - amount
        else:
            ordered = self.strategy.select_order(self.bills.find_outstanding_bills(payment.account_id))
            cap = self.settings.max_bills_per_reconciliation
            if cap is not None and len(ordered) > cap:
                in_scope = ordered[:cap]
            else:
                in_scope = ordered

            if self.settings.apply_credit_on_reconcile:
                shortfall = sum((b.balance for b in in_scope), ZERO) - available.amount
                if shortfall > 0:
                    consumption = self.ledger.consume(
                        payment.account_id, shortfall, payment_id=payment.id, as_of=now
                    )
                    credit_applied = consumption.amount
                    available = available + self._money(credit_applied)

            remaining = available
            for bill in in_scope:
                if remaining < minimum:
                    break
                take = self._money(min(remaining.amount, bill.balance))
                allocate(bill, take)
                remaining = remaining - take
            stopped_by_cap = len(in_scope) < len(ordered) and remaining >= minimum

        leftover = remaining.amount
        carry_forward = None
        refund = ZERO
        unallocated = leftover
        partial = stopped_by_cap

        if not stopped_by_cap and leftover > self.settings.minimum_carry_forward:
            handling = self.settings.overpayment_handling
            if handling == OverpaymentHandling.CARRY_FORWARD:
                carry_forward = self.ledger.create_credit(
                    payment.account_id,
                    leftover,
                    payment_id=payment.id,
                    notes=f"Overpayment from payment #{payment.id}",
                    now=now,
                )
                unallocated = ZERO
                AuditService.log(
                    self.db,
                    "carry_forward",
                    carry_forward.id,
                    "carry_forward.created",
                    actor_id,
                    {"account_id": payment.account_id, "payment_id": payment.id, "amount": str(leftover)},
                )
            elif handling == OverpaymentHandling.REFUND:
                refund = leftover
                payment.refund_amount = (payment.refund_amount or ZERO) + refund
                unallocated = ZERO
            else:
                partial = True

        payment.reconciliation_status = (
            ReconciliationStatus.PARTIALLY_RECONCILED if partial else ReconciliationStatus.RECONCILED
        )
        payment.reconciled_at = now
        payment.reconciled_by = actor_id
        self.db.flush()

        self._check_invariants(payment, unallocated, list(touched.values()))

        total_allocated = sum((a.amount for a in allocations), ZERO)
        snapshot = self.balances.get_account_balance(payment.account_id, as_of=now)
        updated_bills = list(touched.values())

        AuditService.log(
            self.db,
            "payment",
            payment.id,
            "payment.reconciled",
            actor_id,
            {
                "strategy": "manual" if manual else self.strategy.name,
                "allocations": [{"bill_id": a.bill_id, "amount": str(a.amount)} for a in allocations],
                "total_allocated": str(total_allocated),
                "credit_applied": str(credit_applied),
                "carry_forward_id": carry_forward.id if carry_forward else None,
                "refund_amount": str(refund),
                "unallocated": str(unallocated),
                "status": payment.reconciliation_status.value,
                "balance_snapshot": snapshot.to_dict(),
            },
        )

        events = [
            DomainEvent(
                name="payment.reconciled",
                entity_id=payment.id,
                account_id=payment.account_id,
                payload={
                    "status": payment.reconciliation_status.value,
                    "total_allocated": str(total_allocated),
                    "remaining_amount": str(leftover),
                },
                occurred_at=now,
            )
        ]
        if carry_forward is not None:
            events.append(
                DomainEvent(
                    name="carry_forward.created",
                    entity_id=carry_forward.id,
                    account_id=payment.account_id,
                    payload={"amount": str(carry_forward.amount), "payment_id": payment.id},
                    occurred_at=now,
                )
            )
        for bill in updated_bills:
            if bill.status == BillStatus.PAID:
                events.append(
                    DomainEvent(
                        name="bill.paid",
                        entity_id=bill.id,
                        account_id=bill.account_id,
                        payload={"billing_period": bill.billing_period},
                        occurred_at=now,
                    )
                )

        return ReconciliationResult(
            payment=payment,
            allocations=allocations,
            total_allocated=total_allocated,
            remaining_amount=leftover,
            carry_forward=carry_forward,
            updated_bills=updated_bills,
            balance_snapshot=snapshot,
            credit_applied=credit_applied,
            refund_amount=refund,
            unallocated_amount=unallocated,
            stopped_by_cap=stopped_by_cap,
            events=events,
        )

    def _validate_manual(self, payment: Payment, item: ManualAllocation, remaining: Money) -> Bill:
        bill = self.bills.get(item.bill_id)
        if bill is None:
            raise NotFoundError(f"Bill {item.bill_id} not found", field="bill_id")
        if bill.account_id != payment.account_id:
            raise InvalidInputError(
                f"Bill {bill.id} does not belong to the account of payment {payment.id}",
                field="bill_id",
            )
        if not is_allocatable(bill):
            raise InvalidInputError(
                f"Bill {bill.id} cannot receive allocations (status {bill.status.value})",
                field="bill_id",
            )
        if item.amount <= 0:
            raise InvalidInputError(f"Allocation amount must be positive: {item.amount}", field="amount")
        if item.amount > bill.balance:
            raise InvalidInputError(
                f"Cannot allocate {item.amount} to bill {bill.id}: balance is only {bill.balance}",
                field="amount",
            )
        if item.amount > remaining.amount:
            raise InvalidInputError(
                f"Cannot allocate {item.amount}: only {remaining.amount} of payment "
                f"{payment.id} remains",
                field="amount",
            )
        return bill

    def _check_invariants(self, payment: Payment, unallocated: Decimal, bills: list[Bill]) -> None:
        tolerance = self.settings.amount_tolerance
        allocated = self._allocated_total(payment.id)
        carried = self._carried_total(payment.id)
        credit = self._credit_total(payment.id)
        refunded = payment.refund_amount or ZERO

        problems = []
        lhs = allocated + carried + refunded + unallocated
        rhs = payment.amount + credit
        if abs(lhs - rhs) > tolerance:
            problems.append(
                f"allocated {allocated} + carried {carried} + refunded {refunded} + "
                f"unallocated {unallocated} != amount {payment.amount} + credit {credit}"
            )
        if unallocated < 0:
            problems.append(f"negative unallocated amount {unallocated}")
        for bill in bills:
            if bill.balance < 0:
                problems.append(f"bill {bill.id} has negative balance {bill.balance}")
            if bill.paid_amount > bill.total_amount + tolerance:
                problems.append(
                    f"bill {bill.id} paid {bill.paid_amount} exceeds total {bill.total_amount}"
                )
            if abs(bill.total_amount - bill.paid_amount - bill.balance) > tolerance:
                problems.append(f"bill {bill.id} balance does not equal total minus paid")

        if problems:
            logger.error("Ledger invariant violated for payment %d: %s", payment.id, "; ".join(problems))
            raise InvariantViolationError(
                f"Ledger invariant violated for payment {payment.id}: {'; '.join(problems)}"
            )

    def reverse(
        self,
        payment_id: int,
        reason: str,
        actor_id: int | None = None,
        actor_is_admin: bool = False,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> ReversalResult:
        """Undo a payment's reconciliation and return it to pending.

        Restores every touched bill's paid amount, balance and status, removes
        the carry-forward credit the reconciliation created and gives back any
        credit it consumed, all in one transaction.

        Raises:
            NotReconciledError: Payment has no active allocation set
            TimeLimitExceededError: Reversal window has passed
            UnauthorizedReversalError: Actor may not reverse this payment
            CarryForwardConsumedError: The created credit was already used
        """
        payment = self._get_payment(payment_id)
        now = now or utcnow()
        self._check_reversible(payment, reason, actor_id, actor_is_admin, now)

        with self.locks.hold(payment.account_id, self._lock_wait(timeout)):
            try:
                self.bills.lock_account(payment.account_id)
                self.db.refresh(payment)
                self._check_reversible(payment, reason, actor_id, actor_is_admin, now)
                result = self._reverse_locked(payment, reason, actor_id, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.warning("Reversal of payment %d failed", payment_id)
                raise

        logger.info(
            "Reversed reconciliation of payment %d: %d allocation(s) removed",
            payment.id,
            result.reversed_allocations,
        )
        return result

    def _check_reversible(
        self,
        payment: Payment,
        reason: str,
        actor_id: int | None,
        actor_is_admin: bool,
        now: datetime,
    ) -> None:
        if not self.settings.allow_reversal:
            raise UnauthorizedReversalError("Reconciliation reversals are disabled")
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required to reverse a reconciliation", field="reason")
        if payment.reconciliation_status not in REVERSIBLE_STATUSES:
            raise NotReconciledError(
                f"Payment {payment.id} is not reconciled", field="payment_id"
            )

        limit = self.settings.reversal_time_limit_hours
        reconciled_at = as_utc(payment.reconciled_at)
        if limit is not None and reconciled_at is not None:
            if now - reconciled_at > timedelta(hours=limit):
                raise TimeLimitExceededError(
                    f"Payment {payment.id} was reconciled more than {limit} hours ago"
                )

        permission = self.settings.reversal_permission
        if permission == ReversalPermission.ADMIN_ONLY and not actor_is_admin:
            raise UnauthorizedReversalError("Only administrators can reverse reconciliations")
        if (
            permission == ReversalPermission.SAME_USER
            and not actor_is_admin
            and (actor_id is None or actor_id != payment.reconciled_by)
        ):
            raise UnauthorizedReversalError(
                "Only the user who reconciled the payment can reverse it"
            )

    def _reverse_locked(
        self, payment: Payment, reason: str, actor_id: int | None, now: datetime
    ) -> ReversalResult:
        credits = (
            self.db.query(CarryForwardBalance)
            .filter(CarryForwardBalance.payment_id == payment.id)
            .all()
        )
        for credit in credits:
            if credit.balance < credit.amount:
                raise CarryForwardConsumedError(
                    f"Carry-forward credit {credit.id} from payment {payment.id} has already "
                    f"been used ({credit.amount - credit.balance} consumed)"
                )

        allocations = (
            self.db.query(PaymentAllocation)
            .filter(PaymentAllocation.payment_id == payment.id)
            .order_by(PaymentAllocation.id.desc())
            .all()
        )
        restored: dict[int, Bill] = {}
        for allocation in allocations:
            bill = self.bills.get(allocation.bill_id)
            remove_amount(bill, allocation.amount, allocation.previous_bill_status)
            restored[bill.id] = bill
            self.db.delete(allocation)

        removed_carry_forward = sum((c.amount for c in credits), ZERO)
        for credit in credits:
            self.db.delete(credit)

        restored_credit = ZERO
        for application in self.ledger.applications_for(payment_id=payment.id):
            restored_credit += self.ledger.restore_application(application)

        payment.refund_amount = ZERO
        payment.reconciliation_status = ReconciliationStatus.PENDING
        payment.reconciled_at = None
        payment.reconciled_by = None

        AuditService.log(
            self.db,
            "payment",
            payment.id,
            "payment.reversed",
            actor_id,
            {
                "reason": reason,
                "allocations_reversed": len(allocations),
                "bills": sorted(restored),
                "carry_forward_removed": str(removed_carry_forward),
                "credit_restored": str(restored_credit),
            },
        )
        self.db.flush()

        event = DomainEvent(
            name="payment.reversed",
            entity_id=payment.id,
            account_id=payment.account_id,
            payload={"reason": reason, "allocations_reversed": len(allocations)},
            occurred_at=now,
        )
        return ReversalResult(
            payment=payment,
            reversed_allocations=len(allocations),
            restored_bills=list(restored.values()),
            removed_carry_forward=removed_carry_forward,
            restored_credit=restored_credit,
            events=[event],
        )

    def reconcile_pending(self, account_id: int | None = None, actor_id: int | None = None) -> dict:
        """Reconcile every completed payment that is not yet reconciled.

        Each payment is its own transaction; failures are reported per payment.
        """
        query = self.db.query(Payment).filter(
            Payment.status == PaymentStatus.COMPLETED,
            Payment.reconciliation_status != ReconciliationStatus.RECONCILED,
        )
        if account_id is not None:
            query = query.filter(Payment.account_id == account_id)
        payment_ids = [p.id for p in query.order_by(Payment.payment_date.asc(), Payment.id.asc())]

        report = {"processed": 0, "reconciled": [], "failed": []}
        for payment_id in payment_ids:
            report["processed"] += 1
            try:
                result = self.reconcile(payment_id, actor_id=actor_id)
                report["reconciled"].append(result)
            except BillingError as e:
                report["failed"].append({"payment_id": payment_id, **e.to_dict()})
        return report

    def generate_report(self, payment_id: int) -> dict:
        """Reconciliation report of a payment: allocations, carry-forward and balance."""
        payment = self._get_payment(payment_id)
        allocations = (
            self.db.query(PaymentAllocation)
            .filter(PaymentAllocation.payment_id == payment.id)
            .order_by(PaymentAllocation.id.asc())
            .all()
        )
        total_allocated = sum((a.amount for a in allocations), ZERO)
        carry_forward = (
            self.db.query(CarryForwardBalance)
            .filter(CarryForwardBalance.payment_id == payment.id)
            .first()
        )
        unallocated = self.unallocated_amount(payment)
        remaining = payment.amount - total_allocated

        return {
            "payment": {
                "id": payment.id,
                "amount": payment.amount,
                "payment_date": payment.payment_date.isoformat(),
                "method": payment.method,
                "external_transaction_id": payment.external_transaction_id,
                "status": payment.status.value,
                "reconciliation_status": payment.reconciliation_status.value,
            },
            "allocation_summary": {
                "total_payment": payment.amount,
                "total_allocated": total_allocated,
                "remaining_amount": remaining,
                "unallocated_amount": unallocated,
                "refund_amount": payment.refund_amount,
                "allocation_count": len(allocations),
                "fully_allocated": remaining <= self.settings.amount_tolerance,
            },
            "allocations": [
                {
                    "allocation_id": a.id,
                    "bill_id": a.bill_id,
                    "billing_period": a.bill.billing_period,
                    "bill_total": a.bill.total_amount,
                    "bill_status": a.bill.status.value,
                    "allocated_amount": a.amount,
                    "allocated_at": a.allocated_at,
                }
                for a in allocations
            ],
            "carry_forward": (
                {
                    "id": carry_forward.id,
                    "amount": carry_forward.amount,
                    "balance": carry_forward.balance,
                    "status": carry_forward.status.value,
                }
                if carry_forward
                else None
            ),
            "account_balance": self.balances.get_account_balance(payment.account_id).to_dict(),
        }


__all__ = ["ManualAllocation", "ReconciliationEngine", "ReconciliationResult", "ReversalResult"]
