"""Integration tests for payment reconciliation and reversal."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func

from meterbill.models import (
    AuditLog,
    BillStatus,
    CarryForwardApplication,
    CarryForwardBalance,
    CarryForwardStatus,
    Payment,
    PaymentAllocation,
    PaymentStatus,
    ReconciliationStatus,
)
from meterbill.services.carry_forward_service import CarryForwardLedger
from meterbill.services.dates import utcnow
from meterbill.services.errors import (
    AccountLockedError,
    CarryForwardConsumedError,
    InvalidInputError,
    NotReconciledError,
    PaymentAlreadyReconciledError,
    PaymentNotCompletedError,
    TimeLimitExceededError,
    UnauthorizedReversalError,
)
from meterbill.services.locks import AccountLockManager
from meterbill.services.reconciliation_service import ManualAllocation, ReconciliationEngine


@pytest.fixture
def reconciler_for(db):
    def _reconciler(settings):
        return ReconciliationEngine(db, settings)

    return _reconciler


@pytest.fixture
def reconciler(reconciler_for, settings):
    return reconciler_for(settings)


def assert_ledger_identity(db, payment, unallocated=Decimal("0")):
    """allocated + carried + refunded + unallocated == amount + credit applied."""

    def total(column, owner):
        value = db.query(func.coalesce(func.sum(column), 0)).filter(owner == payment.id).scalar()
        return Decimal(str(value))

    allocated = total(PaymentAllocation.amount, PaymentAllocation.payment_id)
    carried = total(CarryForwardBalance.amount, CarryForwardBalance.payment_id)
    credit = total(CarryForwardApplication.amount, CarryForwardApplication.payment_id)
    assert allocated + carried + payment.refund_amount + unallocated == payment.amount + credit


@pytest.mark.integration
class TestAutomaticAllocation:
    def test_overpayment_pays_bill_and_carries_remainder(self, db, reconciler, make_bill, make_payment):
        bill = make_bill("1000")
        payment = make_payment("1200")

        result = reconciler.reconcile(payment.id, actor_id=1)

        assert bill.status == BillStatus.PAID
        assert bill.balance == Decimal("0")
        assert bill.paid_at is not None
        assert result.total_allocated == Decimal("1000")
        assert result.remaining_amount == Decimal("200")
        assert result.carry_forward.amount == Decimal("200")
        assert result.has_overpayment()
        assert result.payment.reconciliation_status == ReconciliationStatus.RECONCILED
        assert result.balance_snapshot.net_balance == Decimal("-200.00")
        assert [e.name for e in result.events] == [
            "payment.reconciled",
            "carry_forward.created",
            "bill.paid",
        ]
        assert_ledger_identity(db, payment)

    def test_fifo_pays_oldest_bill_first(self, db, reconciler, make_bill, make_payment):
        older = make_bill("300", period="2024-01", issued_at=date(2024, 2, 1))
        newer = make_bill("500", period="2024-02", issued_at=date(2024, 3, 1))
        payment = make_payment("400")

        result = reconciler.reconcile(payment.id)

        assert older.status == BillStatus.PAID
        assert newer.status == BillStatus.PARTIALLY_PAID
        assert newer.balance == Decimal("400")
        assert result.carry_forward is None
        assert result.is_fully_allocated()
        assert [b.id for b in result.fully_paid_bills()] == [older.id]
        assert_ledger_identity(db, payment)

    def test_lifo_pays_newest_bill_first(self, db, reconciler_for, make_settings, make_bill, make_payment):
        older = make_bill("300", period="2024-01", issued_at=date(2024, 2, 1))
        newer = make_bill("500", period="2024-02", issued_at=date(2024, 3, 1))
        payment = make_payment("400")

        reconciler_for(make_settings(allocation_strategy="lifo")).reconcile(payment.id)

        assert older.balance == Decimal("300")
        assert newer.balance == Decimal("100")

    def test_cap_leaves_payment_partially_reconciled(self, db, reconciler_for, make_settings, make_bill, make_payment):
        first = make_bill("300", period="2024-01", issued_at=date(2024, 2, 1))
        second = make_bill("500", period="2024-02", issued_at=date(2024, 3, 1))
        payment = make_payment("600")
        reconciler = reconciler_for(make_settings(max_bills_per_reconciliation=1))

        result = reconciler.reconcile(payment.id)

        assert result.stopped_by_cap
        assert result.carry_forward is None
        assert result.unallocated_amount == Decimal("300")
        assert payment.reconciliation_status == ReconciliationStatus.PARTIALLY_RECONCILED
        assert first.status == BillStatus.PAID
        assert second.balance == Decimal("500")
        assert_ledger_identity(db, payment, unallocated=Decimal("300"))

        again = reconciler.reconcile(payment.id)

        assert again.total_allocated == Decimal("300")
        assert second.balance == Decimal("200")
        assert payment.reconciliation_status == ReconciliationStatus.RECONCILED
        assert_ledger_identity(db, payment)

    def test_refund_handling(self, db, reconciler_for, make_settings, make_bill, make_payment):
        make_bill("1000")
        payment = make_payment("1200")

        result = reconciler_for(make_settings(overpayment_handling="refund")).reconcile(payment.id)

        assert result.refund_amount == Decimal("200")
        assert payment.refund_amount == Decimal("200")
        assert result.carry_forward is None
        assert payment.reconciliation_status == ReconciliationStatus.RECONCILED
        assert_ledger_identity(db, payment)

    def test_manual_handling_leaves_remainder_unallocated(self, db, reconciler_for, make_settings, make_bill, make_payment):
        make_bill("1000")
        payment = make_payment("1200")

        result = reconciler_for(make_settings(overpayment_handling="manual")).reconcile(payment.id)

        assert result.unallocated_amount == Decimal("200")
        assert payment.reconciliation_status == ReconciliationStatus.PARTIALLY_RECONCILED
        assert db.query(CarryForwardBalance).count() == 0
        assert_ledger_identity(db, payment, unallocated=Decimal("200"))

    def test_tiny_remainder_is_not_carried(self, db, reconciler_for, make_settings, make_bill, make_payment):
        make_bill("100")
        payment = make_payment("100.50")

        result = reconciler_for(make_settings(minimum_carry_forward=Decimal("1.00"))).reconcile(payment.id)

        assert result.carry_forward is None
        assert result.unallocated_amount == Decimal("0.50")

    def test_existing_credit_covers_shortfall(self, db, reconciler_for, make_settings, account, make_bill, make_payment):
        settings = make_settings(apply_credit_on_reconcile=True)
        ledger = CarryForwardLedger(db, settings)
        credit = ledger.create_credit(account.id, Decimal("200"))
        db.commit()
        bill = make_bill("1000")
        payment = make_payment("800")

        result = reconciler_for(settings).reconcile(payment.id)

        assert result.credit_applied == Decimal("200")
        assert bill.status == BillStatus.PAID
        assert credit.status == CarryForwardStatus.CONSUMED
        assert_ledger_identity(db, payment)

    def test_payment_state_checks(self, db, reconciler, make_bill, make_payment):
        make_bill("100")
        pending = make_payment("50", status=PaymentStatus.PENDING)
        with pytest.raises(PaymentNotCompletedError):
            reconciler.reconcile(pending.id)

        done = make_payment("50")
        reconciler.reconcile(done.id)
        with pytest.raises(PaymentAlreadyReconciledError):
            reconciler.reconcile(done.id)

    def test_audit_records_allocations(self, db, reconciler, make_bill, make_payment):
        bill = make_bill("250")
        payment = make_payment("250")

        reconciler.reconcile(payment.id, actor_id=12)

        audit = db.query(AuditLog).filter(AuditLog.action == "payment.reconciled").one()
        assert audit.actor_id == 12
        assert audit.changes["strategy"] == "fifo"
        assert audit.changes["allocations"] == [{"bill_id": bill.id, "amount": "250.00"}]


@pytest.mark.integration
class TestManualAllocation:
    def test_explicit_bill_and_amount(self, db, reconciler, make_bill, make_payment):
        first = make_bill("300", period="2024-01")
        second = make_bill("500", period="2024-02", issued_at=date(2024, 3, 1))
        payment = make_payment("400")

        result = reconciler.reconcile(
            payment.id, manual_allocations=[{"bill_id": second.id, "amount": "400"}]
        )

        assert first.balance == Decimal("300")
        assert second.balance == Decimal("100")
        assert result.total_allocated == Decimal("400")
        assert_ledger_identity(db, payment)

    @pytest.mark.parametrize("amount", ["0", "350", "600"])
    def test_invalid_amounts_rejected_atomically(self, db, reconciler, make_bill, make_payment, amount):
        bill = make_bill("300")
        payment = make_payment("500")

        with pytest.raises(InvalidInputError):
            reconciler.reconcile(payment.id, manual_allocations=[ManualAllocation(bill.id, Decimal(amount))])

        db.refresh(bill)
        assert bill.balance == Decimal("300")
        assert db.query(PaymentAllocation).count() == 0
        assert payment.reconciliation_status == ReconciliationStatus.PENDING

    def test_bill_of_other_account_rejected(self, db, reconciler, make_account, make_bill, make_payment):
        stranger = make_account()
        foreign_bill = make_bill("100", account_id=stranger.id)
        payment = make_payment("100")

        with pytest.raises(InvalidInputError):
            reconciler.reconcile(payment.id, manual_allocations=[(foreign_bill.id, "100")])


@pytest.mark.integration
class TestReversal:
    def test_reverse_restores_bills_and_removes_credit(self, db, reconciler, make_bill, make_payment):
        bill = make_bill("1000")
        payment = make_payment("1200")
        reconciler.reconcile(payment.id, actor_id=1)

        result = reconciler.reverse(payment.id, "bounced cheque", actor_id=1, actor_is_admin=True)

        assert result.reversed_allocations == 1
        assert result.removed_carry_forward == Decimal("200")
        assert bill.status == BillStatus.PENDING
        assert bill.balance == Decimal("1000")
        assert bill.paid_amount == Decimal("0")
        assert bill.paid_at is None
        assert payment.reconciliation_status == ReconciliationStatus.PENDING
        assert payment.reconciled_at is None
        assert db.query(PaymentAllocation).count() == 0
        assert db.query(CarryForwardBalance).count() == 0
        assert [e.name for e in result.events] == ["payment.reversed"]

        # A reversed payment can be reconciled again
        reconciler.reconcile(payment.id)
        assert bill.status == BillStatus.PAID

    def test_reverse_restores_partial_status(self, db, reconciler, make_bill, make_payment):
        bill = make_bill("1000")
        first = make_payment("400")
        second = make_payment("600")
        reconciler.reconcile(first.id)
        reconciler.reconcile(second.id)
        assert bill.status == BillStatus.PAID

        reconciler.reverse(second.id, "duplicate entry", actor_is_admin=True)

        assert bill.status == BillStatus.PARTIALLY_PAID
        assert bill.balance == Decimal("600")

    def test_reverse_gives_back_consumed_credit(self, db, reconciler_for, make_settings, account, make_bill, make_payment):
        settings = make_settings(apply_credit_on_reconcile=True)
        ledger = CarryForwardLedger(db, settings)
        credit = ledger.create_credit(account.id, Decimal("200"))
        db.commit()
        make_bill("1000")
        payment = make_payment("800")
        reconciler = reconciler_for(settings)
        reconciler.reconcile(payment.id)

        result = reconciler.reverse(payment.id, "wrong account", actor_is_admin=True)

        assert result.restored_credit == Decimal("200")
        assert credit.status == CarryForwardStatus.ACTIVE
        assert credit.balance == Decimal("200")

    def test_not_reconciled(self, reconciler, make_payment):
        payment = make_payment("10")
        with pytest.raises(NotReconciledError):
            reconciler.reverse(payment.id, "mistake", actor_is_admin=True)

    def test_reason_required(self, reconciler, make_bill, make_payment):
        make_bill("10")
        payment = make_payment("10")
        reconciler.reconcile(payment.id)
        with pytest.raises(InvalidInputError):
            reconciler.reverse(payment.id, "", actor_is_admin=True)

    def test_admin_only_by_default(self, reconciler, make_bill, make_payment):
        make_bill("10")
        payment = make_payment("10")
        reconciler.reconcile(payment.id, actor_id=3)
        with pytest.raises(UnauthorizedReversalError):
            reconciler.reverse(payment.id, "mistake", actor_id=3)

    def test_same_user_permission(self, reconciler_for, make_settings, make_bill, make_payment):
        reconciler = reconciler_for(make_settings(reversal_permission="same_user"))
        make_bill("10")
        payment = make_payment("10")
        reconciler.reconcile(payment.id, actor_id=3)

        with pytest.raises(UnauthorizedReversalError):
            reconciler.reverse(payment.id, "mistake", actor_id=4)
        reconciler.reverse(payment.id, "mistake", actor_id=3)

    def test_reversals_disabled(self, reconciler_for, make_settings, make_bill, make_payment):
        reconciler = reconciler_for(make_settings(allow_reversal=False))
        make_bill("10")
        payment = make_payment("10")
        reconciler.reconcile(payment.id)
        with pytest.raises(UnauthorizedReversalError):
            reconciler.reverse(payment.id, "mistake", actor_is_admin=True)

    def test_time_limit(self, reconciler, make_bill, make_payment):
        make_bill("10")
        payment = make_payment("10")
        reconciler.reconcile(payment.id)

        with pytest.raises(TimeLimitExceededError):
            reconciler.reverse(
                payment.id, "late", actor_is_admin=True, now=utcnow() + timedelta(hours=25)
            )

    def test_used_credit_blocks_reversal(self, db, reconciler, settings, account, make_bill, make_payment):
        make_bill("1000")
        payment = make_payment("1200")
        reconciler.reconcile(payment.id)
        later_bill = make_bill("150", period="2024-02", issued_at=date(2024, 3, 1))
        CarryForwardLedger(db, settings).consume(account.id, Decimal("50"), bill_id=later_bill.id)
        db.commit()

        with pytest.raises(CarryForwardConsumedError):
            reconciler.reverse(payment.id, "bounced", actor_is_admin=True)
        assert payment.reconciliation_status == ReconciliationStatus.RECONCILED


@pytest.mark.integration
class TestBatchAndReport:
    def test_reconcile_pending(self, db, reconciler, make_bill, make_payment):
        make_bill("300")
        make_payment("100", payment_date=date(2024, 3, 1))
        make_payment("250", payment_date=date(2024, 3, 2))
        make_payment("10", status=PaymentStatus.PENDING)

        report = reconciler.reconcile_pending()

        assert report["processed"] == 2
        assert len(report["reconciled"]) == 2
        assert report["failed"] == []
        assert (
            db.query(Payment)
            .filter(Payment.reconciliation_status == ReconciliationStatus.RECONCILED)
            .count()
            == 2
        )

    def test_generate_report(self, reconciler, make_bill, make_payment):
        bill = make_bill("300")
        payment = make_payment("500")
        reconciler.reconcile(payment.id)

        report = reconciler.generate_report(payment.id)

        assert report["allocation_summary"]["total_allocated"] == Decimal("300")
        assert report["allocation_summary"]["remaining_amount"] == Decimal("200")
        assert report["allocation_summary"]["unallocated_amount"] == Decimal("0")
        assert report["allocations"][0]["bill_id"] == bill.id
        assert report["carry_forward"]["amount"] == Decimal("200")
        assert report["payment"]["reconciliation_status"] == "reconciled"


@pytest.mark.integration
class TestAccountLock:
    def test_reconcile_waits_for_account_lock(self, db, settings, account, make_bill, make_payment):
        bill = make_bill("1000")
        payment = make_payment("1200")
        locks = AccountLockManager()
        reconciler = ReconciliationEngine(db, settings, locks=locks)

        with locks.hold(account.id):
            with pytest.raises(AccountLockedError) as exc_info:
                reconciler.reconcile(payment.id, timeout=0.05)

        assert exc_info.value.retryable
        db.refresh(bill)
        db.refresh(payment)
        assert bill.balance == Decimal("1000")
        assert payment.reconciliation_status == ReconciliationStatus.PENDING
        assert db.query(PaymentAllocation).count() == 0
        assert db.query(CarryForwardBalance).count() == 0

        # Once released the same payment reconciles normally
        reconciler.reconcile(payment.id)
        assert bill.status == BillStatus.PAID

    def test_reverse_waits_for_account_lock(self, db, settings, account, make_bill, make_payment):
        bill = make_bill("1000")
        payment = make_payment("1200")
        locks = AccountLockManager()
        reconciler = ReconciliationEngine(db, settings, locks=locks)
        reconciler.reconcile(payment.id)

        with locks.hold(account.id):
            with pytest.raises(AccountLockedError) as exc_info:
                reconciler.reverse(payment.id, "bounced", actor_is_admin=True, timeout=0.05)

        assert exc_info.value.retryable
        db.refresh(bill)
        db.refresh(payment)
        assert bill.status == BillStatus.PAID
        assert payment.reconciliation_status == ReconciliationStatus.RECONCILED
        assert db.query(PaymentAllocation).count() == 1
        assert db.query(CarryForwardBalance).count() == 1
