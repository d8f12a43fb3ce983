"""Payment intake: record receipts of funds and hand them to reconciliation."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from meterbill.models import Account, Payment, PaymentStatus, ReconciliationStatus
from meterbill.services.audit_service import AuditService
from meterbill.services.config import BillingSettings
from meterbill.services.errors import (
    BillingError,
    DuplicateTransactionError,
    InactiveAccountError,
    InvalidInputError,
    NotFoundError,
    PaymentAlreadyReconciledError,
    PaymentNotCompletedError,
)
from meterbill.services.events import DomainEvent
from meterbill.services.money import quantize_amount, to_decimal
from meterbill.services.reconciliation_service import ReconciliationEngine, ReconciliationResult

logger = logging.getLogger(__name__)


@dataclass
class PaymentRecordResult:
    """Recorded payment and, with auto_reconcile, its reconciliation outcome.

    The payment is committed before reconciliation runs, so a reconciliation
    failure is reported in reconciliation_error and never loses the payment.
    """

    payment: Payment
    reconciliation: Optional[ReconciliationResult] = None
    reconciliation_error: Optional[BillingError] = None
    events: list[DomainEvent] = field(default_factory=list)


class PaymentService:
    """Core payment operations service."""

    def __init__(self, db: Session, settings: BillingSettings, engine: ReconciliationEngine | None = None):
        """Initialize payment service.

        Args:
            db: SQLAlchemy database session
            settings: Billing settings (auto_reconcile, precision)
            engine: Reconciliation engine; built from db and settings when omitted
        """
        self.db = db
        self.settings = settings
        self.engine = engine or ReconciliationEngine(db, settings)

    def record_payment(
        self,
        account_id: int,
        amount: Decimal,
        payment_date: date | None = None,
        method: str = "cash",
        external_transaction_id: str | None = None,
        status: PaymentStatus = PaymentStatus.COMPLETED,
        comment: str | None = None,
        actor_id: int | None = None,
    ) -> PaymentRecordResult:
        """Record a payment on an account.

        Args:
            account_id: Paying account
            amount: Positive amount
            payment_date: Date funds were received (defaults to today)
            method: Payment channel ("cash", "bank", "mobile_money", ...)
            external_transaction_id: Provider reference; unique across payments
            status: Initial funds status (completed by default)
            comment: Optional notes
            actor_id: User recording the payment

        Returns:
            PaymentRecordResult

        Raises:
            InvalidInputError: Amount is not positive
            DuplicateTransactionError: External transaction id already recorded
        """
        value = quantize_amount(to_decimal(amount), self.settings.amount_precision)
        if value <= 0:
            raise InvalidInputError(f"Payment amount must be positive: {amount}", field="amount")

        account = self.db.get(Account, account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", field="account_id")
        if not account.is_active:
            raise InactiveAccountError(f"Account {account.account_number} is not active")

        if external_transaction_id:
            existing = (
                self.db.query(Payment)
                .filter(Payment.external_transaction_id == external_transaction_id)
                .first()
            )
            if existing is not None:
                raise DuplicateTransactionError(
                    f"Transaction {external_transaction_id} was already recorded as payment "
                    f"{existing.id}",
                    field="external_transaction_id",
                )

        try:
            payment = Payment(
                account_id=account.id,
                amount=value,
                method=method,
                external_transaction_id=external_transaction_id or None,
                status=status,
                reconciliation_status=ReconciliationStatus.PENDING,
                payment_date=payment_date or date.today(),
                refund_amount=Decimal("0"),
                comment=comment,
            )
            self.db.add(payment)
            self.db.flush()
            AuditService.log(
                self.db,
                "payment",
                payment.id,
                "payment.recorded",
                actor_id,
                {
                    "account_id": account.id,
                    "amount": str(value),
                    "method": method,
                    "external_transaction_id": external_transaction_id,
                    "status": status.value,
                },
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateTransactionError(
                f"Transaction {external_transaction_id} was already recorded",
                field="external_transaction_id",
            ) from e
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Recorded payment %d of %s on account %s via %s",
            payment.id,
            value,
            account.account_number,
            method,
        )
        result = PaymentRecordResult(
            payment=payment,
            events=[
                DomainEvent(
                    name="payment.received",
                    entity_id=payment.id,
                    account_id=account.id,
                    payload={"amount": str(value), "method": method},
                )
            ],
        )

        if self.settings.auto_reconcile and status == PaymentStatus.COMPLETED:
            self._auto_reconcile(result, actor_id)
        return result

    def _auto_reconcile(self, result: PaymentRecordResult, actor_id: int | None) -> None:
        try:
            reconciliation = self.engine.reconcile(result.payment.id, actor_id=actor_id)
        except BillingError as e:
            logger.warning(
                "Auto-reconciliation of payment %d failed (%s); payment stays pending",
                result.payment.id,
                e.code,
            )
            result.reconciliation_error = e
            return
        result.reconciliation = reconciliation
        result.events.extend(reconciliation.events)

    def mark_completed(self, payment_id: int, actor_id: int | None = None) -> PaymentRecordResult:
        """Confirm a pending payment's funds and reconcile it when auto_reconcile is on."""
        payment = self.get_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise PaymentNotCompletedError(
                f"Payment {payment.id} is {payment.status.value}, not pending", field="payment_id"
            )
        try:
            payment.status = PaymentStatus.COMPLETED
            AuditService.log(self.db, "payment", payment.id, "payment.completed", actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        result = PaymentRecordResult(payment=payment)
        if self.settings.auto_reconcile:
            self._auto_reconcile(result, actor_id)
        return result

    def mark_failed(self, payment_id: int, reason: str, actor_id: int | None = None) -> Payment:
        """Mark an unreconciled payment as failed (e.g. bounced transfer)."""
        payment = self.get_payment(payment_id)
        if payment.reconciliation_status != ReconciliationStatus.PENDING:
            raise PaymentAlreadyReconciledError(
                f"Payment {payment.id} has allocations; reverse its reconciliation first",
                field="payment_id",
            )
        try:
            payment.status = PaymentStatus.FAILED
            AuditService.log(
                self.db, "payment", payment.id, "payment.failed", actor_id, {"reason": reason}
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Payment %d marked failed: %s", payment.id, reason)
        return payment

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", field="payment_id")
        return payment

    def list_payments(self, account_id: int) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.account_id == account_id)
            .order_by(Payment.payment_date.desc(), Payment.id.desc())
            .all()
        )


__all__ = ["PaymentRecordResult", "PaymentService"]
