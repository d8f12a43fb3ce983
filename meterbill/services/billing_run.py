"""Bulk billing: generate one period's bills for every billable account.

Each account is generated in its own session and transaction. Accounts run in
parallel on a thread pool; the account lock keeps any one account serial.
"""

import concurrent.futures
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

from sqlalchemy import exists
from sqlalchemy.orm import Session

from meterbill.models import Account, Bill, BillStatus, Meter, MeterStatus
from meterbill.services.audit_service import AuditService
from meterbill.services.billing_service import BillingGenerator
from meterbill.services.config import BillingSettings
from meterbill.services.dates import parse_billing_period
from meterbill.services.errors import BillingError, DuplicatePeriodError
from meterbill.services.events import DomainEvent
from meterbill.services.locks import AccountLockManager, account_locks

logger = logging.getLogger(__name__)


@dataclass
class AccountOutcome:
    account_id: int
    status: str  # generated | skipped | failed
    bill_id: int | None = None
    error_code: str | None = None
    message: str | None = None


@dataclass
class BillingRunReport:
    """Per-account outcomes of one bulk run."""

    period: str
    outcomes: list[AccountOutcome] = field(default_factory=list)
    events: list[DomainEvent] = field(default_factory=list)

    def _with_status(self, status: str) -> list[AccountOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def generated(self) -> list[AccountOutcome]:
        return self._with_status("generated")

    @property
    def skipped(self) -> list[AccountOutcome]:
        return self._with_status("skipped")

    @property
    def failed(self) -> list[AccountOutcome]:
        return self._with_status("failed")

    def statistics(self) -> dict:
        return {
            "period": self.period,
            "total_accounts": len(self.outcomes),
            "generated": len(self.generated),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "errors": [
                {"account_id": o.account_id, "code": o.error_code, "message": o.message}
                for o in self.failed
            ],
        }


class BillingRunService:
    """Fan bill generation out across accounts."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: BillingSettings,
        max_workers: int = 4,
        locks: AccountLockManager | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.max_workers = max_workers
        self.locks = locks or account_locks

    def billable_account_ids(self, db: Session) -> list[int]:
        """Active accounts with at least one active meter."""
        has_meter = exists().where(Meter.account_id == Account.id, Meter.status == MeterStatus.ACTIVE)
        rows = db.query(Account.id).filter(Account.is_active.is_(True), has_meter).order_by(Account.id)
        return [row.id for row in rows]

    def accounts_without_bills(self, db: Session, period: str) -> list[int]:
        billed = {
            row.account_id
            for row in db.query(Bill.account_id).filter(
                Bill.billing_period == period, Bill.status != BillStatus.VOID
            )
        }
        return [account_id for account_id in self.billable_account_ids(db) if account_id not in billed]

    def _generate_one(
        self, account_id: int, period: str, issued_on: date | None
    ) -> tuple[AccountOutcome, list[DomainEvent]]:
        db = self.session_factory()
        try:
            generator = BillingGenerator(db, self.settings, locks=self.locks)
            result = generator.generate_for_account(account_id, period, issued_on=issued_on)
            return AccountOutcome(account_id, "generated", bill_id=result.bill.id), result.events
        except DuplicatePeriodError as e:
            return AccountOutcome(account_id, "skipped", error_code=e.code, message=e.message), []
        except BillingError as e:
            logger.error("Bill generation failed for account %d: %s", account_id, e.message)
            return AccountOutcome(account_id, "failed", error_code=e.code, message=e.message), []
        finally:
            db.close()

    def generate_for_all_accounts(
        self,
        period: str,
        issued_on: date | None = None,
        actor_id: int | None = None,
    ) -> BillingRunReport:
        """Generate bills for every billable account for a period.

        Duplicates are reported as skipped; other business failures as failed
        with their error code. Unexpected exceptions propagate.
        """
        parse_billing_period(period)
        db = self.session_factory()
        try:
            account_ids = self.billable_account_ids(db)
        finally:
            db.close()

        report = BillingRunReport(period=period)
        if not account_ids:
            logger.warning("No active accounts with meters found for billing period %s", period)
            return report

        logger.info("Starting bulk bill generation for %d accounts, period %s", len(account_ids), period)
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(self._generate_one, account_id, period, issued_on)
                for account_id in account_ids
            ]
            for future in futures:
                outcome, events = future.result()
                report.outcomes.append(outcome)
                report.events.extend(events)

        db = self.session_factory()
        try:
            AuditService.log(
                db, "billing_run", None, "billing.bulk_generation_completed", actor_id,
                report.statistics(),
            )
            db.commit()
        finally:
            db.close()

        logger.info("Bulk bill generation completed: %s", report.statistics())
        return report


__all__ = ["AccountOutcome", "BillingRunReport", "BillingRunService"]
