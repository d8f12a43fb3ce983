"""Bill generation: one bill per account and billing period, one line per meter."""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from meterbill.models import (
    Account,
    Bill,
    BillDetail,
    BillStatus,
    Meter,
    MeterStatus,
    ReadingType,
)
from meterbill.services.audit_service import AuditService
from meterbill.services.carry_forward_service import CarryForwardLedger
from meterbill.services.config import BillingSettings
from meterbill.services.consumption_resolver import ConsumptionResolver
from meterbill.services.dates import BillingPeriod, parse_billing_period, utcnow
from meterbill.services.errors import (
    DuplicatePeriodError,
    InactiveAccountError,
    InvariantViolationError,
    NoReadingsError,
    NotFoundError,
)
from meterbill.services.events import DomainEvent
from meterbill.services.locks import AccountLockManager, account_locks
from meterbill.services.money import Money
from meterbill.services.reading_estimator import ReadingEstimator
from meterbill.services.repositories import BillRepository, ReadingRepository
from meterbill.services.tariff_resolver import TariffResolver

logger = logging.getLogger(__name__)


@dataclass
class SkippedMeter:
    meter_id: int
    reason: str


@dataclass
class BillingResult:
    """Generated bill plus what happened along the way."""

    bill: Bill
    skipped_meters: list[SkippedMeter] = field(default_factory=list)
    degraded_tariff_meters: list[int] = field(default_factory=list)
    estimated_meters: list[int] = field(default_factory=list)
    credit_applied: Decimal = Decimal("0")
    events: list[DomainEvent] = field(default_factory=list)

    @property
    def details(self) -> list[BillDetail]:
        return list(self.bill.details)


class BillingGenerator:
    """Builds a bill from meter readings and tariffs, all or nothing.

    Any meter whose tariff cannot be resolved aborts the whole bill, so a bill
    total never silently leaves out a meter.
    """

    def __init__(
        self,
        db: Session,
        settings: BillingSettings,
        tariff_resolver: TariffResolver | None = None,
        locks: AccountLockManager | None = None,
    ):
        self.db = db
        self.settings = settings
        self.readings = ReadingRepository(db)
        self.bills = BillRepository(db)
        self.tariffs = tariff_resolver or TariffResolver(db, settings)
        self.ledger = CarryForwardLedger(db, settings)
        self.estimator = ReadingEstimator(db, settings)
        self.locks = locks or account_locks

    def _get_account(self, account_id: int) -> Account:
        account = self.db.get(Account, account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", field="account_id")
        if not account.is_active:
            raise InactiveAccountError(f"Account {account.account_number} is not active")
        return account

    def generate_for_account(
        self,
        account_id: int,
        period: str,
        issued_on: date | None = None,
        actor_id: int | None = None,
        timeout: float | None = None,
    ) -> BillingResult:
        """Generate the bill of an account for a billing period (YYYY-MM).

        Args:
            account_id: Account to bill
            period: Billing period in YYYY-MM format
            issued_on: Issue date (defaults to today); due date follows from due_days
            actor_id: User running the generation (optional)
            timeout: Seconds to wait for the account lock (defaults to settings)

        Returns:
            BillingResult with the committed bill and its domain events

        Raises:
            DuplicatePeriodError: A live bill already exists for the period
            NoReadingsError: No meter of the account has a reading in scope
            TariffNotFoundError: A meter has no resolvable tariff
            AccountLockedError: The account lock was not acquired in time
        """
        billing_period = parse_billing_period(period)
        account = self._get_account(account_id)
        wait = self.settings.lock_timeout_seconds if timeout is None else timeout

        with self.locks.hold(account.id, wait):
            try:
                self.bills.lock_account(account.id)
                result = self.build_bill(account, billing_period, issued_on or date.today())

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
                        "billing_period": billing_period.label,
                        "meter_count": len(result.bill.details),
                        "total_amount": str(result.bill.total_amount),
                        "credit_applied": str(result.credit_applied),
                        "skipped_meters": [s.meter_id for s in result.skipped_meters],
                        "estimated_meters": result.estimated_meters,
                    },
                )
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(
                    "Failed to generate bill for account %d period %s: %s",
                    account_id,
                    billing_period.label,
                    e,
                )
                raise

        bill = result.bill
        result.events.append(
            DomainEvent(
                name="billing.generated",
                entity_id=bill.id,
                account_id=account.id,
                payload={
                    "billing_period": bill.billing_period,
                    "total_amount": str(bill.total_amount),
                    "balance": str(bill.balance),
                    "due_date": bill.due_date.isoformat(),
                },
            )
        )
        logger.info(
            "Generated bill %d for account %s period %s: total %s",
            bill.id,
            account.account_number,
            bill.billing_period,
            bill.total_amount,
        )
        return result

    def build_bill(
        self,
        account: Account,
        period: BillingPeriod,
        issued_on: date,
        replaced_bill_id: int | None = None,
    ) -> BillingResult:
        """Create the bill and its lines in the current transaction (no commit, no lock)."""
        existing = self.bills.find_for_period(account.id, period.label)
        if existing is not None:
            raise DuplicatePeriodError(
                f"Bill {existing.id} already exists for account {account.account_number} "
                f"period {period.label}",
                field="billing_period",
            )

        meters = (
            self.db.query(Meter)
            .filter(Meter.account_id == account.id, Meter.status == MeterStatus.ACTIVE)
            .order_by(Meter.id.asc())
            .all()
        )
        if not meters:
            raise NoReadingsError(
                f"Account {account.account_number} has no active meters", field="account_id"
            )

        currency = self.settings.currency
        precision = self.settings.amount_precision
        rounding = self.settings.rounding_method.value

        details: list[BillDetail] = []
        skipped: list[SkippedMeter] = []
        degraded: list[int] = []
        estimated: list[int] = []
        total = Money.zero(currency)

        for meter in meters:
            current = self.readings.latest_on_or_before(meter.id, period.end)
            if current is None:
                skipped.append(SkippedMeter(meter.id, "no_reading"))
                continue
            baseline = self.readings.latest_before(meter.id, period.start)
            if current.reading_date < period.start:
                # Not read during the period
                estimate = self.estimator.estimate(meter, baseline, period)
                if estimate is not None:
                    current = estimate
                    estimated.append(meter.id)
            units = ConsumptionResolver.resolve_between(baseline, current)

            if units == 0 and not self.settings.include_zero_bills:
                skipped.append(SkippedMeter(meter.id, "zero_consumption"))
                continue

            resolution = self.tariffs.resolve(meter, period.end)
            if resolution.degraded:
                degraded.append(meter.id)

            amount = Money(units * resolution.rate, currency).rounded(precision, rounding)
            prefix = "Estimated " if current.reading_type == ReadingType.ESTIMATED else ""
            total = total + amount
            details.append(
                BillDetail(
                    meter_id=meter.id,
                    tariff_id=resolution.tariff.id,
                    previous_reading_id=baseline.id if baseline else None,
                    current_reading_id=current.id,
                    previous_reading_value=(
                        baseline.reading_value if baseline else current.reading_value
                    ),
                    current_reading_value=current.reading_value,
                    units_consumed=units,
                    rate=resolution.rate,
                    amount=amount.amount,
                    description=(
                        f"{prefix}{meter.meter_type} meter {meter.meter_number}: "
                        f"{units} units @ {resolution.rate}"
                    ),
                )
            )

        if not details:
            if all(s.reason == "no_reading" for s in skipped):
                raise NoReadingsError(
                    f"No meter of account {account.account_number} has a reading on or before "
                    f"{period.end}",
                    field="billing_period",
                )
            raise NoReadingsError(
                f"No billable consumption for account {account.account_number} "
                f"period {period.label}",
                field="billing_period",
                code="no_billable_consumption",
            )

        now = utcnow()
        bill = Bill(
            account_id=account.id,
            billing_period=period.label,
            total_amount=total.amount,
            paid_amount=Decimal("0"),
            balance=total.amount,
            status=BillStatus.PENDING,
            issued_at=issued_on,
            due_date=issued_on + timedelta(days=self.settings.due_days),
            replaced_bill_id=replaced_bill_id,
            details=details,
        )
        if total.is_zero():
            bill.status = BillStatus.PAID
            bill.paid_at = now

        self.check_totals(bill)
        self.db.add(bill)
        self.db.flush()
        return BillingResult(
            bill=bill,
            skipped_meters=skipped,
            degraded_tariff_meters=degraded,
            estimated_meters=estimated,
        )

    def check_totals(self, bill: Bill) -> None:
        detail_sum = sum((d.amount for d in bill.details), Decimal("0"))
        expected = detail_sum + (bill.late_fee or Decimal("0"))
        if abs(bill.total_amount - expected) > self.settings.amount_tolerance:
            logger.error(
                "Bill total %s does not match detail sum %s for account %d period %s",
                bill.total_amount,
                expected,
                bill.account_id,
                bill.billing_period,
            )
            raise InvariantViolationError(
                f"Bill total {bill.total_amount} does not match line items {expected}"
            )


__all__ = ["BillingGenerator", "BillingResult", "SkippedMeter"]
