"""Typed errors for the billing core.

Every business-rule failure is raised as a subclass of BillingError carrying a
machine-readable code, an optional field name and a retryable flag. Callers
(HTTP/CLI layers) translate these into user-facing messages.
"""


class BillingError(Exception):
    """Base billing error."""

    code = "billing_error"
    retryable = False

    def __init__(self, message: str, field: str | None = None, code: str | None = None):
        self.message = message
        self.field = field
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize for audit context and API error bodies."""
        error = {"code": self.code, "message": self.message}
        if self.field:
            error["field"] = self.field
        return error


# Validation: recovered locally with a field-attributed message


class ValidationError(BillingError):
    """Input or business-rule validation failed."""

    code = "validation_error"


class InvalidInputError(ValidationError):
    """Malformed or out-of-range input."""

    code = "invalid_input"


class MonotonicViolationError(ValidationError):
    """Reading value breaks the non-decreasing sequence of its meter."""

    code = "monotonic_violation"


class DuplicateReadingError(ValidationError):
    """A reading already exists for the meter in the same calendar month."""

    code = "duplicate_reading"


class NegativeAmountError(ValidationError):
    """A monetary amount would become negative."""

    code = "negative_amount"


class CurrencyMismatchError(ValidationError):
    """Arithmetic or comparison across two currencies."""

    code = "currency_mismatch"


# State: surfaced to caller, never silently ignored


class StateError(BillingError):
    """Operation not allowed in the entity's current state."""

    code = "state_error"


class ReadingAlreadyBilledError(StateError):
    code = "reading_already_billed"


class DependentReadingError(StateError):
    code = "dependent_reading"


class DuplicatePeriodError(StateError):
    code = "duplicate_period"


class InactiveAccountError(StateError):
    code = "inactive_account"


class DuplicateTransactionError(StateError):
    code = "duplicate_transaction"


class PaymentNotCompletedError(StateError):
    code = "payment_not_completed"


class PaymentAlreadyReconciledError(StateError):
    code = "payment_already_reconciled"


class NotReconciledError(StateError):
    code = "not_reconciled"


class TimeLimitExceededError(StateError):
    code = "time_limit_exceeded"


class UnauthorizedReversalError(StateError):
    code = "unauthorized"


class BillNotVoidableError(StateError):
    code = "bill_not_voidable"


class CarryForwardConsumedError(StateError):
    code = "carry_forward_consumed"


# Resource: aborts the operation atomically


class ResourceError(BillingError):
    """A required entity or rule could not be found."""

    code = "resource_error"


class NotFoundError(ResourceError):
    code = "not_found"


class TariffNotFoundError(ResourceError):
    code = "tariff_not_found"


class NoReadingsError(ResourceError):
    code = "no_readings"


# Concurrency: retryable by caller


class ConcurrencyError(BillingError):
    code = "concurrency_error"
    retryable = True


class AccountLockedError(ConcurrencyError):
    """The per-account lock could not be acquired in time."""

    code = "account_locked"


# Invariant: should never happen, reported loudly


class InvariantViolationError(BillingError):
    """A ledger invariant failed its pre-commit check."""

    code = "invariant_violation"


__all__ = [
    "BillingError",
    "ValidationError",
    "InvalidInputError",
    "MonotonicViolationError",
    "DuplicateReadingError",
    "NegativeAmountError",
    "CurrencyMismatchError",
    "StateError",
    "ReadingAlreadyBilledError",
    "DependentReadingError",
    "DuplicatePeriodError",
    "InactiveAccountError",
    "DuplicateTransactionError",
    "PaymentNotCompletedError",
    "PaymentAlreadyReconciledError",
    "NotReconciledError",
    "TimeLimitExceededError",
    "UnauthorizedReversalError",
    "BillNotVoidableError",
    "CarryForwardConsumedError",
    "ResourceError",
    "NotFoundError",
    "TariffNotFoundError",
    "NoReadingsError",
    "ConcurrencyError",
    "AccountLockedError",
    "InvariantViolationError",
]
