"""Billing configuration from environment variables and .env file.

A single BillingSettings instance is built at startup and passed explicitly
into the engines and services; nothing in the core reads configuration ad hoc.
"""

import logging
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import ConfigDict, Field, NonNegativeInt, PositiveInt, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class AllocationStrategyName(str, Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    OLDEST_DUE = "oldest_due"
    SMALLEST_FIRST = "smallest_first"


class OverpaymentHandling(str, Enum):
    CARRY_FORWARD = "carry_forward"
    REFUND = "refund"
    MANUAL = "manual"


class RoundingMethod(str, Enum):
    ROUND = "round"
    CEIL = "ceil"
    FLOOR = "floor"


class ReversalPermission(str, Enum):
    ANYONE = "anyone"
    ADMIN_ONLY = "admin_only"
    SAME_USER = "same_user"


class EstimationMethod(str, Enum):
    AVERAGE = "average"
    LAST_READING = "last_reading"
    SEASONAL = "seasonal"


class BillingSettings(BaseSettings):
    """Billing and reconciliation settings.

    Pydantic loads values from BILLING_* environment variables and the .env
    file, e.g. BILLING_ALLOCATION_STRATEGY=lifo.
    """

    model_config = ConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage and logging
    database_url: str = Field(default="sqlite:///./meterbill.db")
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="logs/billing.log")

    currency: str = Field(default="KES", min_length=3, max_length=3)

    # Reconciliation
    allocation_strategy: AllocationStrategyName = AllocationStrategyName.FIFO
    auto_reconcile: bool = True
    overpayment_handling: OverpaymentHandling = OverpaymentHandling.CARRY_FORWARD
    minimum_allocation: Decimal = Field(default=Decimal("0.01"), ge=0)
    minimum_carry_forward: Decimal = Field(default=Decimal("0.01"), ge=0)
    amount_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    max_bills_per_reconciliation: Optional[PositiveInt] = None
    apply_credit_on_reconcile: bool = False
    lock_timeout_seconds: float = Field(default=30.0, gt=0)

    # Reversal policy
    allow_reversal: bool = True
    reversal_time_limit_hours: Optional[NonNegativeInt] = 24
    reversal_permission: ReversalPermission = ReversalPermission.ADMIN_ONLY

    # Bill generation
    # Money columns are stored with two decimal places
    amount_precision: int = Field(default=2, ge=0, le=2)
    rounding_method: RoundingMethod = RoundingMethod.ROUND
    due_days: int = Field(default=14, ge=0)
    include_zero_bills: bool = True
    auto_apply_credit_to_new_bills: bool = False
    carry_forward_expiry_months: Optional[PositiveInt] = None
    tariff_cache_enabled: bool = True

    # Estimated readings for meters not read during the period
    estimation_enabled: bool = False
    estimation_method: EstimationMethod = EstimationMethod.AVERAGE
    estimation_average_months: PositiveInt = 3
    max_consecutive_estimates: Optional[PositiveInt] = 2

    # Overdue handling
    grace_period_days: int = Field(default=14, ge=0)
    late_fees_enabled: bool = True
    late_fee_percentage: Decimal = Field(default=Decimal("5"), ge=0)
    late_fee_minimum: Decimal = Field(default=Decimal("50"), ge=0)
    late_fee_maximum: Decimal = Field(default=Decimal("5000"), ge=0)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def amount_quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01') for precision 2."""
        return Decimal(1).scaleb(-self.amount_precision)


def load_settings(env_file: str = ".env", **overrides) -> BillingSettings:
    """Load settings from .env file, environment variables and explicit overrides.

    Priority (highest to lowest):
    1. Keyword overrides
    2. Environment variables (BILLING_*)
    3. .env file in project root
    4. Default values
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)
    settings = BillingSettings(**overrides)
    logger.debug(
        "Billing settings loaded: strategy=%s, overpayment=%s, precision=%d",
        settings.allocation_strategy.value,
        settings.overpayment_handling.value,
        settings.amount_precision,
    )
    return settings


# Lazy loader to ensure environment is loaded before instantiation
_settings_instance: Optional[BillingSettings] = None


def get_settings() -> BillingSettings:
    """Get or create the process-wide settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = load_settings()
    return _settings_instance


__all__ = [
    "AllocationStrategyName",
    "BillingSettings",
    "EstimationMethod",
    "OverpaymentHandling",
    "ReversalPermission",
    "RoundingMethod",
    "get_settings",
    "load_settings",
]
