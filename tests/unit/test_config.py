"""Unit tests for billing settings."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from meterbill.services.config import (
    AllocationStrategyName,
    BillingSettings,
    EstimationMethod,
    OverpaymentHandling,
    ReversalPermission,
    load_settings,
)


@pytest.mark.unit
class TestBillingSettings:
    def test_defaults(self, monkeypatch):
        for key in ("BILLING_ALLOCATION_STRATEGY", "BILLING_OVERPAYMENT_HANDLING"):
            monkeypatch.delenv(key, raising=False)
        settings = BillingSettings(_env_file=None)
        assert settings.allocation_strategy == AllocationStrategyName.FIFO
        assert settings.overpayment_handling == OverpaymentHandling.CARRY_FORWARD
        assert settings.reversal_permission == ReversalPermission.ADMIN_ONLY
        assert settings.amount_precision == 2
        assert settings.amount_quantum == Decimal("0.01")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BILLING_ALLOCATION_STRATEGY", "lifo")
        monkeypatch.setenv("BILLING_MAX_BILLS_PER_RECONCILIATION", "3")
        monkeypatch.setenv("BILLING_LATE_FEE_PERCENTAGE", "2.5")
        settings = BillingSettings(_env_file=None)
        assert settings.allocation_strategy == AllocationStrategyName.LIFO
        assert settings.max_bills_per_reconciliation == 3
        assert settings.late_fee_percentage == Decimal("2.5")

    def test_invalid_strategy_rejected(self):
        with pytest.raises(ValidationError):
            BillingSettings(_env_file=None, allocation_strategy="random")

    def test_precision_limited_to_stored_scale(self):
        with pytest.raises(ValidationError):
            BillingSettings(_env_file=None, amount_precision=3)

    def test_estimation_settings(self, monkeypatch):
        monkeypatch.setenv("BILLING_ESTIMATION_ENABLED", "true")
        monkeypatch.setenv("BILLING_ESTIMATION_METHOD", "seasonal")
        settings = BillingSettings(_env_file=None)
        assert settings.estimation_enabled is True
        assert settings.estimation_method == EstimationMethod.SEASONAL
        assert settings.estimation_average_months == 3

    def test_currency_upper_cased(self):
        assert BillingSettings(_env_file=None, currency="usd").currency == "USD"

    def test_load_settings_with_overrides(self, tmp_path):
        settings = load_settings(env_file=str(tmp_path / "missing.env"), amount_precision=0)
        assert settings.amount_precision == 0
        assert settings.amount_quantum == Decimal("1")

    def test_load_settings_reads_env_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BILLING_DUE_DAYS", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("BILLING_DUE_DAYS=30\n")
        settings = load_settings(env_file=str(env_file))
        assert settings.due_days == 30
