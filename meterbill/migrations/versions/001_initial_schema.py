"""Initial schema: accounts, meters, readings, tariffs, bills, payments, carry-forward.

Revision ID: 001_initial_schema
Revises:
Create Date: 2025-11-12 13:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_number", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_number"),
        sa.Index("idx_account_active", "is_active"),
    )

    op.create_table(
        "meters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("meter_number", sa.String(length=50), nullable=False),
        sa.Column("meter_type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        sa.Column("installation_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("meter_number"),
        sa.Index("ix_meters_account_id", "account_id"),
        sa.Index("idx_meter_account_status", "account_id", "status"),
    )

    op.create_table(
        "meter_readings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("meter_id", sa.Integer(), nullable=False),
        sa.Column("reading_value", sa.Numeric(12, 3), nullable=False),
        sa.Column("reading_date", sa.Date(), nullable=False),
        sa.Column("reading_month", sa.String(length=7), nullable=False),
        sa.Column("reading_type", sa.String(length=30), nullable=False, server_default="actual"),
        sa.Column("consumption", sa.Numeric(12, 3), nullable=False, server_default="0"),
        sa.Column("reader_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["meter_id"], ["meters.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("meter_id", "reading_month", name="uq_reading_meter_month"),
        sa.Index("ix_meter_readings_meter_id", "meter_id"),
        sa.Index("idx_reading_meter_date", "meter_id", "reading_date"),
    )

    op.create_table(
        "tariffs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("meter_type", sa.String(length=50), nullable=True),
        sa.Column("rate", sa.Numeric(12, 4), nullable=False),
        sa.Column("effective_from", sa.Date(), nullable=False),
        sa.Column("effective_to", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("idx_tariff_active_type", "is_active", "meter_type"),
        sa.Index("idx_tariff_effective", "effective_from", "effective_to"),
    )

    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("billing_period", sa.String(length=7), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("is_disputed", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("issued_at", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("late_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("late_fee_applied_at", sa.Date(), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("void_reason", sa.String(length=500), nullable=True),
        sa.Column("replaced_bill_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["replaced_bill_id"], ["bills.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_bills_account_id", "account_id"),
        sa.Index("idx_bill_account_status", "account_id", "status"),
        sa.Index("idx_bill_due_date", "due_date"),
    )
    op.create_index(
        "uq_bill_account_period_live",
        "bills",
        ["account_id", "billing_period"],
        unique=True,
        sqlite_where=sa.text("status != 'void'"),
        postgresql_where=sa.text("status != 'void'"),
    )

    op.create_table(
        "bill_details",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bill_id", sa.Integer(), nullable=False),
        sa.Column("meter_id", sa.Integer(), nullable=False),
        sa.Column("tariff_id", sa.Integer(), nullable=False),
        sa.Column("previous_reading_id", sa.Integer(), nullable=True),
        sa.Column("current_reading_id", sa.Integer(), nullable=False),
        sa.Column("previous_reading_value", sa.Numeric(12, 3), nullable=False),
        sa.Column("current_reading_value", sa.Numeric(12, 3), nullable=False),
        sa.Column("units_consumed", sa.Numeric(12, 3), nullable=False),
        sa.Column("rate", sa.Numeric(12, 4), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"]),
        sa.ForeignKeyConstraint(["meter_id"], ["meters.id"]),
        sa.ForeignKeyConstraint(["tariff_id"], ["tariffs.id"]),
        sa.ForeignKeyConstraint(["previous_reading_id"], ["meter_readings.id"]),
        sa.ForeignKeyConstraint(["current_reading_id"], ["meter_readings.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_bill_details_bill_id", "bill_id"),
        sa.Index("ix_bill_details_meter_id", "meter_id"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("method", sa.String(length=50), nullable=False, server_default="cash"),
        sa.Column("external_transaction_id", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="completed"),
        sa.Column(
            "reconciliation_status", sa.String(length=30), nullable=False, server_default="pending"
        ),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_by", sa.Integer(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_transaction_id"),
        sa.Index("ix_payments_account_id", "account_id"),
        sa.Index("ix_payments_payment_date", "payment_date"),
        sa.Index("idx_payment_account_date", "account_id", "payment_date"),
        sa.Index("idx_payment_reconciliation", "account_id", "reconciliation_status"),
    )

    op.create_table(
        "payment_allocations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=False),
        sa.Column("bill_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("previous_bill_status", sa.String(length=30), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_payment_allocations_payment_id", "payment_id"),
        sa.Index("ix_payment_allocations_bill_id", "bill_id"),
        sa.Index("idx_allocation_payment_bill", "payment_id", "bill_id"),
    )

    op.create_table(
        "carry_forward_balances",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=True),
        sa.Column("balance_type", sa.String(length=30), nullable=False, server_default="credit"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False),
        sa.Column("billing_period", sa.String(length=7), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_carry_forward_balances_account_id", "account_id"),
        sa.Index("ix_carry_forward_balances_payment_id", "payment_id"),
        sa.Index("idx_carry_forward_account_status", "account_id", "status", "balance_type"),
    )

    op.create_table(
        "carry_forward_applications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("carry_forward_id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=True),
        sa.Column("bill_id", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["carry_forward_id"], ["carry_forward_balances.id"]),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_carry_forward_applications_carry_forward_id", "carry_forward_id"),
        sa.Index("ix_carry_forward_applications_payment_id", "payment_id"),
        sa.Index("ix_carry_forward_applications_bill_id", "bill_id"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("idx_audit_entity", "entity_type", "entity_id"),
    )


def downgrade() -> None:
    for table in (
        "audit_logs",
        "carry_forward_applications",
        "carry_forward_balances",
        "payment_allocations",
        "payments",
        "bill_details",
        "bills",
        "tariffs",
        "meter_readings",
        "meters",
        "accounts",
    ):
        op.drop_table(table)
