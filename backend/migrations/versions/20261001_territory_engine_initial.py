"""Territory, protection, assignment and commission ledger schema

Revision ID: 20261001_territory_initial
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_territory_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "territories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("state", sa.String(2), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="available"),
        sa.Column("protection_type", sa.String(32), nullable=False, server_default="none"),
        sa.Column("protection_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("protection_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_rep_id", sa.String(64), nullable=True),
        sa.Column("boundaries", sa.JSON(), nullable=True),
        sa.Column("total_accounts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("active_accounts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("trailing_revenue_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("metrics_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("territories", schema=None) as batch_op:
        batch_op.create_index("ix_territories_state_status", ["state", "status"], unique=False)
        batch_op.create_index("ix_territories_state", ["state"], unique=False)
        batch_op.create_index("ix_territories_status", ["status"], unique=False)
        batch_op.create_index("ix_territories_assigned_rep_id", ["assigned_rep_id"], unique=False)
        batch_op.create_index("ix_territories_is_active", ["is_active"], unique=False)

    # claim_active is TRUE for live claims and NULL after deactivation, so the
    # unique constraint allows one live claim per postal code.
    op.create_table(
        "territory_postal_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("territory_id", sa.Integer(), nullable=False),
        sa.Column("postal_code", sa.String(10), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("claim_active", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("postal_code", "claim_active", name="uq_territory_postal_codes_claim"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("territory_postal_codes", schema=None) as batch_op:
        batch_op.create_index("ix_territory_postal_codes_territory", ["territory_id", "position"], unique=False)
        batch_op.create_index("ix_territory_postal_codes_postal_code", ["postal_code"], unique=False)

    op.create_table(
        "territory_protection_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("territory_id", sa.Integer(), nullable=False),
        sa.Column("rule_type", sa.String(16), nullable=False),
        sa.Column("minimum_accounts", sa.Integer(), nullable=True),
        sa.Column("minimum_revenue_cents", sa.Integer(), nullable=True),
        sa.Column("time_period_months", sa.Integer(), nullable=True),
        sa.Column("performance_threshold", sa.Numeric(9, 4), nullable=True),
        sa.Column("allow_inheritance", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("require_approval", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("approved_inheritors", sa.JSON(), nullable=True),
        sa.Column("split_commission_enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("split_percentage", sa.Numeric(9, 4), nullable=True),
        sa.Column("split_conditions", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("territory_id", name="uq_protection_rules_territory"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("territory_protection_rules", schema=None) as batch_op:
        batch_op.create_index("ix_territory_protection_rules_territory_id", ["territory_id"], unique=False)

    # active_marker is TRUE only while status == 'active'
    op.create_table(
        "territory_assignments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("territory_id", sa.Integer(), nullable=False),
        sa.Column("rep_id", sa.String(64), nullable=False),
        sa.Column("assigned_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_by", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("active_marker", sa.Boolean(), nullable=True),
        sa.Column("protection_level", sa.String(16), nullable=False, server_default="full"),
        sa.Column("commission_override", sa.Numeric(9, 4), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("territory_id", "active_marker", name="uq_territory_assignments_active"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("territory_assignments", schema=None) as batch_op:
        batch_op.create_index("ix_territory_assignments_territory_id", ["territory_id"], unique=False)
        batch_op.create_index("ix_territory_assignments_status", ["status"], unique=False)
        batch_op.create_index("ix_territory_assignments_rep_status", ["rep_id", "status"], unique=False)

    op.create_table(
        "territory_transfer_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("territory_id", sa.Integer(), nullable=False),
        sa.Column("assignment_id", sa.Integer(), nullable=False),
        sa.Column("from_rep_id", sa.String(64), nullable=False),
        sa.Column("to_rep_id", sa.String(64), nullable=False),
        sa.Column("transfer_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("approved_by", sa.String(64), nullable=True),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.ForeignKeyConstraint(["assignment_id"], ["territory_assignments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("territory_transfer_history", schema=None) as batch_op:
        batch_op.create_index("ix_transfer_history_territory_date", ["territory_id", "transfer_date"], unique=False)
        batch_op.create_index("ix_territory_transfer_history_assignment_id", ["assignment_id"], unique=False)

    op.create_table(
        "territory_conflicts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("territory_id", sa.Integer(), nullable=False),
        sa.Column("reporting_rep_id", sa.String(64), nullable=False),
        sa.Column("current_rep_id", sa.String(64), nullable=True),
        sa.Column("conflict_type", sa.String(32), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("resolution_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("territory_conflicts", schema=None) as batch_op:
        batch_op.create_index("ix_territory_conflicts_territory_id", ["territory_id"], unique=False)
        batch_op.create_index("ix_territory_conflicts_resolution_status", ["resolution_status"], unique=False)

    op.create_table(
        "commission_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("rule_type", sa.String(32), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("rate_structure", sa.JSON(), nullable=False),
        sa.Column("applies_to_reps", sa.JSON(), nullable=True),
        sa.Column("applies_to_territories", sa.JSON(), nullable=True),
        sa.Column("applies_to_products", sa.JSON(), nullable=True),
        sa.Column("applies_to_categories", sa.JSON(), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("commission_rules", schema=None) as batch_op:
        batch_op.create_index("ix_commission_rules_active_priority", ["is_active", "priority"], unique=False)

    op.create_table(
        "commission_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("rep_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("business_account_id", sa.String(64), nullable=True),
        sa.Column("territory_id", sa.Integer(), nullable=True),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("order_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("commissionable_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("commission_rate", sa.Numeric(9, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("commission_amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("sale_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("commission_period", sa.String(7), nullable=False),
        sa.Column("reference_transaction_id", sa.Integer(), nullable=True),
        sa.Column("approved_by", sa.String(64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_reference", sa.String(128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.ForeignKeyConstraint(["reference_transaction_id"], ["commission_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("commission_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_commission_txns_rep_period_status", ["rep_id", "commission_period", "status"], unique=False)
        batch_op.create_index("ix_commission_txns_period_status", ["commission_period", "status"], unique=False)
        batch_op.create_index("ix_commission_txns_order", ["order_id"], unique=False)
        batch_op.create_index("ix_commission_transactions_business_account_id", ["business_account_id"], unique=False)
        batch_op.create_index("ix_commission_transactions_territory_id", ["territory_id"], unique=False)
        batch_op.create_index("ix_commission_transactions_reference_transaction_id", ["reference_transaction_id"], unique=False)
        batch_op.create_index("ix_commission_transactions_payment_reference", ["payment_reference"], unique=False)

    # Reference tables backing the default collaborator implementations
    op.create_table(
        "sales_reps",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("commission_rate", sa.Numeric(9, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("commission_tier", sa.String(16), nullable=False, server_default="standard"),
        sa.Column("monthly_quota_cents", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "business_accounts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("postal_code", sa.String(10), nullable=True),
        sa.Column("territory_id", sa.Integer(), nullable=True),
        sa.Column("sales_rep_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["territory_id"], ["territories.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("business_accounts", schema=None) as batch_op:
        batch_op.create_index("ix_business_accounts_territory", ["territory_id"], unique=False)
        batch_op.create_index("ix_business_accounts_rep", ["sales_rep_id"], unique=False)


def downgrade():
    op.drop_table("business_accounts")
    op.drop_table("sales_reps")
    op.drop_table("commission_transactions")
    op.drop_table("commission_rules")
    op.drop_table("territory_conflicts")
    op.drop_table("territory_transfer_history")
    op.drop_table("territory_assignments")
    op.drop_table("territory_protection_rules")
    op.drop_table("territory_postal_codes")
    op.drop_table("territories")
