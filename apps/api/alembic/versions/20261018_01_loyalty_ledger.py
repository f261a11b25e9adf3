"""Create loyalty programs, tiers, accounts, ledger, rewards and redemptions."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LEDGER_ENTRY_KIND = sa.Enum("earn", "redeem", "adjust", "expire", name="loyalty_ledger_entry_kind")
REWARD_KIND = sa.Enum(
    "discount_percent",
    "discount_fixed",
    "free_product",
    "free_delivery",
    "store_credit",
    name="loyalty_reward_kind",
)
REDEMPTION_STATUS = sa.Enum("issued", "used", "expired", "cancelled", name="loyalty_redemption_status")
TIER_CHANGE_TRIGGER = sa.Enum("earn", "manual", "scheduled", name="loyalty_tier_change_trigger")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "loyalty_programs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_per_currency", sa.Numeric(10, 4), nullable=False, server_default="1"),
        sa.Column("redemption_rate", sa.Numeric(10, 4), nullable=False, server_default="0.01"),
        sa.Column("minimum_points_for_redemption", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_expiry_months", sa.Integer(), nullable=True),
        sa.Column("allow_tier_demotion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "loyalty_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("key", sa.String(), nullable=False, unique=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("min_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_points", sa.Integer(), nullable=True),
        sa.Column("min_spend", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("earning_multiplier", sa.Numeric(6, 3), nullable=False, server_default="1"),
        sa.Column("redemption_multiplier", sa.Numeric(6, 3), nullable=False, server_default="1"),
        sa.Column("discount_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points"),
        sa.CheckConstraint("earning_multiplier >= 0", name="ck_loyalty_tiers_earning_multiplier"),
    )
    op.create_index("ix_loyalty_tiers_key", "loyalty_tiers", ["key"])

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_programs.id"),
            nullable=False,
        ),
        sa.Column("current_tier_key", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_spend", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("last_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_accounts_points_balance"),
    )
    op.create_index("ix_loyalty_accounts_customer_id", "loyalty_accounts", ["customer_id"])
    op.create_index(
        "uq_loyalty_accounts_active_customer_program",
        "loyalty_accounts",
        ["customer_id", "program_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "loyalty_ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("kind", LEDGER_ENTRY_KIND, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("running_balance", sa.Integer(), nullable=False),
        sa.Column("source_ref", sa.String(), nullable=True),
        sa.Column("spend_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("account_id", "sequence", name="uq_loyalty_ledger_entries_account_sequence"),
        sa.UniqueConstraint(
            "account_id",
            "kind",
            "source_ref",
            name="uq_loyalty_ledger_entries_account_kind_source",
        ),
        sa.CheckConstraint("running_balance >= 0", name="ck_loyalty_ledger_entries_running_balance"),
    )
    op.create_index("ix_loyalty_ledger_entries_account_id", "loyalty_ledger_entries", ["account_id"])

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("monetary_value", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("reward_type", REWARD_KIND, nullable=False),
        sa.Column("discount_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("stock_quantity", sa.Integer(), nullable=True),
        sa.Column("min_tier_key", sa.String(), nullable=True),
        sa.Column("redemption_limit_per_account", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_featured", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost"),
        sa.CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_loyalty_rewards_stock_quantity",
        ),
    )
    op.create_index("ix_loyalty_rewards_slug", "loyalty_rewards", ["slug"])

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "reward_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_rewards.id"),
            nullable=False,
        ),
        sa.Column("points_spent", sa.Integer(), nullable=False),
        sa.Column("redemption_code", sa.String(), nullable=False, unique=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("status", REDEMPTION_STATUS, nullable=False, server_default="issued"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.UniqueConstraint(
            "account_id",
            "idempotency_key",
            name="uq_loyalty_redemptions_account_idempotency_key",
        ),
    )
    op.create_index("ix_loyalty_redemptions_account_id", "loyalty_redemptions", ["account_id"])

    op.create_table(
        "loyalty_tier_changes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("previous_tier_key", sa.String(), nullable=True),
        sa.Column("new_tier_key", sa.String(), nullable=False),
        sa.Column("trigger", TIER_CHANGE_TRIGGER, nullable=False),
        sa.Column("lifetime_points", sa.Integer(), nullable=False),
        sa.Column("lifetime_spend", sa.Numeric(14, 2), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_loyalty_tier_changes_account_id", "loyalty_tier_changes", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_tier_changes_account_id", table_name="loyalty_tier_changes")
    op.drop_table("loyalty_tier_changes")
    op.drop_index("ix_loyalty_redemptions_account_id", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")
    op.drop_index("ix_loyalty_rewards_slug", table_name="loyalty_rewards")
    op.drop_table("loyalty_rewards")
    op.drop_index("ix_loyalty_ledger_entries_account_id", table_name="loyalty_ledger_entries")
    op.drop_table("loyalty_ledger_entries")
    op.drop_index("uq_loyalty_accounts_active_customer_program", table_name="loyalty_accounts")
    op.drop_index("ix_loyalty_accounts_customer_id", table_name="loyalty_accounts")
    op.drop_table("loyalty_accounts")
    op.drop_index("ix_loyalty_tiers_key", table_name="loyalty_tiers")
    op.drop_table("loyalty_tiers")
    op.drop_table("loyalty_programs")

    bind = op.get_bind()
    for enum in (TIER_CHANGE_TRIGGER, REDEMPTION_STATUS, REWARD_KIND, LEDGER_ENTRY_KIND):
        enum.drop(bind, checkfirst=True)
