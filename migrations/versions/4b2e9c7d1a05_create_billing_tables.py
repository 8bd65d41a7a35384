"""Create entitlement, checkout attempt and billing ledger tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "4b2e9c7d1a05"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("provider_customer_ref", sa.String(length=255), nullable=True),
        sa.Column("provider_subscription_ref", sa.String(length=255), nullable=True, unique=True),
        sa.Column("provider_price_ref", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("plan_type", sa.String(length=16), nullable=True),
        _timestamp("current_period_start", nullable=True),
        _timestamp("current_period_end", nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("canceled_at", nullable=True),
        _timestamp("trial_start", nullable=True),
        _timestamp("trial_end", nullable=True),
        sa.Column("promo_code", sa.String(length=64), nullable=True),
        sa.Column("discount_amount", sa.Integer(), nullable=True),
        sa.Column("discount_percentage", sa.Float(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "current_period_end IS NULL OR current_period_start IS NULL "
            "OR current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
    )

    op.create_table(
        "account_profiles",
        sa.Column("account_id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("updated_at"),
    )

    op.create_table(
        "checkout_attempts",
        sa.Column("provider_session_ref", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column("plan_type", sa.String(length=16), nullable=False),
        sa.Column("provider_price_ref", sa.String(length=255), nullable=True),
        sa.Column("promo_code", sa.String(length=64), nullable=True),
        sa.Column("promotion_code_ref", sa.String(length=255), nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=True),
        sa.Column("discount_value", sa.Float(), nullable=True),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        _timestamp("created_at"),
        _timestamp("consumed_at", nullable=True),
    )
    op.create_index("ix_checkout_attempts_account_id", "checkout_attempts", ["account_id"])

    op.create_table(
        "billing_history",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("dedup_key", sa.String(length=255), nullable=False, unique=True),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column(
            "subscription_id",
            sa.String(length=36),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("provider_invoice_ref", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("invoice_url", sa.String(length=1024), nullable=True),
        _timestamp("paid_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_billing_history_account_id", "billing_history", ["account_id"])

    op.create_table(
        "promo_code_usage",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("dedup_key", sa.String(length=255), nullable=False, unique=True),
        sa.Column("account_id", sa.String(length=255), nullable=False),
        sa.Column(
            "subscription_id",
            sa.String(length=36),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("promo_code", sa.String(length=64), nullable=False),
        sa.Column("provider_promotion_ref", sa.String(length=255), nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=True),
        sa.Column("discount_value", sa.Float(), nullable=False),
        _timestamp("applied_at"),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )
    op.create_index("ix_promo_code_usage_account_id", "promo_code_usage", ["account_id"])

    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        _timestamp("received_at"),
    )


def downgrade() -> None:
    op.drop_table("processed_events")
    op.drop_index("ix_promo_code_usage_account_id", table_name="promo_code_usage")
    op.drop_table("promo_code_usage")
    op.drop_index("ix_billing_history_account_id", table_name="billing_history")
    op.drop_table("billing_history")
    op.drop_index("ix_checkout_attempts_account_id", table_name="checkout_attempts")
    op.drop_table("checkout_attempts")
    op.drop_table("account_profiles")
    op.drop_table("subscriptions")
