"""create users and billing tables

Revision ID: 1f3a5c7e9b20
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "1f3a5c7e9b20"
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("preferred_currency", sa.String(length=3), nullable=True),
        sa.Column(
            "subscription_tier", sa.String(), nullable=False, server_default="free"
        ),
        sa.Column(
            "subscription_status", sa.String(), nullable=False, server_default="none"
        ),
        sa.Column("current_subscription_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "is_superuser", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "payment_orders",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column(
            "user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("gateway_order_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("original_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="created"),
        sa.Column("plan_snapshot", JSON_TYPE, nullable=False),
        sa.Column("user_snapshot", JSON_TYPE, nullable=True),
        sa.Column(
            "proration_credit", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("existing_subscription_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "gateway_order_id",
            name="uq_payment_orders_user_gateway_order",
        ),
    )
    op.create_index(
        "ix_payment_orders_order_id", "payment_orders", ["order_id"], unique=True
    )
    op.create_index("ix_payment_orders_user_id", "payment_orders", ["user_id"])
    op.create_index(
        "ix_payment_orders_gateway_order_id", "payment_orders", ["gateway_order_id"]
    )

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("plan_duration", sa.String(), nullable=False),
        sa.Column("gateway_order_id", sa.String(), nullable=True),
        sa.Column("gateway_payment_id", sa.String(), nullable=True),
        sa.Column("gateway_signature", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "transaction_type",
            sa.String(),
            nullable=False,
            server_default="subscription_creation",
        ),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("plan_snapshot", JSON_TYPE, nullable=True),
        sa.Column("payment_order_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("prior_subscription_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column(
            "proration_credit", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("subscription_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("recovery_method", sa.String(), nullable=True),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "gateway_payment_id",
            name="uq_payment_transactions_gateway_payment_id",
        ),
    )
    op.create_index(
        "ix_payment_transactions_user_id", "payment_transactions", ["user_id"]
    )
    op.create_index(
        "ix_payment_transactions_gateway_order_id",
        "payment_transactions",
        ["gateway_order_id"],
    )
    op.create_index(
        "ix_payment_transactions_status", "payment_transactions", ["status"]
    )
    op.create_index(
        "ix_payment_transactions_created_at", "payment_transactions", ["created_at"]
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("plan_name", sa.String(), nullable=False),
        sa.Column("plan_duration", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("display_price", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column(
            "interval_count", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_downgrade_plan_id", sa.String(), nullable=True),
        sa.Column(
            "scheduled_downgrade_date", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column(
            "auto_renewal", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("features", JSON_TYPE, nullable=True),
        sa.Column("source_transaction_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("prior_subscription_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("prior_plan_id", sa.String(), nullable=True),
        sa.Column(
            "applied_proration_credit",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_source_transaction_id",
        "subscriptions",
        ["source_transaction_id"],
    )
    op.create_index(
        "uq_subscriptions_user_active",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'trialing')"),
        sqlite_where=sa.text("status IN ('active', 'trialing')"),
    )


def downgrade() -> None:
    op.drop_index("uq_subscriptions_user_active", table_name="subscriptions")
    op.drop_index(
        "ix_subscriptions_source_transaction_id", table_name="subscriptions"
    )
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index(
        "ix_payment_transactions_created_at", table_name="payment_transactions"
    )
    op.drop_index("ix_payment_transactions_status", table_name="payment_transactions")
    op.drop_index(
        "ix_payment_transactions_gateway_order_id",
        table_name="payment_transactions",
    )
    op.drop_index(
        "ix_payment_transactions_user_id", table_name="payment_transactions"
    )
    op.drop_table("payment_transactions")

    op.drop_index("ix_payment_orders_gateway_order_id", table_name="payment_orders")
    op.drop_index("ix_payment_orders_user_id", table_name="payment_orders")
    op.drop_index("ix_payment_orders_order_id", table_name="payment_orders")
    op.drop_table("payment_orders")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
