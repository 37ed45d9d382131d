"""Billing core schema

Creates users, subscriptions, subscription_history and webhook_logs,
including the partial unique index that makes (source, event_id) the
idempotency key for webhook processing.

Revision ID: c3f1a9e2b7d4
Revises:
Create Date: 2026-03-01 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "c3f1a9e2b7d4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # users (owned by the account service; entitlement columns live here)
    # =========================================================================
    op.create_table(
        "users",
        sa.Column("user_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="free"),
        sa.Column(
            "subscription_status",
            sa.String(length=20),
            nullable=False,
            server_default="free",
        ),
        sa.Column("is_beta_user", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("beta_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # =========================================================================
    # subscriptions (one row per user)
    # =========================================================================
    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("plan_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_ref", sa.String(length=255), nullable=True),
        sa.Column(
            "founder_discount",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("discount_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_subscriptions_discount_percent",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_index(
        "idx_subscription_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )

    # =========================================================================
    # subscription_history (append-only ledger)
    # =========================================================================
    op.create_table(
        "subscription_history",
        sa.Column("history_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("from_plan", sa.String(length=20), nullable=True),
        sa.Column("to_plan", sa.String(length=20), nullable=True),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["subscriptions.subscription_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("history_id"),
    )
    op.create_index(
        "idx_sub_history_subscription",
        "subscription_history",
        ["subscription_id", "created_at"],
    )

    # =========================================================================
    # webhook_logs (event log / idempotency store)
    # =========================================================================
    op.create_table(
        "webhook_logs",
        sa.Column("log_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["subscriptions.subscription_id"],
        ),
        sa.PrimaryKeyConstraint("log_id"),
    )
    op.create_index(
        "webhook_logs_source_event_id_unique",
        "webhook_logs",
        ["source", "event_id"],
        unique=True,
        postgresql_where=sa.text("event_id IS NOT NULL"),
    )
    op.create_index("ix_webhook_logs_user_id", "webhook_logs", ["user_id"])
    op.create_index(
        "idx_webhook_logs_source_created",
        "webhook_logs",
        ["source", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_webhook_logs_source_created", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_user_id", table_name="webhook_logs")
    op.drop_index("webhook_logs_source_event_id_unique", table_name="webhook_logs")
    op.drop_table("webhook_logs")

    op.drop_index("idx_sub_history_subscription", table_name="subscription_history")
    op.drop_table("subscription_history")

    op.drop_index("idx_subscription_status_period_end", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
