"""Baseline: subscriptions, webhook events and enhanced sync status.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32)),
        sa.Column("external_subscription_id", sa.String(255)),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("plan_id", sa.String(255)),
        sa.Column("current_period_end", sa.DateTime()),
        sa.Column("cancel_at_period_end", sa.Boolean(), default=False),
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_user_subscriptions_owner_id", "user_subscriptions", ["owner_id"], unique=True)
    op.create_index(
        "ix_user_subscriptions_external_subscription_id", "user_subscriptions", ["external_subscription_id"]
    )
    op.create_index("ix_user_subscriptions_stripe_customer_id", "user_subscriptions", ["stripe_customer_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("provider_event_id", sa.String(255), unique=True, nullable=False),
        sa.Column("event_type", sa.String(100)),
        sa.Column("payload", sa.JSON()),
        sa.Column("processing_status", sa.String(20)),
        sa.Column("processed_at", sa.DateTime()),
        sa.Column("error_details", sa.JSON()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("owner_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_status_retry", "webhook_events", ["processing_status", "retry_count"])
    op.create_index("ix_webhook_events_owner_created", "webhook_events", ["owner_id", "created_at"])

    op.create_table(
        "subscription_enhanced_status",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("owner_id", sa.String(64), unique=True, nullable=False),
        sa.Column("subscription_status", sa.String(32)),
        sa.Column("external_subscription_id", sa.String(255)),
        sa.Column("subscription_metadata", sa.JSON()),
        sa.Column("last_sync_at", sa.DateTime()),
        sa.Column("sync_status", sa.String(20)),
        sa.Column("payment_method_status", sa.String(20)),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index(
        "ix_subscription_enhanced_status_external_subscription_id",
        "subscription_enhanced_status",
        ["external_subscription_id"],
    )
    op.create_index("ix_enhanced_status_sync_status", "subscription_enhanced_status", ["sync_status"])


def downgrade() -> None:
    op.drop_index("ix_enhanced_status_sync_status", table_name="subscription_enhanced_status")
    op.drop_index(
        "ix_subscription_enhanced_status_external_subscription_id", table_name="subscription_enhanced_status"
    )
    op.drop_table("subscription_enhanced_status")
    op.drop_index("ix_webhook_events_owner_created", table_name="webhook_events")
    op.drop_index("ix_webhook_events_status_retry", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_user_subscriptions_stripe_customer_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_external_subscription_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_owner_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
