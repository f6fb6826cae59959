"""Initial entitlement schema (profiles, ledger, catalog, devices, campaigns)

Revision ID: 3f1c2a7d9e10
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2a7d9e10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SUBSCRIPTION_STATUS_VALUES = (
    "none", "active", "cancelling", "past_due", "paused", "expired", "revoked", "refunded",
)
LEDGER_ENTRY_TYPE_VALUES = ("subscription", "renewal", "purchase", "usage", "refund")
CAMPAIGN_STATUS_VALUES = ("pending", "processing", "completed", "cancelled", "failed")
DELIVERY_STATUS_VALUES = ("sent", "failed")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    subscription_status = postgresql.ENUM(*SUBSCRIPTION_STATUS_VALUES, name="subscription_status", create_type=False)
    ledger_entry_type = postgresql.ENUM(*LEDGER_ENTRY_TYPE_VALUES, name="ledger_entry_type", create_type=False)
    campaign_status = postgresql.ENUM(*CAMPAIGN_STATUS_VALUES, name="campaign_status", create_type=False)
    delivery_status = postgresql.ENUM(*DELIVERY_STATUS_VALUES, name="delivery_status", create_type=False)

    bind = op.get_bind()
    for enum_type in (subscription_status, ledger_entry_type, campaign_status, delivery_status):
        enum_type.create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # 2. Profiles and credit ledger
    # ------------------------------------------------------------------
    op.create_table(
        "profiles",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("plan", sa.String(50), nullable=False, server_default="free"),
        sa.Column("subscription_status", subscription_status, nullable=False, server_default="none"),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_reference", sa.String(255), nullable=True),
        sa.Column("source", sa.String(20), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("credits >= 0", name="ck_profiles_credits_non_negative"),
    )
    op.create_index("ix_profiles_subscription_reference", "profiles", ["subscription_reference"])
    op.create_index(
        "idx_profiles_status_end_date", "profiles", ["subscription_status", "subscription_end_date"]
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profiles.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", ledger_entry_type, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("reference_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    # One grant row and one refund row per storefront reference
    op.create_index(
        "uq_credit_transactions_grant_reference",
        "credit_transactions",
        ["reference_id"],
        unique=True,
        postgresql_where=sa.text("type <> 'refund' AND reference_id IS NOT NULL"),
    )
    op.create_index(
        "uq_credit_transactions_refund_reference",
        "credit_transactions",
        ["reference_id"],
        unique=True,
        postgresql_where=sa.text("type = 'refund' AND reference_id IS NOT NULL"),
    )
    op.create_index(
        "idx_credit_transactions_user_created", "credit_transactions", ["user_id", "created_at"]
    )

    # ------------------------------------------------------------------
    # 3. Product catalog
    # ------------------------------------------------------------------
    for table_name in ("subscription_plans", "credit_packages"):
        op.create_table(
            table_name,
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("apple_product_id", sa.String(255), nullable=True),
            sa.Column("android_product_id", sa.String(255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )

    # ------------------------------------------------------------------
    # 4. Push devices
    # ------------------------------------------------------------------
    op.create_table(
        "user_devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("fcm_token", sa.String(512), nullable=False),
        sa.Column("device_type", sa.String(20), nullable=False, server_default="web"),
        sa.Column("device_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "fcm_token", name="uq_user_devices_user_token"),
    )
    op.create_index("ix_user_devices_user_id", "user_devices", ["user_id"])
    op.create_index("idx_user_devices_active_type", "user_devices", ["is_active", "device_type"])
    op.create_index("idx_user_devices_token", "user_devices", ["fcm_token"])

    # ------------------------------------------------------------------
    # 5. Campaigns
    # ------------------------------------------------------------------
    op.create_table(
        "marketing_campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("image_url", sa.String(1024), nullable=True),
        sa.Column("target_device_type", sa.String(20), nullable=False, server_default="all"),
        sa.Column("status", campaign_status, nullable=False, server_default="pending"),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cursor_offset", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_batch", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_campaigns_status_updated", "marketing_campaigns", ["status", "updated_at"])

    op.create_table(
        "marketing_campaign_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "campaign_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("marketing_campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("device_token", sa.String(512), nullable=False),
        sa.Column("device_type", sa.String(20), nullable=True),
        sa.Column("status", delivery_status, nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("campaign_id", "device_token", name="uq_campaign_logs_campaign_token"),
    )
    op.create_index(
        "idx_campaign_logs_campaign_status", "marketing_campaign_logs", ["campaign_id", "status"]
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("marketing_campaign_logs")
    op.drop_table("marketing_campaigns")
    op.drop_table("user_devices")
    op.drop_table("credit_packages")
    op.drop_table("subscription_plans")
    op.drop_table("credit_transactions")
    op.drop_table("profiles")

    for name in ("delivery_status", "campaign_status", "ledger_entry_type", "subscription_status"):
        op.execute(f"DROP TYPE IF EXISTS {name}")
