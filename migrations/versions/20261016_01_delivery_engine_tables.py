"""delivery engine tables

Revision ID: 20261016_01
Revises: None
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261016_01"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "delivery_configs",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("channel", sa.String(), nullable=False, server_default="telegram"),
        sa.Column("channel_identity", sa.String(), nullable=True),
        sa.Column("channel_credential", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("morning_time", sa.String(length=8), nullable=False, server_default="09:00"),
        sa.Column("evening_time", sa.String(length=8), nullable=False, server_default="18:00"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("content_source", sa.String(), nullable=False, server_default="external"),
        sa.Column("external_token", sa.String(), nullable=True),
        sa.Column("external_database_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("content_source IN ('external', 'owned')", name="ck_delivery_configs_source"),
    )
    op.create_index("ix_delivery_configs_channel_identity", "delivery_configs", ["channel_identity"])

    op.create_table(
        "delivery_states",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("last_slot_type", sa.String(), nullable=True),
        sa.Column("last_delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_local_date", sa.Date(), nullable=True),
        sa.Column("last_item_id", sa.String(), nullable=True),
        sa.Column("claim_key", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "last_slot_type IS NULL OR last_delivered_at IS NOT NULL",
            name="ck_delivery_states_slot_has_timestamp",
        ),
    )

    op.create_table(
        "pending_verifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("code", sa.String(length=6), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channel", sa.String(), nullable=True),
        sa.Column("channel_identity", sa.String(), nullable=True),
    )
    op.create_index("ix_pending_verifications_code", "pending_verifications", ["code"])
    op.create_index("ix_pending_verifications_user_id", "pending_verifications", ["user_id"])
    op.create_index("ix_pending_verifications_expires_at", "pending_verifications", ["expires_at"])

    op.create_table(
        "verification_attempts",
        sa.Column("channel_identity", sa.String(), primary_key=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "owned_prompts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("slot_type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("theme", sa.String(), nullable=True),
        sa.Column("entries", sa.JSON(), nullable=False),
        sa.Column("response", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "date", "slot_type", name="uq_owned_prompts_user_date_slot"),
        sa.CheckConstraint("slot_type IN ('morning', 'evening')", name="ck_owned_prompts_slot"),
    )
    op.create_index("ix_owned_prompts_user_id", "owned_prompts", ["user_id"])


def downgrade() -> None:
    op.drop_table("owned_prompts")
    op.drop_table("verification_attempts")
    op.drop_table("pending_verifications")
    op.drop_table("delivery_states")
    op.drop_table("delivery_configs")
