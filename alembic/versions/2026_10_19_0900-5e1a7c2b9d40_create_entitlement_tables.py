"""create_entitlement_tables

Revision ID: 5e1a7c2b9d40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "5e1a7c2b9d40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create billing account, seat, link and notification tables."""

    op.create_table(
        "billing_accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("plan", sa.String(length=50), nullable=False),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uploaded_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("upload_counter_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_user_id"),
    )
    op.create_index("ix_billing_accounts_plan", "billing_accounts", ["plan"])

    op.create_table(
        "account_members",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("can_upload", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "user_id", name="uq_account_members_account_user"),
    )
    op.create_index("ix_account_members_user", "account_members", ["user_id"])

    op.create_table(
        "account_invites",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("can_upload", sa.Boolean(), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("invited_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token"),
    )
    op.create_index(
        "ix_account_invites_account_status", "account_invites", ["account_id", "status"]
    )

    op.create_table(
        "account_entitlements",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value_int", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "key", name="uq_account_entitlements_account_key"),
    )

    op.create_table(
        "account_links",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("primary_account_id", sa.String(length=36), nullable=False),
        sa.Column("linked_email", sa.String(length=320), nullable=False),
        sa.Column("linked_user_id", sa.String(length=255), nullable=True),
        sa.Column("linked_account_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["primary_account_id"], ["billing_accounts.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["linked_account_id"], ["billing_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token"),
    )
    op.create_index(
        "ix_account_links_primary_status", "account_links", ["primary_account_id", "status"]
    )
    op.create_index(
        "ix_account_links_linked_user_status", "account_links", ["linked_user_id", "status"]
    )
    op.create_index(
        "ix_account_links_linked_account_status",
        "account_links",
        ["linked_account_id", "status"],
    )

    op.create_table(
        "lifecycle_notifications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("notification_type", sa.String(length=50), nullable=False),
        sa.Column("recipient", sa.String(length=320), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["billing_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "account_id", "notification_type", name="uq_lifecycle_notifications_account_type"
        ),
    )


def downgrade() -> None:
    """Drop entitlement tables."""
    op.drop_table("lifecycle_notifications")
    op.drop_index("ix_account_links_linked_account_status", table_name="account_links")
    op.drop_index("ix_account_links_linked_user_status", table_name="account_links")
    op.drop_index("ix_account_links_primary_status", table_name="account_links")
    op.drop_table("account_links")
    op.drop_table("account_entitlements")
    op.drop_index("ix_account_invites_account_status", table_name="account_invites")
    op.drop_table("account_invites")
    op.drop_index("ix_account_members_user", table_name="account_members")
    op.drop_table("account_members")
    op.drop_index("ix_billing_accounts_plan", table_name="billing_accounts")
    op.drop_table("billing_accounts")
