"""
Entitlement database tables.

Billing accounts, seat occupancy, invites, keyed entitlements and account
links. All mutable counters live here so every request-handling worker sees
the same state.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from docvault.entitlements.db import Base, TimestampMixin, TZDateTime, utcnow


def _new_id() -> str:
    return str(uuid4())


class AccountRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class InviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class LinkStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


ADDON_SEATS_KEY = "addon_seats"


class BillingAccount(Base, TimestampMixin):
    """Tenant that owns a plan, a trial window and the monthly upload counter."""

    __tablename__ = "billing_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)

    plan: Mapped[str] = mapped_column(String(50), nullable=False, default="trial")
    trial_ends_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    subscription_ends_at: Mapped[datetime | None] = mapped_column(
        TZDateTime(), nullable=True
    )

    # Monthly upload counter, reset lazily on first access in a new month
    uploaded_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upload_counter_reset_at: Mapped[datetime | None] = mapped_column(
        TZDateTime(), nullable=True
    )

    __table_args__ = (Index("ix_billing_accounts_plan", "plan"),)


class AccountMember(Base):
    """Occupation of one seat by one user."""

    __tablename__ = "account_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountRole.MEMBER.value)
    can_upload: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        TZDateTime(), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("account_id", "user_id", name="uq_account_members_account_user"),
        Index("ix_account_members_user", "user_id"),
    )


class AccountInvite(Base):
    """Pending seat reservation for an invited email address."""

    __tablename__ = "account_invites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=AccountRole.MEMBER.value)
    can_upload: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InviteStatus.PENDING.value
    )
    invited_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TZDateTime(), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)

    __table_args__ = (Index("ix_account_invites_account_status", "account_id", "status"),)


class Entitlement(Base, TimestampMixin):
    """Keyed per-account override, e.g. purchased add-on seats."""

    __tablename__ = "account_entitlements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value_int: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("account_id", "key", name="uq_account_entitlements_account_key"),
    )


class AccountLink(Base):
    """
    Shared-access relation from a primary account to a linked account.

    While active, both accounts share the upload and storage pool and the
    linked account reads the primary's plan. At most one active link per
    primary account.
    """

    __tablename__ = "account_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    primary_account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=False
    )
    linked_email: Mapped[str] = mapped_column(String(320), nullable=False)
    linked_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    linked_account_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LinkStatus.PENDING.value)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    token_expires_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    invited_at: Mapped[datetime] = mapped_column(
        TZDateTime(), nullable=False, default=utcnow
    )
    accepted_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(TZDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_account_links_primary_status", "primary_account_id", "status"),
        Index("ix_account_links_linked_user_status", "linked_user_id", "status"),
        Index("ix_account_links_linked_account_status", "linked_account_id", "status"),
    )


class LifecycleNotification(Base):
    """Record of a lifecycle notification already handed to the notification sink."""

    __tablename__ = "lifecycle_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_accounts.id", ondelete="CASCADE"), nullable=False
    )
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "notification_type", name="uq_lifecycle_notifications_account_type"
        ),
    )


__all__ = [
    "ADDON_SEATS_KEY",
    "AccountInvite",
    "AccountLink",
    "AccountMember",
    "AccountRole",
    "BillingAccount",
    "Entitlement",
    "InviteStatus",
    "LifecycleNotification",
    "LinkStatus",
]
