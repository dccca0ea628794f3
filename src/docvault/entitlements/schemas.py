"""
Entitlement decision and view models.

Denials are data: every gate returns a ``Decision`` carrying the reason and
enough context (limit, current usage, plan, days remaining) to render a
precise message.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DenyReason(str, Enum):
    """Why a request was denied."""

    # Policy denials
    GRACE_PERIOD = "grace_period"
    READ_ONLY = "read_only"
    UPLOAD_NOT_ALLOWED = "upload_not_allowed"
    MONTHLY_UPLOAD_LIMIT = "monthly_upload_limit"
    STORAGE_LIMIT = "storage_limit"
    EMAIL_INBOUND_NOT_ALLOWED = "email_inbound_not_allowed"
    NO_SEATS_AVAILABLE = "no_seats_available"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXPIRED = "token_expired"
    EMAIL_MISMATCH = "email_mismatch"
    ALREADY_PRIMARY_OF_OWN_ACCOUNT = "already_primary_of_own_account"
    ALREADY_INVITED = "already_invited"
    ALREADY_MEMBER = "already_member"
    LINK_LIMIT_REACHED = "link_limit_reached"
    LINKING_NOT_ALLOWED = "linking_not_allowed"
    ACCOUNT_NOT_FOUND = "account_not_found"

    # Fail-closed outcomes
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    INVARIANT_VIOLATION = "invariant_violation"

    @property
    def is_retryable(self) -> bool:
        return self is DenyReason.TEMPORARILY_UNAVAILABLE


_DEFAULT_MESSAGES: dict[DenyReason, str] = {
    DenyReason.GRACE_PERIOD: "Trial has ended; uploads are paused during the grace period",
    DenyReason.READ_ONLY: "Account is in read-only mode",
    DenyReason.UPLOAD_NOT_ALLOWED: "Current plan does not allow uploads",
    DenyReason.MONTHLY_UPLOAD_LIMIT: "Monthly upload limit reached",
    DenyReason.STORAGE_LIMIT: "Storage limit reached",
    DenyReason.EMAIL_INBOUND_NOT_ALLOWED: "Email inbound is not available on the current plan",
    DenyReason.NO_SEATS_AVAILABLE: "No seats available",
    DenyReason.TOKEN_NOT_FOUND: "Invitation not found",
    DenyReason.TOKEN_EXPIRED: "Invitation has expired",
    DenyReason.EMAIL_MISMATCH: "Invitation was issued for a different email address",
    DenyReason.ALREADY_PRIMARY_OF_OWN_ACCOUNT: "User already manages a shared account",
    DenyReason.ALREADY_INVITED: "This person has already been invited",
    DenyReason.ALREADY_MEMBER: "This person already has access",
    DenyReason.LINK_LIMIT_REACHED: "Account already shares access with another account",
    DenyReason.LINKING_NOT_ALLOWED: "Current plan does not allow shared access",
    DenyReason.ACCOUNT_NOT_FOUND: "No billing account found for user",
    DenyReason.TEMPORARILY_UNAVAILABLE: "Entitlement check temporarily unavailable",
    DenyReason.INVARIANT_VIOLATION: "Account data needs operator attention",
}


class Decision(BaseModel):
    """Allow/deny result of an entitlement check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: DenyReason | None = None
    message: str | None = None
    limit: int | None = None
    current: int | None = None
    plan: str | None = None
    days_remaining: int | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def allow(
        cls,
        *,
        plan: str | None = None,
        days_remaining: int | None = None,
        **context: Any,
    ) -> "Decision":
        return cls(allowed=True, plan=plan, days_remaining=days_remaining, context=context)

    @classmethod
    def deny(
        cls,
        reason: DenyReason,
        *,
        message: str | None = None,
        limit: int | None = None,
        current: int | None = None,
        plan: str | None = None,
        days_remaining: int | None = None,
        **context: Any,
    ) -> "Decision":
        return cls(
            allowed=False,
            reason=reason,
            message=message or _DEFAULT_MESSAGES[reason],
            limit=limit,
            current=current,
            plan=plan,
            days_remaining=days_remaining,
            context=context,
        )

    @property
    def denied(self) -> bool:
        return not self.allowed

    def to_dict(self) -> dict[str, Any]:
        """Convert decision to dictionary for API responses."""
        return self.model_dump(mode="json", exclude_none=True)


class PoolUsage(BaseModel):
    """Usage summed across every account in a quota pool."""

    account_ids: list[str]
    total_uploads_this_month: int
    total_storage_bytes: int
    uploads_by_account: dict[str, int] = Field(default_factory=dict)
    storage_by_account: dict[str, int] = Field(default_factory=dict)


class MemberView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    role: str
    can_upload: bool
    created_at: datetime


class InviteView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    role: str
    can_upload: bool
    status: str
    invited_by: str
    created_at: datetime
    expires_at: datetime


class AccountDetails(BaseModel):
    """Seat overview for account-management screens."""

    account_id: str
    plan: str
    total_seats: int
    used_seats: int
    pending_seats: int
    available_seats: int
    members: list[MemberView]
    pending_invites: list[InviteView]


class LinkView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    primary_account_id: str
    linked_email: str
    linked_user_id: str | None = None
    linked_account_id: str | None = None
    status: str
    token_expires_at: datetime
    invited_at: datetime
    accepted_at: datetime | None = None


class SubscriptionStatus(BaseModel):
    """Plan, lifecycle and pooled usage as seen by one user."""

    plan: str
    display_name: str
    is_linked_party: bool
    max_uploads_per_month: int
    uploads_this_month: int
    max_storage_bytes: int
    storage_used_bytes: int
    current_users: int
    max_users: int
    can_upload: bool
    can_use_email_inbound: bool
    is_upload_disabled: bool
    trial_phase: str | None = None
    trial_ends_at: datetime | None = None
    days_remaining: int | None = None
    grace_period: bool = False
    is_read_only: bool = False
    grace_days_remaining: int = 0
    subscription_ends_at: datetime | None = None


__all__ = [
    "AccountDetails",
    "Decision",
    "DenyReason",
    "InviteView",
    "LinkView",
    "MemberView",
    "PoolUsage",
    "SubscriptionStatus",
]
