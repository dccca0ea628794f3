"""
Entitlement engine exceptions.

Exceptions signal infrastructure failures and broken data, never policy
outcomes: an ordinary denial is returned as a ``Decision`` value.
"""

from typing import Any


class EntitlementError(Exception):
    """
    Base entitlement error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "ENTITLEMENT_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class UnknownPlanError(EntitlementError):
    """A stored plan identifier has no Plan Catalog entry."""

    def __init__(self, plan: str) -> None:
        super().__init__(
            f"Plan '{plan}' is not in the plan catalog",
            error_code="UNKNOWN_PLAN",
            status_code=500,
            context={"plan": plan},
            recovery_hint="Add the plan to the catalog or repair the stored account plan",
        )
        self.plan = plan


class AccountNotFoundError(EntitlementError):
    """No billing account could be resolved."""

    def __init__(self, message: str, account_id: str | None = None, user_id: str | None = None):
        context = {}
        if account_id:
            context["account_id"] = account_id
        if user_id:
            context["user_id"] = user_id
        super().__init__(
            message,
            error_code="ACCOUNT_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the account or user ID",
        )


class StorageProviderError(EntitlementError):
    """The storage-size collaborator failed to report usage."""

    def __init__(self, account_id: str, cause: Exception | None = None) -> None:
        super().__init__(
            f"Storage usage lookup failed for account {account_id}",
            error_code="STORAGE_PROVIDER_UNAVAILABLE",
            status_code=503,
            context={"account_id": account_id, "cause": repr(cause) if cause else None},
            recovery_hint="Retry the request",
        )


class DataInvariantError(EntitlementError):
    """Stored state violates an engine invariant and needs operator repair."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="DATA_INVARIANT_VIOLATION",
            status_code=500,
            context=context,
            recovery_hint="Inspect and repair the affected records",
        )


class LinkInvariantError(DataInvariantError):
    """More than one active account link where at most one is allowed."""

    def __init__(self, message: str, link_ids: list[str], **context: Any) -> None:
        super().__init__(message, context={"link_ids": link_ids, **context})
        self.error_code = "LINK_INVARIANT_VIOLATION"


class InviteNotFoundError(EntitlementError):
    """Invite does not exist for the account."""

    def __init__(self, invite_id: str) -> None:
        super().__init__(
            f"Invite {invite_id} not found",
            error_code="INVITE_NOT_FOUND",
            status_code=404,
            context={"invite_id": invite_id},
        )


class MemberRemovalError(EntitlementError):
    """Member cannot be removed from the account."""

    def __init__(self, message: str, account_id: str, user_id: str) -> None:
        super().__init__(
            message,
            error_code="MEMBER_REMOVAL_FORBIDDEN",
            status_code=409,
            context={"account_id": account_id, "user_id": user_id},
        )


__all__ = [
    "EntitlementError",
    "UnknownPlanError",
    "AccountNotFoundError",
    "StorageProviderError",
    "DataInvariantError",
    "LinkInvariantError",
    "InviteNotFoundError",
    "MemberRemovalError",
]
