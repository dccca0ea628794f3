"""
FastAPI dependencies for entitlement enforcement.

Request handlers add ``Depends(require_upload_allowed)`` (or the email-inbound
variant) in front of mutating operations. The authenticated user id is read
from ``request.state.user_id``, set by the authentication middleware; the
storage-size provider and user directory come from ``app.state``.
"""

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docvault.entitlements.db import get_session_maker
from docvault.entitlements.gate import EnforcementGate
from docvault.entitlements.protocols import StorageSizeProvider, UserDirectory
from docvault.entitlements.schemas import Decision, DenyReason

_UNAVAILABLE_REASONS = {DenyReason.TEMPORARILY_UNAVAILABLE, DenyReason.INVARIANT_VIOLATION}


async def get_current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id


def get_storage_provider(request: Request) -> StorageSizeProvider:
    provider = getattr(request.app.state, "storage_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage usage provider not configured",
        )
    return provider


def get_user_directory(request: Request) -> UserDirectory | None:
    return getattr(request.app.state, "user_directory", None)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_maker()


async def get_enforcement_gate(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    storage_provider: StorageSizeProvider = Depends(get_storage_provider),
    user_directory: UserDirectory | None = Depends(get_user_directory),
) -> EnforcementGate:
    # The gate opens its own sessions
    return EnforcementGate(storage_provider, user_directory, session_factory=session_factory)


def raise_for_decision(decision: Decision) -> Decision:
    """Translate a deny decision into an HTTP error; allow decisions pass through."""
    if decision.allowed:
        return decision
    if decision.reason in _UNAVAILABLE_REASONS:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=decision.to_dict(),
            headers={"Retry-After": "5"} if decision.reason.is_retryable else None,
        )
    if decision.reason is DenyReason.ACCOUNT_NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=decision.to_dict())
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.to_dict())


async def require_upload_allowed(
    user_id: str = Depends(get_current_user_id),
    gate: EnforcementGate = Depends(get_enforcement_gate),
) -> Decision:
    return raise_for_decision(await gate.check_can_upload(user_id))


async def require_email_inbound_allowed(
    user_id: str = Depends(get_current_user_id),
    gate: EnforcementGate = Depends(get_enforcement_gate),
) -> Decision:
    return raise_for_decision(await gate.check_can_use_email_inbound(user_id))


__all__ = [
    "get_current_user_id",
    "get_enforcement_gate",
    "get_session_factory",
    "get_storage_provider",
    "get_user_directory",
    "raise_for_decision",
    "require_email_inbound_allowed",
    "require_upload_allowed",
]
