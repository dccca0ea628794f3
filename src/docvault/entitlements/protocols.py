"""
Collaborator interfaces consumed by the entitlement engine.

Storage bytes, user identities and notification delivery are owned by other
subsystems; the engine only depends on these narrow protocols.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class StorageSizeProvider(Protocol):
    """Reports bytes owned by an account's non-deleted documents."""

    async def total_bytes_owned(self, account_id: str) -> int: ...


@runtime_checkable
class UserDirectory(Protocol):
    """Resolves a user's registered email address."""

    async def get_email(self, user_id: str) -> str | None: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers a templated notification (e.g. a transactional email)."""

    async def send(self, template_id: str, recipient: str, context: dict[str, Any]) -> None: ...


__all__ = ["NotificationSink", "StorageSizeProvider", "UserDirectory"]
