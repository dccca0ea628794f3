"""
Billing account service.

Signup, billing-provider plan changes, member removal and account deletion.
The billing provider is the source of truth for ``plan``, ``trial_ends_at``
and ``subscription_ends_at``; this service only stores what it reports and
trims seat reservations and shared access that the new plan no longer covers.
"""

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docvault.entitlements.exceptions import AccountNotFoundError, MemberRemovalError
from docvault.entitlements.lifecycle import Clock, system_clock
from docvault.entitlements.logging import log_audit_event
from docvault.entitlements.models import (
    ADDON_SEATS_KEY,
    AccountInvite,
    AccountLink,
    AccountMember,
    AccountRole,
    BillingAccount,
    Entitlement,
    InviteStatus,
    LifecycleNotification,
    LinkStatus,
)
from docvault.entitlements.plans import get_plan_limits
from docvault.entitlements.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


async def load_account(
    db: AsyncSession, account_id: str, *, for_update: bool = False
) -> BillingAccount:
    """
    Load an account, raising ``AccountNotFoundError`` if it does not exist.

    With ``for_update`` the account row stays locked until the session's
    transaction ends, so capacity reads that follow see every concurrent
    writer's committed result. SQLite ignores ``FOR UPDATE``; there the row is
    rewritten in place, which takes the database write lock instead.
    """
    stmt = select(BillingAccount).where(BillingAccount.id == account_id)
    if for_update:
        if db.get_bind().dialect.name == "sqlite":
            await db.execute(
                update(BillingAccount)
                .where(BillingAccount.id == account_id)
                .values(updated_at=BillingAccount.updated_at)
                .execution_options(synchronize_session=False)
            )
        else:
            stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)
    return account


class AccountService:
    """Service for billing account lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    async def get_account(self, account_id: str, *, for_update: bool = False) -> BillingAccount:
        """Load an account, raising ``AccountNotFoundError`` if it does not exist."""
        return await load_account(self.db, account_id, for_update=for_update)

    async def get_owned_account(self, user_id: str) -> BillingAccount | None:
        result = await self.db.execute(
            select(BillingAccount)
            .where(BillingAccount.owner_user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_account(
        self,
        owner_user_id: str,
        name: str | None = None,
        *,
        plan: str | None = None,
        commit: bool = True,
    ) -> BillingAccount:
        """
        Create the account a user owns, with the owner occupying the first seat.

        New signups start on the trial plan with ``trial_ends_at = now +
        trial_days``. Passing an explicit non-trial ``plan`` creates the
        account without a trial window. Signing up twice returns the
        existing account.
        """
        existing = await self.get_owned_account(owner_user_id)
        if existing is not None:
            return existing

        cfg = self.settings.entitlements
        plan = plan or cfg.trial_plan
        get_plan_limits(plan)
        now = self.clock()

        account = BillingAccount(
            owner_user_id=owner_user_id,
            name=name,
            plan=plan,
            trial_ends_at=now + timedelta(days=cfg.trial_days) if plan == cfg.trial_plan else None,
            uploaded_this_month=0,
            upload_counter_reset_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(account)
        await self.db.flush()

        self.db.add(
            AccountMember(
                account_id=account.id,
                user_id=owner_user_id,
                role=AccountRole.OWNER.value,
                can_upload=True,
                created_at=now,
            )
        )
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()

        log_audit_event(
            "account.created",
            account_id=account.id,
            user_id=owner_user_id,
            plan=plan,
            trial_ends_at=account.trial_ends_at.isoformat() if account.trial_ends_at else None,
        )
        return account

    async def apply_plan_change(
        self,
        account_id: str,
        plan: str,
        *,
        trial_ends_at: datetime | None = _UNSET,
        subscription_ends_at: datetime | None = _UNSET,
    ) -> BillingAccount:
        """
        Apply a plan/period change reported by the billing provider.

        Omitted timestamps keep their stored value. When the new plan has
        fewer seats, the oldest pending invites beyond capacity are expired;
        when it no longer allows shared access, the account's link is revoked.
        """
        new_limits = get_plan_limits(plan)
        account = await self.get_account(account_id, for_update=True)
        previous_plan = account.plan
        now = self.clock()

        account.plan = plan
        if trial_ends_at is not _UNSET:
            account.trial_ends_at = trial_ends_at
        if subscription_ends_at is not _UNSET:
            account.subscription_ends_at = subscription_ends_at
        account.updated_at = now
        await self.db.flush()

        expired_invites = await self._expire_invites_over_capacity(account, new_limits.max_seats, now)

        revoked_links = 0
        if not new_limits.allows_account_link:
            result = await self.db.execute(
                update(AccountLink)
                .where(
                    AccountLink.primary_account_id == account_id,
                    AccountLink.status.in_([LinkStatus.ACTIVE.value, LinkStatus.PENDING.value]),
                )
                .values(status=LinkStatus.REVOKED.value, revoked_at=now)
                .execution_options(synchronize_session=False)
            )
            revoked_links = result.rowcount or 0

        await self.db.commit()

        log_audit_event(
            "account.plan_changed",
            account_id=account_id,
            previous_plan=previous_plan,
            plan=plan,
            expired_invites=expired_invites,
            revoked_links=revoked_links,
        )
        return account

    async def _expire_invites_over_capacity(
        self, account: BillingAccount, base_seats: int, now: datetime
    ) -> int:
        addon_result = await self.db.execute(
            select(Entitlement.value_int).where(
                Entitlement.account_id == account.id, Entitlement.key == ADDON_SEATS_KEY
            )
        )
        total_seats = base_seats + (addon_result.scalar_one_or_none() or 0)

        used_result = await self.db.execute(
            select(func.count()).select_from(AccountMember).where(AccountMember.account_id == account.id)
        )
        used_seats = used_result.scalar_one()

        pending_result = await self.db.execute(
            select(AccountInvite)
            .where(
                AccountInvite.account_id == account.id,
                AccountInvite.status == InviteStatus.PENDING.value,
                AccountInvite.expires_at > now,
            )
            .order_by(AccountInvite.created_at.desc())
        )
        pending = list(pending_result.scalars().all())

        capacity = max(total_seats - used_seats, 0)
        # Newest invites keep their reservation
        to_expire = pending[capacity:]
        for invite in to_expire:
            invite.status = InviteStatus.EXPIRED.value
            logger.info(
                "Expired invite after seat reduction",
                account_id=account.id,
                invite_id=invite.id,
                email=invite.email,
            )
        if to_expire:
            await self.db.flush()
        return len(to_expire)

    async def remove_member(self, account_id: str, user_id: str) -> bool:
        """Remove a non-owner member, freeing their seat."""
        result = await self.db.execute(
            select(AccountMember).where(
                AccountMember.account_id == account_id, AccountMember.user_id == user_id
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            return False
        if member.role == AccountRole.OWNER.value:
            raise MemberRemovalError(
                "The account owner cannot be removed", account_id=account_id, user_id=user_id
            )

        await self.db.delete(member)
        await self.db.commit()
        log_audit_event("account.member_removed", account_id=account_id, user_id=user_id)
        return True

    async def delete_account(self, account_id: str) -> None:
        """Delete an account and everything it owns."""
        await self.get_account(account_id)

        await self.db.execute(
            delete(LifecycleNotification).where(LifecycleNotification.account_id == account_id)
        )
        await self.db.execute(
            delete(AccountLink).where(
                or_(
                    AccountLink.primary_account_id == account_id,
                    AccountLink.linked_account_id == account_id,
                )
            )
        )
        await self.db.execute(delete(Entitlement).where(Entitlement.account_id == account_id))
        await self.db.execute(delete(AccountInvite).where(AccountInvite.account_id == account_id))
        await self.db.execute(delete(AccountMember).where(AccountMember.account_id == account_id))
        await self.db.execute(delete(BillingAccount).where(BillingAccount.id == account_id))
        await self.db.commit()

        log_audit_event("account.deleted", account_id=account_id)


__all__ = ["AccountService", "load_account"]
