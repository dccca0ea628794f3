"""
Account link resolution and shared-access management.

A primary account may share its plan and quota pool with exactly one other
account. While the link is active, the linked party's effective account is
the primary's, and both accounts count against one pool.
"""

import secrets
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docvault.entitlements.accounts import AccountService
from docvault.entitlements.exceptions import (
    AccountNotFoundError,
    DataInvariantError,
    LinkInvariantError,
)
from docvault.entitlements.lifecycle import Clock, system_clock
from docvault.entitlements.logging import log_audit_event
from docvault.entitlements.models import (
    AccountLink,
    AccountMember,
    BillingAccount,
    LinkStatus,
)
from docvault.entitlements.plans import get_plan_limits
from docvault.entitlements.protocols import UserDirectory
from docvault.entitlements.schemas import Decision, DenyReason, LinkView
from docvault.entitlements.seats import normalize_email
from docvault.entitlements.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EffectiveAccount:
    """The account whose plan and pool govern a user's requests."""

    user_id: str
    account: BillingAccount
    own_account_id: str | None
    is_linked_party: bool = False
    link_id: str | None = None

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def counter_account_id(self) -> str:
        """Account whose monthly counter the user's uploads increment."""
        return self.own_account_id or self.account.id


class AccountLinkResolver:
    """Resolves effective accounts and pool partners from active links."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_account(self, account_id: str) -> BillingAccount | None:
        result = await self.db.execute(
            select(BillingAccount)
            .where(BillingAccount.id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def active_link_for_linked_user(self, user_id: str) -> AccountLink | None:
        result = await self.db.execute(
            select(AccountLink).where(
                AccountLink.linked_user_id == user_id,
                AccountLink.status == LinkStatus.ACTIVE.value,
            )
        )
        links = list(result.scalars().all())
        if len(links) > 1:
            raise LinkInvariantError(
                "User is the linked party of more than one active link",
                link_ids=[link.id for link in links],
                user_id=user_id,
            )
        return links[0] if links else None

    async def active_link_for_primary(self, account_id: str) -> AccountLink | None:
        result = await self.db.execute(
            select(AccountLink).where(
                AccountLink.primary_account_id == account_id,
                AccountLink.status == LinkStatus.ACTIVE.value,
            )
        )
        links = list(result.scalars().all())
        if len(links) > 1:
            raise LinkInvariantError(
                "Account is the primary of more than one active link",
                link_ids=[link.id for link in links],
                account_id=account_id,
            )
        return links[0] if links else None

    async def active_link_for_linked_account(self, account_id: str) -> AccountLink | None:
        result = await self.db.execute(
            select(AccountLink).where(
                AccountLink.linked_account_id == account_id,
                AccountLink.status == LinkStatus.ACTIVE.value,
            )
        )
        links = list(result.scalars().all())
        if len(links) > 1:
            raise LinkInvariantError(
                "Account is the linked party of more than one active link",
                link_ids=[link.id for link in links],
                account_id=account_id,
            )
        return links[0] if links else None

    async def is_linked_account(self, account: BillingAccount) -> bool:
        """Whether the account, or its owner, is the linked end of an active link."""
        if await self.active_link_for_linked_account(account.id) is not None:
            return True
        return await self.active_link_for_linked_user(account.owner_user_id) is not None

    async def resolve(self, user_id: str) -> EffectiveAccount:
        """
        Resolve the effective account for a user.

        Order: an active link where the user is the linked party yields the
        primary account; otherwise the account the user owns; otherwise the
        account the user is a member of.
        """
        result = await self.db.execute(
            select(BillingAccount)
            .where(BillingAccount.owner_user_id == user_id)
            .execution_options(populate_existing=True)
        )
        owned = result.scalar_one_or_none()

        link = await self.active_link_for_linked_user(user_id)
        if link is not None:
            primary = await self._load_account(link.primary_account_id)
            if primary is None:
                raise DataInvariantError(
                    "Active link points at a missing primary account",
                    context={"link_id": link.id, "primary_account_id": link.primary_account_id},
                )
            return EffectiveAccount(
                user_id=user_id,
                account=primary,
                own_account_id=owned.id if owned else link.linked_account_id,
                is_linked_party=True,
                link_id=link.id,
            )

        if owned is not None:
            return EffectiveAccount(user_id=user_id, account=owned, own_account_id=owned.id)

        membership = await self.db.execute(
            select(AccountMember.account_id)
            .where(AccountMember.user_id == user_id)
            .order_by(AccountMember.created_at)
            .limit(1)
        )
        member_account_id = membership.scalar_one_or_none()
        if member_account_id is not None:
            account = await self._load_account(member_account_id)
            if account is not None:
                return EffectiveAccount(user_id=user_id, account=account, own_account_id=None)

        raise AccountNotFoundError(f"No billing account for user {user_id}", user_id=user_id)

    async def is_linked_party(self, user_id: str) -> bool:
        return await self.active_link_for_linked_user(user_id) is not None

    async def pool_partner_ids(self, account_id: str) -> list[str]:
        """Accounts sharing a quota pool with ``account_id``, in either link direction."""
        result = await self.db.execute(
            select(AccountLink).where(
                AccountLink.status == LinkStatus.ACTIVE.value,
                or_(
                    AccountLink.primary_account_id == account_id,
                    AccountLink.linked_account_id == account_id,
                ),
            )
        )
        links = list(result.scalars().all())

        as_primary = [link for link in links if link.primary_account_id == account_id]
        as_linked = [link for link in links if link.linked_account_id == account_id]
        if len(as_primary) > 1 or len(as_linked) > 1:
            raise LinkInvariantError(
                "Account participates in more than one active link",
                link_ids=[link.id for link in links],
                account_id=account_id,
            )

        partners: list[str] = []
        for link in links:
            other = (
                link.linked_account_id
                if link.primary_account_id == account_id
                else link.primary_account_id
            )
            if other and other != account_id and other not in partners:
                partners.append(other)
        return partners


class AccountLinkService:
    """Create, accept, revoke and list shared-access links."""

    def __init__(
        self,
        db: AsyncSession,
        user_directory: UserDirectory,
        *,
        settings: Settings | None = None,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.user_directory = user_directory
        self.settings = settings or get_settings()
        self.clock = clock
        self.resolver = AccountLinkResolver(db)
        self.accounts = AccountService(db, self.settings, clock)

    def _token_expiry(self):
        return self.clock() + timedelta(days=self.settings.entitlements.link_token_expiry_days)

    async def _release_lock(self) -> None:
        """End the transaction holding the primary account's row lock."""
        await self.db.commit()

    async def create_link_invitation(
        self, primary_account_id: str, email: str, invited_by: str | None = None
    ) -> AccountLink | Decision:
        """
        Invite ``email`` to share the primary account's plan and pool.

        A revoked or expired invitation for the same address is reactivated
        with a fresh token. An account that is itself the linked end of an
        active link cannot invite; links never chain.
        """
        now = self.clock()
        email = normalize_email(email)
        account = await self.accounts.get_account(primary_account_id, for_update=True)
        plan = account.plan

        if not get_plan_limits(plan).allows_account_link:
            await self._release_lock()
            return Decision.deny(DenyReason.LINKING_NOT_ALLOWED, plan=plan)
        if await self.resolver.is_linked_account(account):
            await self._release_lock()
            return Decision.deny(DenyReason.LINK_LIMIT_REACHED, plan=plan)

        result = await self.db.execute(
            select(AccountLink)
            .where(AccountLink.primary_account_id == primary_account_id)
            .order_by(AccountLink.invited_at.desc())
            .execution_options(populate_existing=True)
        )
        links = list(result.scalars().all())

        reusable: AccountLink | None = None
        for link in links:
            open_pending = link.status == LinkStatus.PENDING.value and link.token_expires_at > now
            if link.linked_email == email:
                if link.status == LinkStatus.ACTIVE.value:
                    await self._release_lock()
                    return Decision.deny(DenyReason.ALREADY_MEMBER, plan=plan)
                if open_pending:
                    await self._release_lock()
                    return Decision.deny(DenyReason.ALREADY_INVITED, plan=plan)
                reusable = reusable or link
            elif link.status == LinkStatus.ACTIVE.value or open_pending:
                await self._release_lock()
                return Decision.deny(DenyReason.LINK_LIMIT_REACHED, plan=plan)

        if reusable is not None:
            link = reusable
            link.status = LinkStatus.PENDING.value
            link.token = secrets.token_hex(32)
            link.token_expires_at = self._token_expiry()
            link.invited_at = now
            link.linked_user_id = None
            link.linked_account_id = None
            link.accepted_at = None
            link.revoked_at = None
            action = "link.reactivated"
        else:
            link = AccountLink(
                primary_account_id=primary_account_id,
                linked_email=email,
                status=LinkStatus.PENDING.value,
                token=secrets.token_hex(32),
                token_expires_at=self._token_expiry(),
                invited_at=now,
            )
            self.db.add(link)
            action = "link.invited"

        await self.db.commit()
        log_audit_event(
            action,
            account_id=primary_account_id,
            user_id=invited_by,
            resource_type="account_link",
            resource_id=link.id,
            email=email,
        )
        return link

    async def _check_can_join(
        self, primary: BillingAccount, user_id: str, own: BillingAccount | None
    ) -> Decision | None:
        """Deny reasons for ``user_id`` joining ``primary``'s pool, or None."""
        if primary.owner_user_id == user_id:
            return Decision.deny(DenyReason.ALREADY_PRIMARY_OF_OWN_ACCOUNT)
        if not get_plan_limits(primary.plan).allows_account_link:
            return Decision.deny(DenyReason.LINKING_NOT_ALLOWED, plan=primary.plan)

        # One link per account, in either role
        if await self.resolver.active_link_for_primary(primary.id) is not None:
            return Decision.deny(DenyReason.LINK_LIMIT_REACHED)
        if await self.resolver.is_linked_account(primary):
            return Decision.deny(DenyReason.LINK_LIMIT_REACHED)
        if await self.resolver.active_link_for_linked_user(user_id) is not None:
            return Decision.deny(DenyReason.LINK_LIMIT_REACHED)

        if own is not None:
            if await self.resolver.active_link_for_primary(own.id) is not None:
                return Decision.deny(DenyReason.ALREADY_PRIMARY_OF_OWN_ACCOUNT)
            if await self.resolver.active_link_for_linked_account(own.id) is not None:
                return Decision.deny(DenyReason.LINK_LIMIT_REACHED)
        return None

    async def accept_link(self, token: str, user_id: str) -> AccountLink | Decision:
        """Accept a link invitation as ``user_id``, activating the shared pool."""
        now = self.clock()

        result = await self.db.execute(
            select(AccountLink)
            .where(AccountLink.token == token)
            .execution_options(populate_existing=True)
        )
        link = result.scalar_one_or_none()
        if link is None or link.status == LinkStatus.REVOKED.value:
            return Decision.deny(DenyReason.TOKEN_NOT_FOUND)
        if link.status == LinkStatus.ACTIVE.value:
            if link.linked_user_id == user_id:
                return link
            return Decision.deny(DenyReason.TOKEN_NOT_FOUND)
        if link.status == LinkStatus.EXPIRED.value:
            return Decision.deny(DenyReason.TOKEN_EXPIRED)
        if link.token_expires_at <= now:
            await self.db.execute(
                update(AccountLink)
                .where(AccountLink.id == link.id, AccountLink.status == LinkStatus.PENDING.value)
                .values(status=LinkStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return Decision.deny(DenyReason.TOKEN_EXPIRED)

        user_email = await self.user_directory.get_email(user_id)
        if user_email is None or normalize_email(user_email) != link.linked_email:
            return Decision.deny(DenyReason.EMAIL_MISMATCH)

        link_id = link.id
        primary_account_id = link.primary_account_id

        primary = await self.accounts.get_account(primary_account_id, for_update=True)
        own = await self.accounts.get_owned_account(user_id)
        denied = await self._check_can_join(primary, user_id, own)
        if denied is not None:
            await self._release_lock()
            return denied

        # Claim the invitation before writing anything else, so a lost race
        # leaves nothing to undo
        claimed = await self.db.execute(
            update(AccountLink)
            .where(AccountLink.id == link_id, AccountLink.status == LinkStatus.PENDING.value)
            .values(status=LinkStatus.ACTIVE.value, linked_user_id=user_id, accepted_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self._release_lock()
            return Decision.deny(DenyReason.TOKEN_NOT_FOUND)

        if own is None:
            own = await self.accounts.create_account(
                user_id, plan=self.settings.entitlements.read_only_plan, commit=False
            )
        own_account_id = own.id
        await self.db.execute(
            update(AccountLink)
            .where(AccountLink.id == link_id)
            .values(linked_account_id=own_account_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        log_audit_event(
            "link.accepted",
            account_id=primary_account_id,
            user_id=user_id,
            resource_type="account_link",
            resource_id=link_id,
            linked_account_id=own_account_id,
        )
        refreshed = await self.db.execute(
            select(AccountLink)
            .where(AccountLink.id == link_id)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def revoke_link(self, primary_account_id: str) -> int:
        """Revoke the account's active or pending link; the pool splits immediately."""
        now = self.clock()
        result = await self.db.execute(
            update(AccountLink)
            .where(
                AccountLink.primary_account_id == primary_account_id,
                AccountLink.status.in_([LinkStatus.ACTIVE.value, LinkStatus.PENDING.value]),
            )
            .values(status=LinkStatus.REVOKED.value, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        revoked = result.rowcount or 0
        if revoked:
            log_audit_event(
                "link.revoked",
                account_id=primary_account_id,
                resource_type="account_link",
                revoked=revoked,
            )
        return revoked

    async def list_links(self, primary_account_id: str) -> list[LinkView]:
        """List the account's links; pending links past their expiry read as expired."""
        now = self.clock()
        result = await self.db.execute(
            select(AccountLink)
            .where(AccountLink.primary_account_id == primary_account_id)
            .order_by(AccountLink.invited_at.desc())
        )
        views = []
        for link in result.scalars().all():
            view = LinkView.model_validate(link)
            if link.status == LinkStatus.PENDING.value and link.token_expires_at <= now:
                view = view.model_copy(update={"status": LinkStatus.EXPIRED.value})
            views.append(view)
        return views


__all__ = ["AccountLinkResolver", "AccountLinkService", "EffectiveAccount"]
