"""
Seat pool manager.

An account's seats are its plan's base seat count plus purchased add-on
seats. Members occupy seats; pending, unexpired invites reserve them. The
invariant ``used + pending <= total`` holds after every operation, so an
invite accepted while still pending always finds its reserved seat.
"""

import secrets
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docvault.entitlements.accounts import load_account
from docvault.entitlements.exceptions import InviteNotFoundError
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
    LinkStatus,
)
from docvault.entitlements.plans import get_plan_limits
from docvault.entitlements.protocols import UserDirectory
from docvault.entitlements.schemas import (
    AccountDetails,
    Decision,
    DenyReason,
    InviteView,
    MemberView,
)
from docvault.entitlements.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SeatPoolManager:
    """Seat accounting, invites and add-on seats for one account at a time."""

    def __init__(
        self,
        db: AsyncSession,
        user_directory: UserDirectory | None = None,
        *,
        settings: Settings | None = None,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.user_directory = user_directory
        self.settings = settings or get_settings()
        self.clock = clock

    # ========================================
    # Seat counts
    # ========================================

    async def _get_account(self, account_id: str, *, for_update: bool = False) -> BillingAccount:
        return await load_account(self.db, account_id, for_update=for_update)

    async def _release_lock(self) -> None:
        """End the transaction holding the account row lock without writing anything."""
        await self.db.commit()

    async def addon_seats(self, account_id: str) -> int:
        result = await self.db.execute(
            select(Entitlement.value_int).where(
                Entitlement.account_id == account_id, Entitlement.key == ADDON_SEATS_KEY
            )
        )
        return result.scalar_one_or_none() or 0

    async def total_seats(self, account_id: str) -> int:
        """Base seats of the account's plan plus purchased add-on seats."""
        account = await self._get_account(account_id)
        return get_plan_limits(account.plan).max_seats + await self.addon_seats(account_id)

    async def used_seats(self, account_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(AccountMember).where(AccountMember.account_id == account_id)
        )
        return result.scalar_one()

    async def pending_seats(
        self,
        account_id: str,
        now: datetime | None = None,
        *,
        exclude_invite_id: str | None = None,
    ) -> int:
        """Count pending invites whose expiry is still in the future."""
        now = now or self.clock()
        stmt = (
            select(func.count())
            .select_from(AccountInvite)
            .where(
                AccountInvite.account_id == account_id,
                AccountInvite.status == InviteStatus.PENDING.value,
                AccountInvite.expires_at > now,
            )
        )
        if exclude_invite_id is not None:
            stmt = stmt.where(AccountInvite.id != exclude_invite_id)
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def can_invite_more(self, account_id: str) -> bool:
        """True iff ``used + pending < total``."""
        now = self.clock()
        total = await self.total_seats(account_id)
        used = await self.used_seats(account_id)
        pending = await self.pending_seats(account_id, now)
        return used + pending < total

    # ========================================
    # Invites
    # ========================================

    async def create_invite(
        self,
        account_id: str,
        email: str,
        invited_by: str,
        *,
        role: AccountRole = AccountRole.MEMBER,
        can_upload: bool = True,
    ) -> AccountInvite | Decision:
        """
        Reserve a seat for ``email``.

        Returns the new invite, or a deny decision when no seat is free or the
        address already holds an unexpired invite.
        """
        now = self.clock()
        email = normalize_email(email)

        # Serialize seat reservation per account
        account = await self._get_account(account_id, for_update=True)
        plan = account.plan

        existing = await self.db.execute(
            select(AccountInvite.id).where(
                AccountInvite.account_id == account_id,
                AccountInvite.email == email,
                AccountInvite.status == InviteStatus.PENDING.value,
                AccountInvite.expires_at > now,
            )
        )
        if existing.first() is not None:
            await self._release_lock()
            return Decision.deny(DenyReason.ALREADY_INVITED, plan=plan, email=email)

        total = get_plan_limits(plan).max_seats + await self.addon_seats(account_id)
        used = await self.used_seats(account_id)
        pending = await self.pending_seats(account_id, now)
        if used + pending >= total:
            await self._release_lock()
            logger.info(
                "Invite denied, no seats available",
                account_id=account_id,
                total_seats=total,
                used_seats=used,
                pending_seats=pending,
            )
            return Decision.deny(
                DenyReason.NO_SEATS_AVAILABLE,
                limit=total,
                current=used + pending,
                plan=plan,
            )

        invite = AccountInvite(
            account_id=account_id,
            email=email,
            role=role.value,
            can_upload=can_upload,
            token=secrets.token_hex(32),
            status=InviteStatus.PENDING.value,
            invited_by=invited_by,
            created_at=now,
            expires_at=now + timedelta(days=self.settings.entitlements.invite_expiry_days),
        )
        self.db.add(invite)
        await self.db.commit()

        log_audit_event(
            "invite.created",
            account_id=account_id,
            user_id=invited_by,
            resource_type="invite",
            resource_id=invite.id,
            email=email,
        )
        return invite

    async def _owns_shared_account(self, user_id: str) -> bool:
        """Whether the user owns an account that other people already share."""
        result = await self.db.execute(
            select(BillingAccount.id).where(BillingAccount.owner_user_id == user_id)
        )
        own_account_id = result.scalar_one_or_none()
        if own_account_id is None:
            return False

        members = await self.db.execute(
            select(func.count())
            .select_from(AccountMember)
            .where(AccountMember.account_id == own_account_id, AccountMember.user_id != user_id)
        )
        if members.scalar_one() > 0:
            return True

        links = await self.db.execute(
            select(func.count())
            .select_from(AccountLink)
            .where(
                AccountLink.primary_account_id == own_account_id,
                AccountLink.status == LinkStatus.ACTIVE.value,
            )
        )
        return links.scalar_one() > 0

    async def accept_invite(self, token: str, user_id: str) -> AccountMember | Decision:
        """
        Turn a pending invite into a member.

        Capacity is re-checked under a lock on the account row, excluding the
        invite being accepted; flipping the invite and inserting the member
        happen in the same transaction.
        """
        now = self.clock()

        result = await self.db.execute(
            select(AccountInvite)
            .where(AccountInvite.token == token)
            .execution_options(populate_existing=True)
        )
        invite = result.scalar_one_or_none()
        if invite is None or invite.status == InviteStatus.ACCEPTED.value:
            return Decision.deny(DenyReason.TOKEN_NOT_FOUND)
        if invite.status == InviteStatus.EXPIRED.value:
            return Decision.deny(DenyReason.TOKEN_EXPIRED)
        if invite.expires_at <= now:
            await self.db.execute(
                update(AccountInvite)
                .where(
                    AccountInvite.id == invite.id,
                    AccountInvite.status == InviteStatus.PENDING.value,
                )
                .values(status=InviteStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            return Decision.deny(DenyReason.TOKEN_EXPIRED, expired_at=invite.expires_at.isoformat())

        if self.user_directory is None:
            raise RuntimeError("accept_invite requires a user directory")
        user_email = await self.user_directory.get_email(user_id)
        if user_email is None or normalize_email(user_email) != invite.email:
            return Decision.deny(DenyReason.EMAIL_MISMATCH)

        account_id = invite.account_id
        account = await self._get_account(account_id, for_update=True)
        plan = account.plan

        if account.owner_user_id == user_id or await self._owns_shared_account(user_id):
            await self._release_lock()
            return Decision.deny(DenyReason.ALREADY_PRIMARY_OF_OWN_ACCOUNT)

        already = await self.db.execute(
            select(AccountMember.id).where(
                AccountMember.account_id == account_id, AccountMember.user_id == user_id
            )
        )
        if already.first() is not None:
            await self._release_lock()
            return Decision.deny(DenyReason.ALREADY_MEMBER)

        total = get_plan_limits(plan).max_seats + await self.addon_seats(account_id)
        used = await self.used_seats(account_id)
        pending_others = await self.pending_seats(account_id, now, exclude_invite_id=invite.id)
        if used + pending_others >= total:
            await self._release_lock()
            return Decision.deny(
                DenyReason.NO_SEATS_AVAILABLE,
                limit=total,
                current=used + pending_others,
                plan=plan,
            )

        flipped = await self.db.execute(
            update(AccountInvite)
            .where(
                AccountInvite.id == invite.id,
                AccountInvite.status == InviteStatus.PENDING.value,
            )
            .values(status=InviteStatus.ACCEPTED.value, accepted_at=now)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            await self._release_lock()
            return Decision.deny(DenyReason.TOKEN_NOT_FOUND)

        member = AccountMember(
            account_id=account_id,
            user_id=user_id,
            role=invite.role,
            can_upload=invite.can_upload,
            created_at=now,
        )
        self.db.add(member)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return Decision.deny(DenyReason.ALREADY_MEMBER)

        log_audit_event(
            "invite.accepted",
            account_id=account_id,
            user_id=user_id,
            resource_type="invite",
            resource_id=invite.id,
        )
        return member

    async def revoke_invite(self, account_id: str, invite_id: str) -> None:
        """Expire a pending invite, releasing its seat reservation."""
        result = await self.db.execute(
            update(AccountInvite)
            .where(
                AccountInvite.id == invite_id,
                AccountInvite.account_id == account_id,
                AccountInvite.status == InviteStatus.PENDING.value,
            )
            .values(status=InviteStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InviteNotFoundError(invite_id)
        await self.db.commit()
        log_audit_event(
            "invite.revoked",
            account_id=account_id,
            resource_type="invite",
            resource_id=invite_id,
        )

    async def expire_stale_invites(self, now: datetime | None = None) -> int:
        """Mark every pending invite past its expiry as expired."""
        now = now or self.clock()
        result = await self.db.execute(
            update(AccountInvite)
            .where(
                AccountInvite.status == InviteStatus.PENDING.value,
                AccountInvite.expires_at <= now,
            )
            .values(status=InviteStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        expired = result.rowcount or 0
        if expired:
            logger.info("Expired stale invites", count=expired)
        return expired

    # ========================================
    # Add-on seats
    # ========================================

    async def add_addon_seats(self, account_id: str, seats: int) -> int:
        """
        Add purchased seats with an atomic increment-or-insert.

        Concurrent purchases never lose an update. Returns the new add-on total.
        """
        if seats <= 0:
            raise ValueError("seats must be positive")
        await self._get_account(account_id)

        now = self.clock()
        dialect = self.db.get_bind().dialect.name
        table = Entitlement.__table__

        if dialect in ("postgresql", "sqlite"):
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(table).values(
                account_id=account_id,
                key=ADDON_SEATS_KEY,
                value_int=seats,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.account_id, table.c.key],
                set_={
                    "value_int": func.coalesce(table.c.value_int, 0) + seats,
                    "updated_at": now,
                },
            )
            await self.db.execute(stmt)
        else:
            result = await self.db.execute(
                update(Entitlement)
                .where(Entitlement.account_id == account_id, Entitlement.key == ADDON_SEATS_KEY)
                .values(value_int=func.coalesce(Entitlement.value_int, 0) + seats, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.add(
                    Entitlement(account_id=account_id, key=ADDON_SEATS_KEY, value_int=seats)
                )

        await self.db.commit()
        total = await self.addon_seats(account_id)
        log_audit_event(
            "seats.addon_purchased",
            account_id=account_id,
            seats_added=seats,
            addon_seats=total,
        )
        return total

    # ========================================
    # Views
    # ========================================

    async def get_account_details(self, account_id: str) -> AccountDetails:
        now = self.clock()
        account = await self._get_account(account_id)
        total = get_plan_limits(account.plan).max_seats + await self.addon_seats(account_id)

        members_result = await self.db.execute(
            select(AccountMember)
            .where(AccountMember.account_id == account_id)
            .order_by(AccountMember.created_at)
        )
        members = list(members_result.scalars().all())

        invites_result = await self.db.execute(
            select(AccountInvite)
            .where(
                AccountInvite.account_id == account_id,
                AccountInvite.status == InviteStatus.PENDING.value,
                AccountInvite.expires_at > now,
            )
            .order_by(AccountInvite.created_at)
        )
        invites = list(invites_result.scalars().all())

        return AccountDetails(
            account_id=account_id,
            plan=account.plan,
            total_seats=total,
            used_seats=len(members),
            pending_seats=len(invites),
            available_seats=max(total - len(members) - len(invites), 0),
            members=[MemberView.model_validate(m) for m in members],
            pending_invites=[InviteView.model_validate(i) for i in invites],
        )


__all__ = ["SeatPoolManager", "normalize_email"]
