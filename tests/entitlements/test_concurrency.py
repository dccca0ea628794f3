"""
Races between independent sessions.

Each coroutine below runs in its own session on a file-backed SQLite
database, so they interleave on separate connections and transactions the
way concurrent requests do in production.
"""

import asyncio
import secrets
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from docvault.entitlements.gate import EnforcementGate
from docvault.entitlements.models import (
    AccountInvite,
    AccountLink,
    AccountMember,
    AccountRole,
    BillingAccount,
    InviteStatus,
    LinkStatus,
)
from docvault.entitlements.schemas import DenyReason
from docvault.entitlements.seats import SeatPoolManager
from docvault.entitlements.usage import CounterResetScheduler

pytestmark = [pytest.mark.concurrency, pytest.mark.asyncio]

LAST_MONTH = datetime(2026, 2, 10, 9, 0, tzinfo=UTC)


@pytest.fixture
def file_gate(file_session_factory, storage, directory, test_settings, clock, metrics):
    return EnforcementGate(
        storage,
        directory,
        session_factory=file_session_factory,
        settings=test_settings,
        clock=clock,
        metrics=metrics,
    )


def _manager(session, directory, test_settings, clock) -> SeatPoolManager:
    return SeatPoolManager(session, directory, settings=test_settings, clock=clock)


async def _seed_account(
    session_factory,
    owner_user_id: str,
    now: datetime,
    plan: str = "family",
    *,
    uploaded: int = 0,
    reset_at: datetime | None = None,
    members: tuple[str, ...] = (),
) -> str:
    async with session_factory() as session:
        account = BillingAccount(
            owner_user_id=owner_user_id,
            plan=plan,
            uploaded_this_month=uploaded,
            upload_counter_reset_at=reset_at or now,
            created_at=now - timedelta(days=90),
            updated_at=now,
        )
        session.add(account)
        await session.flush()
        session.add(
            AccountMember(
                account_id=account.id,
                user_id=owner_user_id,
                role=AccountRole.OWNER.value,
                created_at=now,
            )
        )
        for user_id in members:
            session.add(
                AccountMember(
                    account_id=account.id,
                    user_id=user_id,
                    role=AccountRole.MEMBER.value,
                    created_at=now,
                )
            )
        await session.commit()
        return account.id


async def _seed_link(
    session_factory, primary_id: str, linked_id: str, linked_user_id: str, now: datetime
) -> None:
    async with session_factory() as session:
        session.add(
            AccountLink(
                primary_account_id=primary_id,
                linked_email=f"{linked_user_id}@example.com",
                linked_user_id=linked_user_id,
                linked_account_id=linked_id,
                status=LinkStatus.ACTIVE.value,
                token=secrets.token_hex(32),
                token_expires_at=now + timedelta(days=7),
                invited_at=now,
                accepted_at=now,
            )
        )
        await session.commit()


async def _counters(session_factory, *account_ids: str) -> dict[str, int]:
    async with session_factory() as session:
        result = await session.execute(
            select(BillingAccount.id, BillingAccount.uploaded_this_month).where(
                BillingAccount.id.in_(account_ids)
            )
        )
        return {row.id: row.uploaded_this_month for row in result}


async def _count(session_factory, model, **filters) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        return (await session.execute(stmt)).scalar_one()


class TestConcurrentReservations:
    async def test_pool_never_exceeds_its_limit(self, file_gate, file_session_factory, clock):
        # Family limit is 200; the pool starts with 5 uploads left
        primary_id = await _seed_account(
            file_session_factory, "primary-user", clock.now, uploaded=190
        )
        linked_id = await _seed_account(
            file_session_factory, "linked-user", clock.now, plan="free", uploaded=5
        )
        await _seed_link(file_session_factory, primary_id, linked_id, "linked-user", clock.now)

        users = ["primary-user", "linked-user"] * 5
        decisions = await asyncio.gather(*(file_gate.reserve_upload(user) for user in users))

        allowed = sum(1 for decision in decisions if decision.allowed)
        assert all(
            decision.allowed or decision.reason is DenyReason.MONTHLY_UPLOAD_LIMIT
            for decision in decisions
        )
        assert allowed <= 5

        counters = await _counters(file_session_factory, primary_id, linked_id)
        assert sum(counters.values()) == 195 + allowed
        assert sum(counters.values()) <= 200

    async def test_batch_reservations_take_back_their_overflow(
        self, file_gate, file_session_factory, clock
    ):
        account_id = await _seed_account(
            file_session_factory, "solo-user", clock.now, plan="solo", uploaded=44
        )

        decisions = await asyncio.gather(
            *(file_gate.reserve_upload("solo-user", count=4) for _ in range(3))
        )

        allowed = sum(1 for decision in decisions if decision.allowed)
        assert allowed <= 1
        total = (await _counters(file_session_factory, account_id))[account_id]
        assert total == 44 + 4 * allowed
        assert total <= 50


class TestConcurrentSeatOperations:
    async def test_only_one_invite_takes_the_last_seat(
        self, file_session_factory, directory, test_settings, clock
    ):
        # Family plans have four seats; three are taken
        account_id = await _seed_account(
            file_session_factory, "owner-user", clock.now, members=("member-1", "member-2")
        )

        async def invite(email: str):
            async with file_session_factory() as session:
                manager = _manager(session, directory, test_settings, clock)
                result = await manager.create_invite(account_id, email, "owner-user")
                return isinstance(result, AccountInvite), getattr(result, "reason", None)

        outcomes = await asyncio.gather(invite("first@example.com"), invite("second@example.com"))

        assert sorted(created for created, _ in outcomes) == [False, True]
        assert [reason for created, reason in outcomes if not created] == [
            DenyReason.NO_SEATS_AVAILABLE
        ]
        assert await _count(
            file_session_factory, AccountInvite, status=InviteStatus.PENDING.value
        ) == 1

    async def test_same_invite_accepted_twice_adds_one_member(
        self, file_session_factory, directory, test_settings, clock
    ):
        account_id = await _seed_account(
            file_session_factory, "owner-user", clock.now, plan="trial"
        )
        async with file_session_factory() as session:
            invite = await _manager(session, directory, test_settings, clock).create_invite(
                account_id, "guest@example.com", "owner-user"
            )
            token = invite.token
        directory.register("guest-user", "guest@example.com")

        async def accept():
            async with file_session_factory() as session:
                manager = _manager(session, directory, test_settings, clock)
                result = await manager.accept_invite(token, "guest-user")
                return isinstance(result, AccountMember), getattr(result, "reason", None)

        outcomes = await asyncio.gather(accept(), accept())

        assert sorted(joined for joined, _ in outcomes) == [False, True]
        (loser_reason,) = [reason for joined, reason in outcomes if not joined]
        assert loser_reason in (DenyReason.ALREADY_MEMBER, DenyReason.TOKEN_NOT_FOUND)
        # Trial plans have two seats: the owner and the guest
        assert await _count(file_session_factory, AccountMember, account_id=account_id) == 2


class TestResetRacingIncrements:
    async def test_reset_never_clobbers_a_later_increment(
        self, file_gate, file_session_factory, test_settings, metrics, clock
    ):
        account_id = await _seed_account(
            file_session_factory, "owner-user", clock.now, uploaded=40, reset_at=LAST_MONTH
        )

        async def reset() -> int:
            async with file_session_factory() as session:
                scheduler = CounterResetScheduler(session, settings=test_settings, metrics=metrics)
                return await scheduler.ensure_current([account_id], clock.now)

        results = await asyncio.gather(
            reset(),
            file_gate.record_upload("owner-user"),
            file_gate.record_upload("owner-user"),
            reset(),
            file_gate.record_upload("owner-user"),
        )

        assert (await _counters(file_session_factory, account_id))[account_id] == 3
        # At most one explicit reset wins; record_upload may have rolled it over first
        resets = [result for result in results if isinstance(result, int)]
        assert sum(resets) <= 1


class TestCallerSessionIsolation:
    async def test_gate_leaves_the_callers_transaction_open(
        self, file_gate, file_session_factory, clock
    ):
        account_id = await _seed_account(file_session_factory, "owner-user", clock.now)
        await _seed_account(file_session_factory, "legacy-user", clock.now, plan="enterprise")

        async with file_session_factory() as caller:
            caller.add(
                AccountMember(
                    account_id=account_id,
                    user_id="pending-member",
                    role=AccountRole.MEMBER.value,
                    created_at=clock.now,
                )
            )
            await caller.flush()

            allowed = await file_gate.check_can_upload("owner-user")
            failed = await file_gate.check_can_upload("legacy-user")

            assert allowed.allowed
            assert allowed.plan == "family"
            assert failed.reason is DenyReason.TEMPORARILY_UNAVAILABLE
            assert caller.in_transaction()

            await caller.rollback()

        assert await _count(file_session_factory, AccountMember, user_id="pending-member") == 0

    async def test_callers_pending_writes_commit_after_a_gate_call(
        self, file_gate, file_session_factory, clock
    ):
        account_id = await _seed_account(file_session_factory, "owner-user", clock.now)

        async with file_session_factory() as caller:
            caller.add(
                AccountMember(
                    account_id=account_id,
                    user_id="pending-member",
                    role=AccountRole.MEMBER.value,
                    created_at=clock.now,
                )
            )
            await caller.flush()

            status = await file_gate.get_subscription_status("owner-user")
            assert status.current_users == 1
            assert caller.in_transaction()

            await caller.commit()

        assert await _count(file_session_factory, AccountMember, user_id="pending-member") == 1
