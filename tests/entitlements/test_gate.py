"""Tests for the enforcement gate."""

from datetime import timedelta

import pytest

from docvault.entitlements.models import AccountMember, AccountRole
from docvault.entitlements.plans import GIB
from docvault.entitlements.schemas import DenyReason

pytestmark = pytest.mark.unit


class TestUploadGate:
    @pytest.mark.asyncio
    async def test_solo_account_hits_monthly_limit(self, gate, account_factory, reload_account):
        account = await account_factory("solo-user", plan="solo", uploaded=49)

        assert (await gate.check_can_upload("solo-user")).allowed

        await gate.record_upload("solo-user")
        assert (await reload_account(account.id)).uploaded_this_month == 50

        decision = await gate.check_can_upload("solo-user")
        assert decision.denied
        assert decision.reason is DenyReason.MONTHLY_UPLOAD_LIMIT
        assert decision.limit == 50
        assert decision.current == 50
        assert decision.plan == "solo"

    @pytest.mark.asyncio
    async def test_pooled_usage_denies_both_parties(
        self, gate, account_factory, link_factory
    ):
        primary = await account_factory("primary-user", plan="family", uploaded=150)
        linked = await account_factory("linked-user", plan="free", uploaded=60)
        await link_factory(primary, linked)

        for user_id in ("primary-user", "linked-user"):
            decision = await gate.check_can_upload(user_id)
            assert decision.reason is DenyReason.MONTHLY_UPLOAD_LIMIT
            assert decision.limit == 200
            assert decision.current == 210
            assert decision.plan == "family"

    @pytest.mark.asyncio
    async def test_linked_party_reads_primary_plan(self, gate, account_factory, link_factory):
        primary = await account_factory("primary-user", plan="family", uploaded=10)
        linked = await account_factory("linked-user", plan="free")
        await link_factory(primary, linked)

        # The linked user's own plan cannot upload; the primary's can
        decision = await gate.check_can_upload("linked-user")
        assert decision.allowed
        assert decision.context["account_id"] == primary.id

    @pytest.mark.asyncio
    async def test_storage_limit(self, gate, account_factory, storage):
        account = await account_factory("solo-user", plan="solo")
        storage.bytes[account.id] = 5 * GIB

        decision = await gate.check_can_upload("solo-user")

        assert decision.reason is DenyReason.STORAGE_LIMIT
        assert decision.limit == 5 * GIB
        assert decision.current == 5 * GIB

    @pytest.mark.asyncio
    async def test_read_only_plan_denies_without_trial(self, gate, account_factory):
        await account_factory("free-user", plan="free")

        decision = await gate.check_can_upload("free-user")

        assert decision.reason is DenyReason.UPLOAD_NOT_ALLOWED
        assert decision.plan == "free"

    @pytest.mark.asyncio
    async def test_counter_rolls_over_in_new_month(self, gate, account_factory, clock):
        await account_factory(
            "solo-user", plan="solo", uploaded=50, reset_at=clock.now - timedelta(days=31)
        )

        assert (await gate.check_can_upload("solo-user")).allowed

    @pytest.mark.asyncio
    async def test_member_uploads_count_against_the_account(
        self, gate, async_db, account_factory, reload_account, clock
    ):
        account = await account_factory("owner-user", plan="family", uploaded=199)
        async_db.add(
            AccountMember(
                account_id=account.id,
                user_id="member-user",
                role=AccountRole.MEMBER.value,
                created_at=clock.now,
            )
        )
        await async_db.commit()

        assert (await gate.check_can_upload("member-user")).allowed
        await gate.record_upload("member-user")

        assert (await reload_account(account.id)).uploaded_this_month == 200
        assert (await gate.check_can_upload("owner-user")).denied


class TestTrialLifecycle:
    @pytest.mark.asyncio
    async def test_active_trial_allows(self, gate, account_factory, clock):
        await account_factory("trial-user", plan="trial", trial_ends_at=clock.now + timedelta(days=5))

        decision = await gate.check_can_upload("trial-user")

        assert decision.allowed
        assert decision.days_remaining == 5
        assert decision.plan == "trial"
        assert "plan" not in decision.context

    @pytest.mark.asyncio
    async def test_grace_period_denies_with_days_remaining(
        self, gate, account_factory, reload_account, clock
    ):
        account = await account_factory(
            "trial-user", plan="trial", trial_ends_at=clock.now - timedelta(days=1)
        )

        decision = await gate.check_can_upload("trial-user")

        assert decision.reason is DenyReason.GRACE_PERIOD
        assert decision.days_remaining == 2
        assert (await reload_account(account.id)).plan == "trial"

    @pytest.mark.asyncio
    async def test_expired_trial_is_downgraded_lazily(
        self, gate, account_factory, reload_account, clock
    ):
        account = await account_factory(
            "trial-user", plan="trial", trial_ends_at=clock.now - timedelta(days=4)
        )

        decision = await gate.check_can_upload("trial-user")

        assert decision.reason is DenyReason.READ_ONLY
        assert decision.plan == "free"
        assert (await reload_account(account.id)).plan == "free"

        # Already downgraded; still read-only
        assert (await gate.check_can_upload("trial-user")).reason is DenyReason.READ_ONLY

    @pytest.mark.asyncio
    async def test_paid_plan_ignores_historical_trial_end(self, gate, account_factory, clock):
        await account_factory(
            "paid-user", plan="family", trial_ends_at=clock.now - timedelta(days=60)
        )

        assert (await gate.check_can_upload("paid-user")).allowed


class TestEmailInboundGate:
    @pytest.mark.asyncio
    async def test_email_inbound_ignores_trial_phase(self, gate, account_factory, clock):
        await account_factory(
            "trial-user", plan="trial", trial_ends_at=clock.now - timedelta(days=1)
        )

        assert (await gate.check_can_upload("trial-user")).reason is DenyReason.GRACE_PERIOD
        assert (await gate.check_can_use_email_inbound("trial-user")).allowed

    @pytest.mark.asyncio
    async def test_email_inbound_ignores_pooled_usage(self, gate, account_factory):
        await account_factory("solo-user", plan="solo", uploaded=50)

        assert (await gate.check_can_use_email_inbound("solo-user")).allowed

    @pytest.mark.asyncio
    async def test_email_inbound_plan_flag(self, gate, account_factory):
        await account_factory("free-user", plan="free")

        decision = await gate.check_can_use_email_inbound("free-user")

        assert decision.reason is DenyReason.EMAIL_INBOUND_NOT_ALLOWED


class TestFailClosed:
    @pytest.mark.asyncio
    async def test_unknown_user(self, gate):
        decision = await gate.check_can_upload("nobody")
        assert decision.reason is DenyReason.ACCOUNT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_plan_is_temporarily_unavailable(self, gate, account_factory):
        await account_factory("legacy-user", plan="enterprise-2019")

        decision = await gate.check_can_upload("legacy-user")

        assert decision.reason is DenyReason.TEMPORARILY_UNAVAILABLE
        assert decision.reason.is_retryable

    @pytest.mark.asyncio
    async def test_storage_provider_failure_denies(self, gate, account_factory, storage):
        await account_factory("solo-user", plan="solo")
        storage.fail = True

        decision = await gate.check_can_upload("solo-user")

        assert decision.reason is DenyReason.TEMPORARILY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_duplicate_active_links_surface_as_invariant_violation(
        self, gate, account_factory, link_factory
    ):
        primary = await account_factory("primary-user", plan="family")
        await link_factory(primary, await account_factory("first-user", plan="free"))
        await link_factory(primary, await account_factory("second-user", plan="free"))

        decision = await gate.check_can_upload("primary-user")

        assert decision.reason is DenyReason.INVARIANT_VIOLATION
        assert not decision.reason.is_retryable

    @pytest.mark.asyncio
    async def test_trial_without_end_is_invariant_violation(self, gate, account_factory):
        await account_factory("broken-user", plan="trial", trial_ends_at=None)

        decision = await gate.check_can_upload("broken-user")

        assert decision.reason is DenyReason.INVARIANT_VIOLATION


class TestReserveUpload:
    @pytest.mark.asyncio
    async def test_reserve_consumes_quota(self, gate, account_factory, reload_account):
        account = await account_factory("solo-user", plan="solo", uploaded=49)

        decision = await gate.reserve_upload("solo-user")

        assert decision.allowed
        assert decision.context["uploads_this_month"] == 50
        assert (await reload_account(account.id)).uploaded_this_month == 50

        denied = await gate.reserve_upload("solo-user")
        assert denied.reason is DenyReason.MONTHLY_UPLOAD_LIMIT
        assert (await reload_account(account.id)).uploaded_this_month == 50

    @pytest.mark.asyncio
    async def test_overflowing_batch_is_rolled_back(self, gate, account_factory, reload_account):
        account = await account_factory("solo-user", plan="solo", uploaded=49)

        decision = await gate.reserve_upload("solo-user", count=2)

        assert decision.reason is DenyReason.MONTHLY_UPLOAD_LIMIT
        assert decision.current == 49
        assert (await reload_account(account.id)).uploaded_this_month == 49

    @pytest.mark.asyncio
    async def test_linked_party_reserves_on_own_counter(
        self, gate, account_factory, link_factory, reload_account
    ):
        primary = await account_factory("primary-user", plan="family", uploaded=100)
        linked = await account_factory("linked-user", plan="free", uploaded=0)
        await link_factory(primary, linked)

        assert (await gate.reserve_upload("linked-user")).allowed

        assert (await reload_account(linked.id)).uploaded_this_month == 1
        assert (await reload_account(primary.id)).uploaded_this_month == 100

    @pytest.mark.asyncio
    async def test_count_must_be_positive(self, gate):
        with pytest.raises(ValueError):
            await gate.reserve_upload("solo-user", count=0)


class TestSubscriptionStatus:
    @pytest.mark.asyncio
    async def test_linked_party_sees_pooled_status(
        self, gate, account_factory, link_factory, storage
    ):
        primary = await account_factory("primary-user", plan="family", uploaded=150)
        linked = await account_factory("linked-user", plan="free", uploaded=60)
        await link_factory(primary, linked)
        storage.bytes[primary.id] = 2 * GIB
        storage.bytes[linked.id] = 1 * GIB

        status = await gate.get_subscription_status("linked-user")

        assert status.plan == "family"
        assert status.is_linked_party is True
        assert status.uploads_this_month == 210
        assert status.storage_used_bytes == 3 * GIB
        assert status.current_users == 2
        assert status.is_upload_disabled is True
        assert status.trial_phase is None

    @pytest.mark.asyncio
    async def test_grace_status(self, gate, account_factory, clock):
        await account_factory(
            "trial-user", plan="trial", trial_ends_at=clock.now - timedelta(days=1)
        )

        status = await gate.get_subscription_status("trial-user")

        assert status.trial_phase == "grace_period"
        assert status.grace_period is True
        assert status.grace_days_remaining == 2
        assert status.is_read_only is False
        assert status.is_upload_disabled is True
