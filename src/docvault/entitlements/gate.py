"""
Enforcement gate.

Single entry point invoked before quota-relevant requests. Resolves the
effective account, applies the trial lifecycle (performing the lazy
downgrade of an expired trial), checks the plan and the pooled usage, and
returns a ``Decision``. Any lookup failure denies; the gate never allows by
default.

Every call runs in a session the gate opens itself, so its commits (lazy
downgrade, counter reset, quota reservation) never end a transaction that
belongs to the request handler.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docvault.entitlements.db import get_session_maker
from docvault.entitlements.exceptions import (
    AccountNotFoundError,
    DataInvariantError,
    UnknownPlanError,
)
from docvault.entitlements.lifecycle import (
    Clock,
    TrialPhase,
    TrialStatus,
    lifecycle_applies,
    resolve_trial_phase,
    system_clock,
)
from docvault.entitlements.links import AccountLinkResolver, EffectiveAccount
from docvault.entitlements.logging import log_audit_event
from docvault.entitlements.metrics import EntitlementMetrics, get_entitlement_metrics
from docvault.entitlements.models import AccountMember, AccountRole, BillingAccount
from docvault.entitlements.plans import PlanLimits, get_plan_limits
from docvault.entitlements.protocols import StorageSizeProvider, UserDirectory
from docvault.entitlements.schemas import (
    AccountDetails,
    Decision,
    DenyReason,
    PoolUsage,
    SubscriptionStatus,
)
from docvault.entitlements.seats import SeatPoolManager
from docvault.entitlements.settings import Settings, get_settings
from docvault.entitlements.usage import QuotaPoolAggregator

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _UploadCheck:
    decision: Decision
    effective: EffectiveAccount | None = None
    limits: PlanLimits | None = None
    usage: PoolUsage | None = None


class EnforcementGate:
    """Allow/deny decisions for uploads, email inbound and seat operations."""

    def __init__(
        self,
        storage_provider: StorageSizeProvider,
        user_directory: UserDirectory | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Clock = system_clock,
        metrics: EntitlementMetrics | None = None,
    ):
        self.storage_provider = storage_provider
        self.user_directory = user_directory
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock
        self.metrics = metrics or get_entitlement_metrics()
        self.grace_period = timedelta(days=self.settings.entitlements.grace_period_days)

    def _session(self) -> AsyncSession:
        factory = self.session_factory or get_session_maker()
        return factory()

    def _aggregator(self, session: AsyncSession) -> QuotaPoolAggregator:
        return QuotaPoolAggregator(
            session, self.storage_provider, settings=self.settings, metrics=self.metrics
        )

    def _seats(self, session: AsyncSession) -> SeatPoolManager:
        return SeatPoolManager(
            session, self.user_directory, settings=self.settings, clock=self.clock
        )

    # ========================================
    # Lifecycle
    # ========================================

    async def _apply_lifecycle(
        self, session: AsyncSession, effective: EffectiveAccount, now: datetime
    ) -> tuple[str, TrialStatus | None]:
        """Return the plan to evaluate against and the trial status, if governed."""
        cfg = self.settings.entitlements
        account = effective.account
        plan = account.plan

        if plan == cfg.trial_plan and account.trial_ends_at is None:
            raise DataInvariantError(
                "Trial account has no trial end", context={"account_id": account.id}
            )
        if not lifecycle_applies(
            plan,
            account.trial_ends_at,
            trial_plan=cfg.trial_plan,
            read_only_plan=cfg.read_only_plan,
        ):
            return plan, None

        status = resolve_trial_phase(account.trial_ends_at, now, self.grace_period)
        if status.phase is TrialPhase.EXPIRED and plan == cfg.trial_plan:
            plan = await self._downgrade_expired_trial(session, account.id, now)
        return plan, status

    async def _downgrade_expired_trial(
        self, session: AsyncSession, account_id: str, now: datetime
    ) -> str:
        cfg = self.settings.entitlements
        result = await session.execute(
            update(BillingAccount)
            .where(BillingAccount.id == account_id, BillingAccount.plan == cfg.trial_plan)
            .values(plan=cfg.read_only_plan, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount:
            log_audit_event(
                "account.trial_downgraded",
                account_id=account_id,
                previous_plan=cfg.trial_plan,
                plan=cfg.read_only_plan,
            )
        return cfg.read_only_plan

    # ========================================
    # Fail-closed wrapper
    # ========================================

    async def _decide(
        self,
        gate: str,
        user_id: str,
        evaluate: Callable[[AsyncSession, str, datetime], Awaitable[Decision]],
    ) -> Decision:
        # Closing the session discards whatever a failed evaluation left behind
        async with self._session() as session:
            try:
                decision = await evaluate(session, user_id, self.clock())
            except AccountNotFoundError:
                decision = Decision.deny(DenyReason.ACCOUNT_NOT_FOUND)
            except UnknownPlanError as exc:
                logger.error(
                    "Stored plan missing from plan catalog",
                    plan=exc.plan,
                    user_id=user_id,
                    gate=gate,
                    alert=True,
                )
                self.metrics.record_unknown_plan(exc.plan)
                decision = Decision.deny(DenyReason.TEMPORARILY_UNAVAILABLE)
            except DataInvariantError as exc:
                logger.error(
                    "Entitlement data invariant violated",
                    user_id=user_id,
                    gate=gate,
                    error_code=exc.error_code,
                    context=exc.context,
                )
                self.metrics.record_invariant_violation(exc.error_code)
                decision = Decision.deny(DenyReason.INVARIANT_VIOLATION, error_code=exc.error_code)
            except Exception:
                logger.exception("Entitlement check failed, denying", user_id=user_id, gate=gate)
                decision = Decision.deny(DenyReason.TEMPORARILY_UNAVAILABLE)

        self.metrics.record_decision(
            gate, decision.allowed, decision.reason.value if decision.reason else None
        )
        if decision.denied:
            logger.info(
                "Entitlement denied",
                gate=gate,
                user_id=user_id,
                reason=decision.reason.value,
                plan=decision.plan,
            )
        return decision

    # ========================================
    # Upload gate
    # ========================================

    async def _check_upload(
        self, session: AsyncSession, user_id: str, now: datetime
    ) -> _UploadCheck:
        effective = await AccountLinkResolver(session).resolve(user_id)
        plan, status = await self._apply_lifecycle(session, effective, now)

        if status is not None and status.phase is TrialPhase.GRACE_PERIOD:
            return _UploadCheck(
                Decision.deny(
                    DenyReason.GRACE_PERIOD,
                    plan=plan,
                    days_remaining=status.grace_days_remaining,
                )
            )
        if status is not None and status.phase is TrialPhase.EXPIRED:
            return _UploadCheck(Decision.deny(DenyReason.READ_ONLY, plan=plan))

        limits = get_plan_limits(plan)
        if not limits.can_upload:
            return _UploadCheck(Decision.deny(DenyReason.UPLOAD_NOT_ALLOWED, plan=plan))

        usage = await self._aggregator(session).aggregate(effective.account_id, now)
        if usage.total_uploads_this_month >= limits.max_uploads_per_month:
            return _UploadCheck(
                Decision.deny(
                    DenyReason.MONTHLY_UPLOAD_LIMIT,
                    limit=limits.max_uploads_per_month,
                    current=usage.total_uploads_this_month,
                    plan=plan,
                )
            )
        if usage.total_storage_bytes >= limits.max_storage_bytes:
            return _UploadCheck(
                Decision.deny(
                    DenyReason.STORAGE_LIMIT,
                    limit=limits.max_storage_bytes,
                    current=usage.total_storage_bytes,
                    plan=plan,
                )
            )

        decision = Decision.allow(
            plan=plan,
            days_remaining=status.days_remaining if status else None,
            account_id=effective.account_id,
            uploads_this_month=usage.total_uploads_this_month,
        )
        return _UploadCheck(decision, effective, limits, usage)

    async def check_can_upload(self, user_id: str) -> Decision:
        """Decide whether ``user_id`` may upload right now."""

        async def evaluate(session: AsyncSession, user_id: str, now: datetime) -> Decision:
            return (await self._check_upload(session, user_id, now)).decision

        return await self._decide("upload", user_id, evaluate)

    async def reserve_upload(self, user_id: str, count: int = 1) -> Decision:
        """
        Check and consume upload quota in one step.

        The counter is incremented and committed first, then the pooled total
        is compared with the limit; on overflow the increment is taken back.
        Concurrent reservations can therefore never push the pool past its
        limit.
        """
        if count <= 0:
            raise ValueError("count must be positive")

        async def evaluate(session: AsyncSession, user_id: str, now: datetime) -> Decision:
            check = await self._check_upload(session, user_id, now)
            if check.decision.denied:
                return check.decision

            counter_account_id = check.effective.counter_account_id
            limit = check.limits.max_uploads_per_month
            aggregator = self._aggregator(session)

            await aggregator.counter.increment(counter_account_id, count)
            await session.commit()

            total = await aggregator.upload_total(check.usage.account_ids)
            if total > limit:
                await aggregator.counter.decrement(counter_account_id, count)
                await session.commit()
                return Decision.deny(
                    DenyReason.MONTHLY_UPLOAD_LIMIT,
                    limit=limit,
                    current=total - count,
                    plan=check.decision.plan,
                )

            logger.debug(
                "Upload quota reserved",
                user_id=user_id,
                account_id=counter_account_id,
                count=count,
                pool_total=total,
            )
            return Decision.allow(
                plan=check.decision.plan,
                account_id=check.effective.account_id,
                uploads_this_month=total,
            )

        return await self._decide("upload_reserve", user_id, evaluate)

    async def record_upload(self, user_id: str, count: int = 1) -> None:
        """Count ``count`` completed uploads against the uploader's own counter."""
        if count <= 0:
            raise ValueError("count must be positive")
        now = self.clock()
        async with self._session() as session:
            effective = await AccountLinkResolver(session).resolve(user_id)
            counter_account_id = effective.counter_account_id
            aggregator = self._aggregator(session)
            await aggregator.scheduler.ensure_current([counter_account_id], now)
            await aggregator.counter.increment(counter_account_id, count)
            await session.commit()

    # ========================================
    # Email inbound gate
    # ========================================

    async def check_can_use_email_inbound(self, user_id: str) -> Decision:
        """
        Binary plan-flag check.

        No trial phase and no pooled usage are consulted: email ingest is a
        feature flag, not a consumable quota.
        """

        async def evaluate(session: AsyncSession, user_id: str, now: datetime) -> Decision:
            effective = await AccountLinkResolver(session).resolve(user_id)
            plan = effective.account.plan
            if not get_plan_limits(plan).can_use_email_inbound:
                return Decision.deny(DenyReason.EMAIL_INBOUND_NOT_ALLOWED, plan=plan)
            return Decision.allow(plan=plan, account_id=effective.account_id)

        return await self._decide("email_inbound", user_id, evaluate)

    # ========================================
    # Status view
    # ========================================

    async def get_subscription_status(self, user_id: str) -> SubscriptionStatus:
        """Plan, lifecycle and pooled usage as displayed to ``user_id``."""
        now = self.clock()
        async with self._session() as session:
            effective = await AccountLinkResolver(session).resolve(user_id)
            plan, status = await self._apply_lifecycle(session, effective, now)
            limits = get_plan_limits(plan)
            usage = await self._aggregator(session).aggregate(effective.account_id, now)

            users_result = await session.execute(
                select(func.count(func.distinct(AccountMember.user_id))).where(
                    AccountMember.account_id.in_(usage.account_ids)
                )
            )
            current_users = users_result.scalar_one()

        phase = status.phase if status else None
        in_grace = phase is TrialPhase.GRACE_PERIOD
        is_read_only = phase is TrialPhase.EXPIRED or not limits.can_upload
        is_upload_disabled = (
            in_grace
            or is_read_only
            or usage.total_uploads_this_month >= limits.max_uploads_per_month
            or usage.total_storage_bytes >= limits.max_storage_bytes
        )

        return SubscriptionStatus(
            plan=plan,
            display_name=limits.display_name,
            is_linked_party=effective.is_linked_party,
            max_uploads_per_month=limits.max_uploads_per_month,
            uploads_this_month=usage.total_uploads_this_month,
            max_storage_bytes=limits.max_storage_bytes,
            storage_used_bytes=usage.total_storage_bytes,
            current_users=current_users,
            max_users=limits.max_seats,
            can_upload=limits.can_upload,
            can_use_email_inbound=limits.can_use_email_inbound,
            is_upload_disabled=is_upload_disabled,
            trial_phase=phase.value if phase else None,
            trial_ends_at=effective.account.trial_ends_at,
            days_remaining=status.days_remaining if status else None,
            grace_period=in_grace,
            is_read_only=is_read_only,
            grace_days_remaining=status.grace_days_remaining if status else 0,
            subscription_ends_at=effective.account.subscription_ends_at,
        )

    # ========================================
    # Seats
    # ========================================

    async def get_account_details(self, account_id: str) -> AccountDetails:
        async with self._session() as session:
            return await self._seats(session).get_account_details(account_id)

    async def can_invite_more(self, account_id: str) -> bool:
        async with self._session() as session:
            return await self._seats(session).can_invite_more(account_id)

    async def create_invite(
        self,
        account_id: str,
        email: str,
        invited_by: str,
        *,
        role: AccountRole = AccountRole.MEMBER,
        can_upload: bool = True,
    ):
        async with self._session() as session:
            return await self._seats(session).create_invite(
                account_id, email, invited_by, role=role, can_upload=can_upload
            )

    async def accept_invite(self, token: str, user_id: str):
        async with self._session() as session:
            return await self._seats(session).accept_invite(token, user_id)


__all__ = ["EnforcementGate"]
