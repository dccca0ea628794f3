"""
Monthly upload counters and pooled quota usage.

Counters roll over lazily: the first access in a new calendar month (in the
reference timezone) zeroes the counter with a conditional UPDATE, so
concurrent requests reset it at most once. Every counter mutation is a single
atomic statement against the store.
"""

from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docvault.entitlements.exceptions import StorageProviderError
from docvault.entitlements.links import AccountLinkResolver
from docvault.entitlements.metrics import EntitlementMetrics, get_entitlement_metrics
from docvault.entitlements.models import BillingAccount
from docvault.entitlements.protocols import StorageSizeProvider
from docvault.entitlements.schemas import PoolUsage
from docvault.entitlements.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


def month_start(now: datetime, tz: tzinfo) -> datetime:
    """First instant of ``now``'s calendar month in ``tz``, returned in UTC."""
    local = now.astimezone(tz)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.astimezone(UTC)


class CounterResetScheduler:
    """Lazily rolls monthly upload counters over to a new calendar month."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings | None = None,
        metrics: EntitlementMetrics | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.entitlements.reference_timezone)
        self.metrics = metrics or get_entitlement_metrics()

    def month_start(self, now: datetime) -> datetime:
        return month_start(now, self.tz)

    async def ensure_current(self, account_ids: list[str], now: datetime) -> int:
        """
        Zero every counter last reset before the current month.

        Idempotent within a month. Accounts never reset fall back to their
        creation time. Returns the number of counters reset.
        """
        if not account_ids:
            return 0
        boundary = self.month_start(now)
        stale = or_(
            BillingAccount.upload_counter_reset_at < boundary,
            and_(
                BillingAccount.upload_counter_reset_at.is_(None),
                BillingAccount.created_at < boundary,
            ),
        )

        # Read first so a current counter never takes a write lock
        stale_result = await self.db.execute(
            select(BillingAccount.id).where(BillingAccount.id.in_(account_ids), stale)
        )
        stale_ids = list(stale_result.scalars().all())
        if not stale_ids:
            return 0

        # The staleness condition is re-evaluated by the UPDATE itself, so a
        # counter another request already reset (and maybe incremented) is
        # left alone.
        result = await self.db.execute(
            update(BillingAccount)
            .where(BillingAccount.id.in_(stale_ids), stale)
            .values(uploaded_this_month=0, upload_counter_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        reset = result.rowcount or 0
        if reset:
            self.metrics.record_counter_reset(reset)
            logger.info(
                "Monthly upload counters reset",
                account_ids=account_ids,
                reset=reset,
                month_start=boundary.isoformat(),
            )
        return reset


class UploadCounter:
    """Atomic increments and decrements of an account's monthly counter."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def increment(self, account_id: str, count: int = 1) -> None:
        await self.db.execute(
            update(BillingAccount)
            .where(BillingAccount.id == account_id)
            .values(uploaded_this_month=BillingAccount.uploaded_this_month + count)
            .execution_options(synchronize_session=False)
        )

    async def decrement(self, account_id: str, count: int = 1) -> None:
        """Decrement, never going below zero."""
        await self.db.execute(
            update(BillingAccount)
            .where(BillingAccount.id == account_id)
            .values(
                uploaded_this_month=case(
                    (
                        BillingAccount.uploaded_this_month >= count,
                        BillingAccount.uploaded_this_month - count,
                    ),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )

    async def counts(self, account_ids: list[str]) -> dict[str, int]:
        result = await self.db.execute(
            select(BillingAccount.id, BillingAccount.uploaded_this_month).where(
                BillingAccount.id.in_(account_ids)
            )
        )
        return {row.id: row.uploaded_this_month for row in result}


class QuotaPoolAggregator:
    """Sums uploads and storage across an account's quota pool."""

    def __init__(
        self,
        db: AsyncSession,
        storage_provider: StorageSizeProvider,
        *,
        settings: Settings | None = None,
        metrics: EntitlementMetrics | None = None,
    ):
        self.db = db
        self.storage_provider = storage_provider
        self.resolver = AccountLinkResolver(db)
        self.scheduler = CounterResetScheduler(db, settings=settings, metrics=metrics)
        self.counter = UploadCounter(db)

    async def pool_for(self, account_id: str) -> list[str]:
        """The account plus every account linked to it by an active link."""
        return [account_id, *await self.resolver.pool_partner_ids(account_id)]

    async def upload_total(self, account_ids: list[str]) -> int:
        return sum((await self.counter.counts(account_ids)).values())

    async def aggregate(self, account_id: str, now: datetime) -> PoolUsage:
        """
        Pooled usage for ``account_id``.

        Every pool member's counter is brought current first, so a stale
        previous-month counter never leaks into the sum.
        """
        account_ids = await self.pool_for(account_id)
        await self.scheduler.ensure_current(account_ids, now)

        uploads = await self.counter.counts(account_ids)
        storage: dict[str, int] = {}
        for pool_account_id in account_ids:
            try:
                storage[pool_account_id] = int(
                    await self.storage_provider.total_bytes_owned(pool_account_id)
                )
            except StorageProviderError:
                raise
            except Exception as exc:
                raise StorageProviderError(pool_account_id, exc) from exc

        return PoolUsage(
            account_ids=account_ids,
            total_uploads_this_month=sum(uploads.values()),
            total_storage_bytes=sum(storage.values()),
            uploads_by_account=uploads,
            storage_by_account=storage,
        )


__all__ = [
    "CounterResetScheduler",
    "QuotaPoolAggregator",
    "UploadCounter",
    "month_start",
]
