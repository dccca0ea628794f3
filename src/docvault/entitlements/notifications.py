"""
Lifecycle notification scheduler.

Periodically scans trial accounts, derives the lifecycle phase with the same
resolver the enforcement gate uses, and hands due reminders to a
``NotificationSink``. Each notification type is delivered at most once per
account; delivery is recorded only after the sink accepted it.
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docvault.entitlements.lifecycle import (
    Clock,
    TrialPhase,
    TrialStatus,
    resolve_trial_phase,
    system_clock,
)
from docvault.entitlements.models import BillingAccount, LifecycleNotification
from docvault.entitlements.protocols import NotificationSink, UserDirectory
from docvault.entitlements.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

# Expired accounts older than this are not notified any more
READ_ONLY_NOTICE_WINDOW = timedelta(days=7)


class LifecycleNotificationType(str, Enum):
    TRIAL_DAY3 = "trial_day3"
    TRIAL_DAY6 = "trial_day6"
    GRACE_START = "grace_start"
    GRACE_LAST_DAY = "grace_last_day"
    READONLY_START = "readonly_start"


def due_notification(status: TrialStatus) -> LifecycleNotificationType | None:
    """Which reminder, if any, belongs to a trial status."""
    if status.phase is TrialPhase.ACTIVE:
        if status.days_remaining == 4:
            return LifecycleNotificationType.TRIAL_DAY3
        if status.days_remaining == 1:
            return LifecycleNotificationType.TRIAL_DAY6
        return None
    if status.phase is TrialPhase.GRACE_PERIOD:
        if status.grace_days_remaining == 1:
            return LifecycleNotificationType.GRACE_LAST_DAY
        return LifecycleNotificationType.GRACE_START
    return LifecycleNotificationType.READONLY_START


class LifecycleNotificationScheduler:
    """Background task delivering trial lifecycle reminders."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        sink: NotificationSink,
        user_directory: UserDirectory,
        *,
        clock: Clock = system_clock,
        interval_seconds: float | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.user_directory = user_directory
        self.clock = clock
        self.settings = settings or get_settings()
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else self.settings.entitlements.notification_interval_seconds
        )
        self.grace_period = timedelta(days=self.settings.entitlements.grace_period_days)
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic scan."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Lifecycle notification scheduler started", interval=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the periodic scan and wait for the running pass to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Lifecycle notification scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Lifecycle notification pass failed", error=str(e))
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> int:
        """Deliver every due notification once. Returns the number sent."""
        now = self.clock()
        cfg = self.settings.entitlements
        oldest_trial_end = now - self.grace_period - READ_ONLY_NOTICE_WINDOW

        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingAccount.id, BillingAccount.owner_user_id, BillingAccount.trial_ends_at)
                .where(
                    BillingAccount.plan.in_([cfg.trial_plan, cfg.read_only_plan]),
                    BillingAccount.trial_ends_at.is_not(None),
                    BillingAccount.trial_ends_at > oldest_trial_end,
                )
            )
            candidates = list(result.all())

            sent = 0
            for account_id, owner_user_id, trial_ends_at in candidates:
                status = resolve_trial_phase(trial_ends_at, now, self.grace_period)
                notification = due_notification(status)
                if notification is None:
                    continue
                if await self._deliver(session, account_id, owner_user_id, status, notification, now):
                    sent += 1

        if sent:
            logger.info("Lifecycle notifications sent", count=sent)
        return sent

    async def _deliver(
        self,
        session: AsyncSession,
        account_id: str,
        owner_user_id: str,
        status: TrialStatus,
        notification: LifecycleNotificationType,
        now: datetime,
    ) -> bool:
        already = await session.execute(
            select(LifecycleNotification.id).where(
                LifecycleNotification.account_id == account_id,
                LifecycleNotification.notification_type == notification.value,
            )
        )
        if already.first() is not None:
            return False

        recipient = await self.user_directory.get_email(owner_user_id)
        if not recipient:
            logger.warning(
                "No email for account owner, skipping notification",
                account_id=account_id,
                notification=notification.value,
            )
            return False

        context = {
            "account_id": account_id,
            "phase": status.phase.value,
            "trial_ends_at": status.trial_ends_at.isoformat(),
            "days_remaining": status.days_remaining,
            "grace_days_remaining": status.grace_days_remaining,
        }
        try:
            await self.sink.send(notification.value, recipient, context)
        except Exception:
            logger.exception(
                "Notification sink failed",
                account_id=account_id,
                notification=notification.value,
            )
            return False

        session.add(
            LifecycleNotification(
                account_id=account_id,
                notification_type=notification.value,
                recipient=recipient,
                sent_at=now,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            # Another scheduler instance recorded it first
            await session.rollback()
            return False

        logger.info(
            "Lifecycle notification sent",
            account_id=account_id,
            notification=notification.value,
        )
        return True


__all__ = [
    "LifecycleNotificationScheduler",
    "LifecycleNotificationType",
    "due_notification",
]
