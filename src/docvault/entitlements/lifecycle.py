"""
Trial lifecycle resolver.

Pure, deterministic state machine over ``(trial_ends_at, now)``:

    active        now < trial_ends_at
    grace_period  trial_ends_at <= now < trial_ends_at + grace
    expired       now >= trial_ends_at + grace

Boundary instants resolve to the later, more restrictive phase. The resolver
never writes; the lazy downgrade of an expired trial is the enforcement
gate's job.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

Clock = Callable[[], datetime]

DEFAULT_GRACE_PERIOD = timedelta(days=3)

_ONE_DAY = timedelta(days=1)
_ONE_MICROSECOND = timedelta(microseconds=1)


def system_clock() -> datetime:
    return datetime.now(UTC)


class TrialPhase(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"

    @property
    def allows_writes(self) -> bool:
        return self is TrialPhase.ACTIVE


@dataclass(frozen=True)
class TrialStatus:
    """Lifecycle phase plus the remaining-day counters shown in the UI."""

    phase: TrialPhase
    trial_ends_at: datetime
    grace_ends_at: datetime
    days_remaining: int
    grace_days_remaining: int


def ceil_days(delta: timedelta) -> int:
    """Integer ceiling division of a duration by one day (never negative)."""
    if delta <= timedelta(0):
        return 0
    micros = delta // _ONE_MICROSECOND
    day_micros = _ONE_DAY // _ONE_MICROSECOND
    return -(-micros // day_micros)


def resolve_trial_phase(
    trial_ends_at: datetime,
    now: datetime,
    grace_period: timedelta = DEFAULT_GRACE_PERIOD,
) -> TrialStatus:
    """Resolve the trial phase at ``now``."""
    grace_ends_at = trial_ends_at + grace_period

    if now < trial_ends_at:
        phase = TrialPhase.ACTIVE
    elif now < grace_ends_at:
        phase = TrialPhase.GRACE_PERIOD
    else:
        phase = TrialPhase.EXPIRED

    return TrialStatus(
        phase=phase,
        trial_ends_at=trial_ends_at,
        grace_ends_at=grace_ends_at,
        days_remaining=ceil_days(trial_ends_at - now) if phase is TrialPhase.ACTIVE else 0,
        grace_days_remaining=(
            ceil_days(grace_ends_at - now) if phase is TrialPhase.GRACE_PERIOD else 0
        ),
    )


def lifecycle_applies(
    plan: str,
    trial_ends_at: datetime | None,
    *,
    trial_plan: str = "trial",
    read_only_plan: str = "free",
) -> bool:
    """
    Whether the trial lifecycle governs an account.

    Paid plans bypass the resolver even if a historical trial end is stored;
    the read-only plan stays governed so an already downgraded trial keeps
    reporting ``expired``.
    """
    if trial_ends_at is None:
        return False
    return plan in (trial_plan, read_only_plan)


__all__ = [
    "Clock",
    "DEFAULT_GRACE_PERIOD",
    "TrialPhase",
    "TrialStatus",
    "ceil_days",
    "lifecycle_applies",
    "resolve_trial_phase",
    "system_clock",
]
