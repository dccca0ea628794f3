"""
DocVault entitlement and quota enforcement engine.

Decides whether a tenant may perform a quota-relevant request given its trial
lifecycle, its seat pool and the upload/storage pool it shares with a linked
account.
"""

from docvault.entitlements.accounts import AccountService
from docvault.entitlements.exceptions import (
    AccountNotFoundError,
    DataInvariantError,
    EntitlementError,
    LinkInvariantError,
    StorageProviderError,
    UnknownPlanError,
)
from docvault.entitlements.gate import EnforcementGate
from docvault.entitlements.lifecycle import TrialPhase, TrialStatus, resolve_trial_phase
from docvault.entitlements.links import AccountLinkResolver, AccountLinkService, EffectiveAccount
from docvault.entitlements.notifications import LifecycleNotificationScheduler
from docvault.entitlements.plans import PLAN_CATALOG, PlanLimits, get_plan_limits
from docvault.entitlements.protocols import NotificationSink, StorageSizeProvider, UserDirectory
from docvault.entitlements.schemas import Decision, DenyReason
from docvault.entitlements.seats import SeatPoolManager
from docvault.entitlements.usage import CounterResetScheduler, QuotaPoolAggregator

__version__ = "1.0.0"

__all__ = [
    "AccountLinkResolver",
    "AccountLinkService",
    "AccountNotFoundError",
    "AccountService",
    "CounterResetScheduler",
    "DataInvariantError",
    "Decision",
    "DenyReason",
    "EffectiveAccount",
    "EnforcementGate",
    "EntitlementError",
    "LifecycleNotificationScheduler",
    "LinkInvariantError",
    "NotificationSink",
    "PLAN_CATALOG",
    "PlanLimits",
    "QuotaPoolAggregator",
    "SeatPoolManager",
    "StorageProviderError",
    "StorageSizeProvider",
    "TrialPhase",
    "TrialStatus",
    "UnknownPlanError",
    "UserDirectory",
    "get_plan_limits",
    "resolve_trial_phase",
]
