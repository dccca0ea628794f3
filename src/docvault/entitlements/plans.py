"""
Plan catalog.

Static, process-wide mapping from plan identifier to its limits. The catalog
is built once at import and never mutated; lookups of unknown identifiers
raise instead of falling back to a default.
"""

from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field

from docvault.entitlements.exceptions import UnknownPlanError

GIB = 1024 * 1024 * 1024


class PlanLimits(BaseModel):
    """Limits and feature flags of one subscription plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    display_name: str
    max_uploads_per_month: int = Field(ge=0)
    max_storage_bytes: int = Field(ge=0)
    can_upload: bool
    can_use_email_inbound: bool
    max_seats: int = Field(ge=1)
    allows_account_link: bool = False

    @property
    def max_storage_gb(self) -> float:
        return round(self.max_storage_bytes / GIB, 2)


PLAN_CATALOG: MappingProxyType[str, PlanLimits] = MappingProxyType(
    {
        plan.plan_id: plan
        for plan in (
            PlanLimits(
                plan_id="trial",
                display_name="Trial",
                max_uploads_per_month=100,
                max_storage_bytes=5 * GIB,
                can_upload=True,
                can_use_email_inbound=True,
                max_seats=2,
                allows_account_link=True,
            ),
            PlanLimits(
                plan_id="free",
                display_name="Free",
                max_uploads_per_month=0,
                max_storage_bytes=1 * GIB,
                can_upload=False,
                can_use_email_inbound=False,
                max_seats=1,
            ),
            PlanLimits(
                plan_id="solo",
                display_name="Solo",
                max_uploads_per_month=50,
                max_storage_bytes=5 * GIB,
                can_upload=True,
                can_use_email_inbound=True,
                max_seats=1,
            ),
            PlanLimits(
                plan_id="family",
                display_name="Family",
                max_uploads_per_month=200,
                max_storage_bytes=25 * GIB,
                can_upload=True,
                can_use_email_inbound=True,
                max_seats=4,
                allows_account_link=True,
            ),
            PlanLimits(
                plan_id="family-plus",
                display_name="Family Plus",
                max_uploads_per_month=500,
                max_storage_bytes=100 * GIB,
                can_upload=True,
                can_use_email_inbound=True,
                max_seats=6,
                allows_account_link=True,
            ),
        )
    }
)


def get_plan_limits(plan_id: str) -> PlanLimits:
    """Look up a plan, raising ``UnknownPlanError`` for identifiers not in the catalog."""
    try:
        return PLAN_CATALOG[plan_id]
    except KeyError:
        raise UnknownPlanError(plan_id) from None


def is_known_plan(plan_id: str) -> bool:
    return plan_id in PLAN_CATALOG


__all__ = ["GIB", "PLAN_CATALOG", "PlanLimits", "get_plan_limits", "is_known_plan"]
